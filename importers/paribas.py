"""BNP Paribas (Poland) XLSX statements.

Two sheet layouts exist: the newer one has separate sender (``Nadawca``) and
receiver columns. Transfers between two own accounts appear as an outgoing
and an incoming row with the same date and description; ``merge`` pairs them.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from io import BytesIO
from typing import Any, Callable, Sequence

from openpyxl import load_workbook

from errors import InvalidFormatError
from models import ImportSource

from .base import (
    BaseParser,
    ImportRow,
    ParseContext,
    ParsedTransaction,
    ParsedType,
    account_map_by_numbers,
    strip_account_prefix,
    to_lines,
)


logger = logging.getLogger(__name__)

SIGNED_TYPES = (
    "Transakcja kartą",
    "Transakcja BLIK",
    "Prowizje i opłaty",
    "Blokada środków",
    "Operacja gotówkowa",
    "Inne operacje",
    "Przelew podatkowy",
)
FOREIGN_TRANSFER = "Przelew zagraniczny"
INCOMING_TRANSFER = "Przelew przychodzący"
OUTGOING_TRANSFER = "Przelew wychodzący"
CARD_REPAYMENT = "Spłata karty"
REMOTE_TYPES = (OUTGOING_TRANSFER, "Przelew na telefon", CARD_REPAYMENT)
FEES = "Prowizje i opłaty"
PENDING = "Blokada środków"
REPAYMENT_TITLES = (CARD_REPAYMENT, "Card repayment")

DATE_FORMATS = ("%Y-%m-%d %H:%M:%S", "%Y-%m-%d", "%d.%m.%Y")


@dataclass
class ParibasRow:
    date: datetime
    currency: str
    transaction_currency: str
    amount: Decimal
    amount_text: str
    transaction_amount: Decimal
    transaction_amount_text: str
    description: str
    account: str
    counterparty: str
    transaction_type: str
    executed_at: str
    raw: str


def cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float):
        return repr(value)
    return str(value).strip()


def _cell_date(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time())
    text = cell_text(value)
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    raise InvalidFormatError(f"can not parse date: {text}")


def _cell_decimal(value: Any, label: str) -> Decimal:
    text = cell_text(value)
    try:
        return Decimal(text)
    except InvalidOperation as exc:
        raise InvalidFormatError(f"can not parse {label}: {text}") from exc


def _last_line_account(raw: str) -> str:
    lines = to_lines(raw.lower())
    return strip_account_prefix(lines[-1].strip())


def extract_v1(cells: Sequence[Any]) -> ParibasRow:
    """Layout with one combined sender/receiver column."""
    description = cell_text(cells[6])
    counterparty_raw = cell_text(cells[5])
    raw_account = cell_text(cells[7])
    transaction_type = cell_text(cells[8])
    return ParibasRow(
        date=_cell_date(cells[0]),
        executed_at=cell_text(cells[1]),
        amount=_cell_decimal(cells[3], "amount"),
        amount_text=cell_text(cells[3]),
        currency=cell_text(cells[4]),
        description=description or transaction_type,
        account=_last_line_account(raw_account),
        counterparty=strip_account_prefix(to_lines(counterparty_raw)[0]),
        transaction_type=transaction_type,
        transaction_amount=_cell_decimal(cells[9], "kwota"),
        transaction_amount_text=cell_text(cells[9]),
        transaction_currency=cell_text(cells[10]),
        raw="\n".join([description, counterparty_raw, raw_account, transaction_type]),
    )


def extract_v2(cells: Sequence[Any]) -> ParibasRow:
    """Layout with separate sender and receiver columns."""
    sender = cell_text(cells[5])
    receiver = cell_text(cells[6])
    description = cell_text(cells[7])
    raw_account = cell_text(cells[8])
    transaction_type = cell_text(cells[9])
    account = _last_line_account(raw_account)
    counterparty_raw = receiver if account in sender else sender
    return ParibasRow(
        date=_cell_date(cells[0]),
        executed_at=cell_text(cells[1]),
        amount=_cell_decimal(cells[3], "amount"),
        amount_text=cell_text(cells[3]),
        currency=cell_text(cells[4]),
        description=description or transaction_type,
        account=account,
        counterparty=strip_account_prefix(to_lines(counterparty_raw)[0]),
        transaction_type=transaction_type,
        transaction_amount=_cell_decimal(cells[10], "kwota"),
        transaction_amount_text=cell_text(cells[10]),
        transaction_currency=cell_text(cells[11]),
        raw="\n".join([description, counterparty_raw, raw_account, transaction_type]),
    )


Extractor = Callable[[Sequence[Any]], ParibasRow]


def choose_extractor(header: Sequence[Any]) -> Extractor:
    if len(header) < 6:
        raise InvalidFormatError("row count is to short to determine the extractor type")
    if cell_text(header[5]) == "Nadawca":
        return extract_v2
    return extract_v1


def row_identity(cells: Sequence[Any]) -> str:
    return "-".join(cell_text(value) for value in cells[:22])


def build_transaction(cells: Sequence[Any], extractor: Extractor) -> ParsedTransaction:
    identity = row_identity(cells)
    tx = ParsedTransaction(raw=identity, identity=identity)
    try:
        data = extractor(cells)
    except (InvalidFormatError, IndexError) as exc:
        tx.parsing_error = str(exc) or "row is too short"
        return tx

    tx.date = data.date
    tx.time_from_message = data.date.strftime("%H:%M")
    tx.original_type = data.transaction_type
    tx.description = data.description
    tx.raw = data.raw

    skip_extra_checks = False
    kind = data.transaction_type
    if kind in SIGNED_TYPES:
        if data.amount > 0:
            tx.type = ParsedType.income
            tx.source_amount = abs(data.amount)
            tx.source_currency = data.currency
            tx.destination_amount = abs(data.transaction_amount)
            tx.destination_currency = data.transaction_currency
            tx.destination_account = data.account
        else:
            tx.type = ParsedType.expense
            tx.source_account = data.account
            tx.source_amount = abs(data.amount)
            tx.source_currency = data.currency
            tx.destination_amount = abs(data.transaction_amount)
            tx.destination_currency = data.transaction_currency
            skip_extra_checks = True
    elif kind == FOREIGN_TRANSFER:
        if data.transaction_amount > 0:
            tx.type = ParsedType.income
            tx.destination_account = data.account
            tx.destination_amount = abs(data.amount)
            tx.destination_currency = data.currency
            tx.source_account = data.counterparty
            tx.source_amount = abs(data.transaction_amount)
            tx.source_currency = data.transaction_currency
        else:
            tx.type = ParsedType.expense
            tx.source_account = data.account
            tx.source_amount = abs(data.amount)
            tx.source_currency = data.currency
            tx.destination_account = data.counterparty
            tx.destination_amount = abs(data.transaction_amount)
            tx.destination_currency = data.transaction_currency
    elif kind == INCOMING_TRANSFER:
        tx.type = ParsedType.income
        tx.destination_account = data.account
        tx.destination_amount = abs(data.amount)
        tx.destination_currency = data.currency
        tx.source_account = data.counterparty
        tx.source_amount = abs(data.transaction_amount)
        tx.source_currency = data.transaction_currency
        skip_extra_checks = True
    elif kind in REMOTE_TYPES:
        tx.type = ParsedType.remote_transfer
        tx.source_account = data.account
        tx.source_amount = abs(data.amount)
        tx.source_currency = data.currency
        tx.destination_account = data.counterparty
        tx.destination_amount = abs(data.amount)
        tx.destination_currency = data.currency
    else:
        tx.parsing_error = f"unknown transaction type: {kind}"
        return tx

    if kind == PENDING and not data.executed_at:
        tx.parsing_error = "transaction is still pending"
        return tx
    if not skip_extra_checks:
        if data.transaction_currency != data.currency:
            tx.parsing_error = (
                f"currency mismatch: {data.transaction_currency} != {data.currency}"
            )
        elif data.amount_text != data.transaction_amount_text:
            tx.parsing_error = (
                f"amount mismatch: {data.amount_text} != {data.transaction_amount_text}"
            )
    return tx


def _is_pair(tx: ParsedTransaction, kept: ParsedTransaction) -> bool:
    if tx.original_type == FEES or tx.type == ParsedType.expense:
        return False
    if tx.original_type == CARD_REPAYMENT:
        if kept.description not in REPAYMENT_TITLES:
            return False
    elif kept.description != tx.description:
        return False
    if kept.date != tx.date or kept.duplicates:
        return False
    if (
        kept.source_currency
        and tx.source_currency
        and kept.destination_currency
        and tx.destination_currency
        and kept.source_amount != tx.source_amount
        and tx.destination_currency == kept.destination_currency
        and tx.source_currency == kept.source_currency
    ):
        return False
    if (
        kept.source_account
        and tx.source_account
        and kept.destination_account
        and tx.destination_account
        and kept.source_account == tx.source_account
        and kept.destination_account == tx.destination_account
        and tx.original_type == kept.original_type
    ):
        return False
    return True


def _absorb(kept: ParsedTransaction, tx: ParsedTransaction) -> None:
    kept.source_currency = kept.source_currency or tx.source_currency
    kept.destination_currency = kept.destination_currency or tx.destination_currency
    kept.source_amount = kept.source_amount or tx.source_amount
    kept.destination_amount = kept.destination_amount or tx.destination_amount
    kept.source_account = kept.source_account or tx.source_account
    kept.destination_account = kept.destination_account or tx.destination_account
    if tx.original_type == INCOMING_TRANSFER:
        kept.destination_amount = tx.destination_amount
        kept.destination_currency = tx.destination_currency
    if tx.original_type == OUTGOING_TRANSFER:
        kept.source_amount = tx.source_amount
        kept.source_currency = tx.source_currency
    kept.type = tx.type = ParsedType.internal_transfer
    kept.duplicates.append(tx)


def merge(transactions: list[ParsedTransaction]) -> list[ParsedTransaction]:
    kept: list[ParsedTransaction] = []
    pending: list[ParsedTransaction] = []
    for tx in transactions:
        if tx.parsing_error or tx.description in REPAYMENT_TITLES:
            kept.append(tx)
        else:
            pending.append(tx)

    for tx in pending:
        partner = next((item for item in kept if _is_pair(tx, item)), None)
        if partner is None:
            kept.append(tx)
        else:
            _absorb(partner, tx)
    return kept


class ParibasParser(BaseParser):
    source = ImportSource.paribas

    def parse_workbook(self, data: bytes) -> list[ParsedTransaction]:
        try:
            workbook = load_workbook(BytesIO(data), read_only=True, data_only=True)
        except Exception as exc:
            raise InvalidFormatError("failed to open excel") from exc
        try:
            if not workbook.worksheets:
                raise InvalidFormatError("no sheets found")
            rows = [list(row) for row in workbook.worksheets[0].iter_rows(values_only=True)]
        finally:
            workbook.close()
        if len(rows) < 2:
            raise InvalidFormatError("no rows found")

        extractor = choose_extractor(rows[0])
        parsed: list[ParsedTransaction] = []
        for cells in rows[1:]:
            if len(cells) < 6 or not cell_text(cells[0]):
                continue
            parsed.append(build_transaction(cells, extractor))
        return parsed

    def parse(self, ctx: ParseContext, payloads: list[bytes]) -> list[ImportRow]:
        transactions: list[ParsedTransaction] = []
        for payload in payloads:
            transactions.extend(self.parse_workbook(payload))
        transactions.sort(key=lambda tx: tx.date or datetime.min)
        transactions = merge(transactions)
        logger.info(f"paribas_parsed: transactions={len(transactions)}")
        return self.to_rows(ctx, transactions, account_map_by_numbers(ctx.accounts))
