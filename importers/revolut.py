import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from csv_utils import read_data_rows, row_to_line, strip_non_printable
from errors import InvalidFormatError
from models import ImportSource

from .base import (
    BaseParser,
    ImportRow,
    ParseContext,
    ParsedTransaction,
    ParsedType,
    account_map_by_numbers,
)


logger = logging.getLogger(__name__)

SUPPORTED_STATES = ("COMPLETED", "PENDING")
EXCHANGE = "EXCHANGE"


def account_name(currency: str) -> str:
    return f"revolut_{currency}"


def parse_row(row: list[str]) -> ParsedTransaction:
    """Columns: type, product, started, completed, description, amount, fee, currency, state, balance."""
    if len(row) < 9:
        raise InvalidFormatError(f"expected len > 8, got {len(row)}")
    operation_type = row[0]
    started = strip_non_printable(row[2])
    try:
        operation_time = datetime.strptime(started, "%Y-%m-%d %H:%M:%S")
    except ValueError as exc:
        raise InvalidFormatError(f"failed to parse operation time {row[2]}") from exc
    try:
        amount = Decimal(row[5].strip())
    except InvalidOperation as exc:
        raise InvalidFormatError(f"failed to parse source amount {row[5]}") from exc
    state = row[8]
    if state not in SUPPORTED_STATES:
        raise InvalidFormatError(f"unsupported state {state}")

    currency = row[7].strip().upper()
    tx = ParsedTransaction(
        raw=row_to_line(row),
        type=ParsedType.expense,
        date=operation_time,
        description=f"{operation_type}.{row[4]}",
        source_amount=amount,
        source_currency=currency,
        source_account=account_name(currency),
        identity="_".join([operation_type, row[2], row[4], row[5], row[7]]),
    )

    if operation_type == EXCHANGE:
        tx.type = ParsedType.internal_transfer
        if amount > 0:
            tx.destination_amount = amount
            tx.destination_currency = currency
            tx.destination_account = account_name(currency)
            tx.source_amount = Decimal("0")
            tx.source_currency = ""
            tx.source_account = ""
        return tx

    if amount > 0:
        raise InvalidFormatError("income transactions not supported")
    tx.source_amount = abs(amount)
    tx.destination_amount = tx.source_amount
    tx.destination_currency = currency
    return tx


def merge(transactions: list[ParsedTransaction]) -> list[ParsedTransaction]:
    """Collapse both legs of an exchange (same description and time) into one transfer."""
    result: list[ParsedTransaction] = []
    consumed: set[int] = set()
    for tx in transactions:
        if tx.type != ParsedType.internal_transfer:
            result.append(tx)
            continue
        if id(tx) in consumed:
            continue
        kept_ids = {id(item) for item in result}
        for other in transactions:
            if other is tx or other.type != ParsedType.internal_transfer:
                continue
            if id(other) in consumed or id(other) in kept_ids:
                continue
            if other.description == tx.description and other.date == tx.date:
                tx.duplicates.append(other)
                if tx.source_amount < 0:
                    tx.destination_amount = other.destination_amount
                    tx.destination_currency = other.destination_currency
                    tx.destination_account = other.destination_account
                else:
                    tx.source_amount = other.source_amount
                    tx.source_currency = other.source_currency
                    tx.source_account = other.source_account
                consumed.add(id(other))
                break
        result.append(tx)

    for tx in result:
        tx.source_amount = abs(tx.source_amount)
        tx.destination_amount = abs(tx.destination_amount)
    return result


class RevolutParser(BaseParser):
    source = ImportSource.revolut

    def parse_payload(self, data: bytes) -> list[ParsedTransaction]:
        parsed: list[ParsedTransaction] = []
        for row in read_data_rows(data):
            try:
                parsed.append(parse_row(row))
            except InvalidFormatError as exc:
                parsed.append(
                    ParsedTransaction(
                        raw=row_to_line(row),
                        parsing_error=str(exc),
                    )
                )
        return parsed

    def parse(self, ctx: ParseContext, payloads: list[bytes]) -> list[ImportRow]:
        transactions: list[ParsedTransaction] = []
        for payload in payloads:
            transactions.extend(self.parse_payload(payload))
        transactions = merge(transactions)
        logger.info(f"revolut_parsed: transactions={len(transactions)}")
        return self.to_rows(ctx, transactions, account_map_by_numbers(ctx.accounts))
