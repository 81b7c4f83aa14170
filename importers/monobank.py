import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation

from csv_utils import read_data_rows
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

CARD_CURRENCY = "UAH"
MIN_COLUMNS = 8


def _amount(value: str, label: str) -> Decimal:
    try:
        return Decimal(value.strip())
    except InvalidOperation as exc:
        raise InvalidFormatError(f"failed to parse {label} amount {value}") from exc


def parse_row(row: list[str]) -> ParsedTransaction:
    """One statement row: date, description, mcc, card amount, operation amount, currency, ..."""
    raw = ",".join(row)
    if len(row) < MIN_COLUMNS:
        raise InvalidFormatError(f"expected len >= {MIN_COLUMNS}, got {len(row)}")
    try:
        operation_time = datetime.strptime(row[0].strip(), "%d.%m.%Y %H:%M:%S")
    except ValueError as exc:
        raise InvalidFormatError(f"failed to parse operation time {row[0]}") from exc

    card_amount = _amount(row[3], "source")
    if card_amount > 0:
        raise InvalidFormatError("income transactions not supported")
    operation_amount = _amount(row[4], "dest")

    return ParsedTransaction(
        raw=raw,
        type=ParsedType.expense,
        date=operation_time,
        description=row[1],
        source_amount=abs(card_amount),
        source_currency=CARD_CURRENCY,
        source_account=CARD_CURRENCY,
        destination_amount=abs(operation_amount),
        destination_currency=row[5].strip().upper(),
        identity="_".join(row),
    )


class MonobankParser(BaseParser):
    source = ImportSource.monobank

    def parse_payload(self, data: bytes) -> list[ParsedTransaction]:
        parsed: list[ParsedTransaction] = []
        for row in read_data_rows(data):
            try:
                parsed.append(parse_row(row))
            except InvalidFormatError as exc:
                parsed.append(
                    ParsedTransaction(
                        raw=",".join(row),
                        identity="_".join(row),
                        parsing_error=str(exc),
                    )
                )
        return parsed

    def parse(self, ctx: ParseContext, payloads: list[bytes]) -> list[ImportRow]:
        transactions: list[ParsedTransaction] = []
        for payload in payloads:
            transactions.extend(self.parse_payload(payload))
        logger.info(f"monobank_parsed: transactions={len(transactions)}")
        return self.to_rows(ctx, transactions, account_map_by_numbers(ctx.accounts))
