"""PrivatBank chat-export parser.

The export is a list of bank notifications separated by blank lines; each
starts with a ``PrivatBank, [M/D/YYYY H:MM AM]`` header. Transfers between
the user's own cards show up as two notifications (one per card) which are
collapsed into a single internal transfer by ``merge``.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Callable, Optional

from csv_utils import decode_text
from errors import InvalidFormatError
from models import ImportSource
from money import CONVERSION_CONTEXT

from .base import (
    BaseParser,
    ImportRow,
    ParseContext,
    ParsedTransaction,
    ParsedType,
    account_map_by_numbers,
    to_lines,
)


logger = logging.getLogger(__name__)

UNKNOWN_ACCOUNT = "UNK"
MERGE_WINDOW_MINUTES = 5

AMOUNT_LINE = re.compile(r"(\d+.?\d+)([A-Z]{3}) (.*)$")
BALANCE_LINE = re.compile(r"Бал\. .*(\w{3})")
TRANSFER_TO_LINE = re.compile(
    r"(\d+.?\d+)([A-Z]{3}) (Переказ на свою карт[^ ]+ (?:(\d+\*\*\d+) )?(.*))$"
)
TRANSFER_FROM_LINE = re.compile(
    r"(\d+.?\d+)([A-Z]{3}) (Переказ зі своєї карт[^ ]+ (\*?\d+\*?\*?\d+) ?(.*)?)$"
)

INCOME_TRANSFER_TEXT = "зарахування переказу з картки через приват24"
OWN_CARD_CREDIT = "Зарахування переказу через Приват24 зі своєї картки"
OWN_CARD_DEBIT = "Переказ на свою карту через Приват24"
CARD_DEBIT = "Переказ зі своєї карти"
CARD_CREDIT = "Зарахування переказу на картку"


def parse_header_date(header: str) -> datetime:
    start = header.find("[")
    end = header.find("]")
    if start == -1 or end == -1 or start >= end:
        raise InvalidFormatError(f"invalid header format: {header}")
    value = header[start + 1 : end].strip()
    try:
        return datetime.strptime(value, "%m/%d/%Y %I:%M %p")
    except ValueError as exc:
        raise InvalidFormatError(f"failed to parse date: {value}") from exc


def split_messages(text: str) -> list[str]:
    messages: list[str] = []
    current: list[str] = []
    for line in to_lines(text):
        line = line.strip()
        if not line:
            if current:
                messages.append("\n".join(current))
            current = []
            continue
        current.append(line)
    if current:
        messages.append("\n".join(current))
    return messages


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as exc:
        raise InvalidFormatError(f"invalid amount {value}") from exc


def _card_and_time(line: str, strict: bool = True) -> tuple[str, str]:
    parts = line.split(" ")
    if (strict and len(parts) != 2) or len(parts) < 2:
        raise InvalidFormatError(f"expected 2 source parts, got {parts}")
    return parts[0], parts[1]


def _amount_line(line: str) -> re.Match:
    match = AMOUNT_LINE.search(line)
    if match is None:
        raise InvalidFormatError(f"unrecognised amount line: {line}")
    return match


def _short_card(value: str) -> str:
    """``5***1234`` style numbers become ``5*1234``."""
    if len(value) != 6:
        return value
    return f"{value[0]}*{value[4:]}"


def _apply_rate_lines(tx: ParsedTransaction, lines: list[str], amount: Decimal) -> None:
    for line in lines:
        if "курс " not in line.lower():
            continue
        parts = line.split(" ")
        if len(parts) != 3:
            raise InvalidFormatError(f"expected 3 parts for курс, got {parts}")
        currencies = parts[2].split("/")
        if len(currencies) != 2:
            raise InvalidFormatError(f"expected 2 currencies, got {currencies}")
        rate = _decimal(parts[1])

        if currencies[1] == tx.source_currency:
            tx.destination_currency, tx.destination_amount = tx.source_currency, tx.source_amount
            tx.source_currency = currencies[0]
            tx.source_amount = amount * rate
        elif currencies[0] == tx.source_currency:
            tx.destination_currency, tx.destination_amount = tx.source_currency, tx.source_amount
            tx.source_currency = currencies[1]
            tx.source_amount = CONVERSION_CONTEXT.divide(amount, rate)
        else:
            raise InvalidFormatError(
                f"currency mismatch: {currencies[0]} {currencies[1]}"
            )


def _check_balance_currency(tx: ParsedTransaction, lines: list[str]) -> None:
    for line in lines:
        match = BALANCE_LINE.search(line)
        if match and match.group(1) != tx.source_currency:
            raise InvalidFormatError(
                f"currency mismatch: {match.group(1)} != {tx.source_currency}"
            )


def parse_simple_expense(raw: str, date: datetime, *, with_time: bool = True) -> ParsedTransaction:
    lines = to_lines(raw)
    minimum = 3 if with_time else 2
    if len(lines) < minimum:
        raise InvalidFormatError(f"expected {minimum} lines, got {len(lines)}")
    match = _amount_line(lines[0])
    amount = _decimal(match.group(1))
    card, time_of_day = _card_and_time(lines[1], strict=False)
    tx = ParsedTransaction(
        raw=raw,
        type=ParsedType.expense,
        date=date,
        description=match.group(3),
        source_amount=amount,
        source_currency=match.group(2),
        source_account=card,
        time_from_message=time_of_day if with_time else "",
    )
    _apply_rate_lines(tx, lines, amount)
    if not tx.destination_currency and not tx.destination_amount:
        tx.destination_currency = tx.source_currency
        tx.destination_amount = abs(tx.source_amount)
    _check_balance_currency(tx, lines)
    return tx


def parse_credit_payment(raw: str, date: datetime) -> ParsedTransaction:
    # the second line of a credit-card write-off carries no time of day
    return parse_simple_expense(raw, date, with_time=False)


def parse_remote_transfer(raw: str, date: datetime) -> ParsedTransaction:
    lines = to_lines(raw)
    if len(lines) < 3:
        raise InvalidFormatError(f"expected 3 lines, got {len(lines)}")
    match = _amount_line(lines[0])
    card, time_of_day = _card_and_time(lines[1])
    return ParsedTransaction(
        raw=raw,
        type=ParsedType.remote_transfer,
        date=date,
        description=match.group(3),
        source_amount=_decimal(match.group(1)),
        source_currency=match.group(2),
        source_account=card,
        time_from_message=time_of_day,
    )


def parse_incoming_card_transfer(raw: str, date: datetime) -> ParsedTransaction:
    lines = to_lines(raw)
    if len(lines) < 2:
        raise InvalidFormatError(f"expected 2 lines, got {len(lines)}")
    match = _amount_line(lines[0])
    card, time_of_day = _card_and_time(lines[1])
    return ParsedTransaction(
        raw=raw,
        type=ParsedType.income,
        date=date,
        description=match.group(3),
        destination_amount=_decimal(match.group(1)),
        destination_currency=match.group(2),
        destination_account=card,
        time_from_message=time_of_day,
    )


# a partial refund reads exactly like an incoming card transfer
parse_partial_refund = parse_incoming_card_transfer


def parse_income_transfer(raw: str, date: datetime) -> ParsedTransaction:
    lines = to_lines(raw)
    if len(lines) < 3:
        raise InvalidFormatError(f"expected 3 lines, got {len(lines)}")
    tx = parse_incoming_card_transfer(raw, date)
    tx.source_currency = tx.destination_currency
    tx.source_amount = abs(tx.destination_amount)
    return tx


def parse_internal_transfer(raw: str, date: datetime) -> ParsedTransaction:
    lines = to_lines(raw)
    if len(lines) < 2:
        raise InvalidFormatError(f"expected 2 lines, got {len(lines)}")
    if "переказ на свою карт" in lines[0].lower():
        return _parse_transfer_to(raw, lines, date)
    return _parse_transfer_from(raw, lines, date)


def _parse_transfer_from(raw: str, lines: list[str], date: datetime) -> ParsedTransaction:
    match = TRANSFER_FROM_LINE.search(lines[0])
    if match is None:
        raise InvalidFormatError(f"unrecognised transfer line: {lines[0]}")
    card, time_of_day = _card_and_time(lines[1])
    return ParsedTransaction(
        raw=raw,
        type=ParsedType.internal_transfer,
        date=date,
        description=match.group(3),
        destination_amount=_decimal(match.group(1)),
        destination_currency=match.group(2),
        source_account=_short_card(match.group(4)),
        destination_account=card,
        time_from_message=time_of_day,
    )


def _parse_transfer_to(raw: str, lines: list[str], date: datetime) -> ParsedTransaction:
    match = TRANSFER_TO_LINE.search(lines[0])
    if match is None:
        raise InvalidFormatError(f"unrecognised transfer line: {lines[0]}")
    card, time_of_day = _card_and_time(lines[1])
    destination = _short_card(match.group(4) or match.group(5) or "")
    if "*" not in destination:
        destination = UNKNOWN_ACCOUNT
    return ParsedTransaction(
        raw=raw,
        type=ParsedType.internal_transfer,
        date=date,
        description=match.group(3),
        source_amount=_decimal(match.group(1)),
        source_currency=match.group(2),
        source_account=card,
        destination_account=destination,
        direction_to=True,
        time_from_message=time_of_day,
    )


def classify(raw: str) -> Callable[[str, datetime], ParsedTransaction]:
    """Pick the message parser from the notification wording."""
    lower = raw.lower()
    first = to_lines(lower)[0]

    if first.endswith("переказ зі своєї карти"):
        # card-to-card transfer leaving through another bank
        return parse_remote_transfer
    if "переказ на свою карт" in lower or "переказ зі своєї карт" in lower:
        return parse_internal_transfer
    if "переказ через " in lower or first.endswith(INCOME_TRANSFER_TEXT):
        if "відправник:" in lower or first.endswith(INCOME_TRANSFER_TEXT):
            return parse_income_transfer
        return parse_remote_transfer
    if (
        first.endswith("зарахування переказу на картку")
        or "повернення." in lower
        or first.endswith("зарахування переказу через приват24 зі своєї картки")
        or "зарахування переказу." in first
    ):
        return parse_incoming_card_transfer
    if first.endswith("зарахування"):
        return parse_partial_refund
    if len(to_lines(lower)) == 2 and first.endswith(" списання"):
        return parse_credit_payment
    return parse_simple_expense


# Merge cases. Each takes the incoming message ``tx`` and an already kept
# message ``kept`` and patches missing sides in place.


def _share_unknown_destination(tx: ParsedTransaction, kept: ParsedTransaction) -> None:
    if tx.source_account != kept.source_account:
        return
    if tx.destination_account == UNKNOWN_ACCOUNT:
        tx.destination_account = kept.destination_account
    if kept.destination_account == UNKNOWN_ACCOUNT:
        kept.destination_account = tx.destination_account


def _pair_own_card_via_privat24(credit: ParsedTransaction, debit: ParsedTransaction) -> None:
    if (
        credit.source_account == ""
        and credit.description == OWN_CARD_CREDIT
        and debit.description == OWN_CARD_DEBIT
    ):
        credit.source_account = debit.source_account
        credit.source_amount = debit.source_amount
        credit.source_currency = debit.source_currency
        debit.destination_account = credit.destination_account
        debit.destination_amount = credit.destination_amount
        debit.destination_currency = credit.destination_currency
        credit.type = debit.type = ParsedType.internal_transfer


def _pair_card_debit_and_credit(credit: ParsedTransaction, debit: ParsedTransaction) -> None:
    if (
        credit.destination_account != ""
        and credit.description == CARD_CREDIT
        and debit.destination_account == ""
        and debit.description == CARD_DEBIT
        and debit.source_account != ""
    ):
        debit.destination_account = credit.destination_account
        credit.source_account = debit.source_account
        credit.type = debit.type = ParsedType.internal_transfer


def _repair_missing_first_digit(outgoing: ParsedTransaction, incoming: ParsedTransaction) -> None:
    # some notifications drop the leading digit of the card number
    if (
        outgoing.description.startswith("Переказ зі своєї картки")
        and outgoing.source_account.startswith("*")
        and incoming.description.startswith("Переказ на свою картку")
        and incoming.destination_account.startswith("*")
    ):
        outgoing.source_account = incoming.source_account
        incoming.destination_account = outgoing.destination_account


def _repair_masked_destination(debit: ParsedTransaction, credit: ParsedTransaction) -> None:
    if (
        debit.description.startswith("Переказ на свою картку")
        and debit.destination_account.startswith("*")
        and credit.description.startswith("Зарахування переказу")
        and credit.source_account == ""
    ):
        debit.destination_account = credit.destination_account
        credit.source_account = debit.source_account


PAIRING_CASES = (_pair_own_card_via_privat24, _pair_card_debit_and_credit)
REPAIR_CASES = (_repair_missing_first_digit, _repair_masked_destination)


def _minutes(value: str) -> int:
    try:
        parsed = datetime.strptime(value, "%H:%M")
    except ValueError as exc:
        raise InvalidFormatError(f"invalid message time {value}") from exc
    return parsed.hour * 60 + parsed.minute


def is_merge_pair(tx: ParsedTransaction, kept: ParsedTransaction) -> bool:
    """Apply the merge cases; True when ``tx`` is the other half of ``kept``."""
    if not tx.time_from_message or not kept.time_from_message:
        return False
    if abs(_minutes(tx.time_from_message) - _minutes(kept.time_from_message)) > MERGE_WINDOW_MINUTES:
        return False
    if tx.direction_to and kept.direction_to:
        return False

    _share_unknown_destination(tx, kept)
    for case in PAIRING_CASES:
        case(tx, kept)
        case(kept, tx)

    if ParsedType.internal_transfer not in (tx.type, kept.type):
        return False

    for case in REPAIR_CASES:
        case(tx, kept)
        case(kept, tx)

    return (
        tx.destination_account == kept.destination_account
        and tx.source_account == kept.source_account
    )


def _absorb(kept: ParsedTransaction, tx: ParsedTransaction) -> None:
    if not kept.destination_currency and tx.destination_currency:
        kept.destination_currency = tx.destination_currency
    if not kept.source_currency and tx.source_currency:
        kept.source_currency = tx.source_currency
    if not kept.destination_amount and tx.destination_amount > 0:
        kept.destination_amount = tx.destination_amount
    if not kept.source_amount and tx.source_amount > 0:
        kept.source_amount = tx.source_amount
    kept.type = tx.type = ParsedType.internal_transfer
    kept.duplicates.append(tx)


def merge(transactions: list[ParsedTransaction]) -> list[ParsedTransaction]:
    kept: list[ParsedTransaction] = []
    for tx in transactions:
        if tx.parsing_error:
            kept.append(tx)
            continue
        partner: Optional[ParsedTransaction] = None
        for candidate in kept:
            if candidate.parsing_error:
                continue
            if is_merge_pair(tx, candidate):
                partner = candidate
                break
        if partner is None:
            kept.append(tx)
        else:
            _absorb(partner, tx)
    return kept


class Privat24Parser(BaseParser):
    source = ImportSource.privat24

    def parse_messages(self, text: str) -> list[ParsedTransaction]:
        parsed: list[ParsedTransaction] = []
        for message in split_messages(text):
            lines = to_lines(message)
            created_at = parse_header_date(lines[0])
            body = "\n".join(lines[1:])
            if not body:
                parsed.append(
                    ParsedTransaction(raw=message, date=created_at, parsing_error="empty input")
                )
                continue
            identity = f"{created_at.isoformat()}|{body}"
            try:
                tx = classify(body)(body, created_at)
            except InvalidFormatError as exc:
                tx = ParsedTransaction(raw=body, date=created_at, parsing_error=str(exc))
            tx.identity = identity
            parsed.append(tx)
        return merge(parsed)

    def parse(self, ctx: ParseContext, payloads: list[bytes]) -> list[ImportRow]:
        transactions: list[ParsedTransaction] = []
        for payload in payloads:
            transactions.extend(self.parse_messages(decode_text(payload)))
        account_map = account_map_by_numbers(ctx.accounts)
        logger.info(f"privat24_parsed: transactions={len(transactions)}")
        return self.to_rows(ctx, transactions, account_map)
