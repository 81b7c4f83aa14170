"""Firefly III CSV export.

Unlike the bank parsers, Firefly rows already name both accounts, so rows map
straight onto transaction requests by account *name*; categories, budgets,
bills and tags are matched against local tags (plain or ``prefix:`` form).
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from csv_utils import read_rows, row_to_line
from errors import InvalidFormatError, LedgerError
from models import Account, AccountType, ImportSource
from schemas import ExpenseIn, IncomeIn, TransactionIn, TransferIn

from .base import (
    BaseParser,
    ImportRow,
    ParseContext,
    adjustment_request,
    amount_text,
    dedup_key,
    default_account,
)


logger = logging.getLogger(__name__)

COLUMNS = (
    "type",
    "amount",
    "foreign_amount",
    "currency_code",
    "foreign_currency_code",
    "description",
    "date",
    "source_name",
    "source_type",
    "destination_name",
    "destination_type",
    "notes",
    "journal_id",
    "category",
    "budget",
    "bill",
    "tags",
)

DEBT = "Debt"
RECONCILIATION_ACCOUNT = "Reconciliation account"


def parse_date(value: str, treat_as_utc: bool) -> datetime:
    try:
        parsed = datetime.strptime(value.strip(), "%Y-%m-%dT%H:%M:%S%z")
    except ValueError as exc:
        raise InvalidFormatError(f"failed to parse date: {value}") from exc
    if treat_as_utc:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _decimal(value: str, label: str) -> Decimal:
    try:
        return Decimal(value.strip())
    except InvalidOperation as exc:
        raise InvalidFormatError(f"failed to parse {label}: {value}") from exc


def tag_candidates(value: str, prefix: str) -> list[str]:
    value = value.strip()
    if not value:
        return []
    return [value, f"{prefix}{value}"]


class FireflyParser(BaseParser):
    source = ImportSource.firefly

    def _account(self, accounts: dict[str, Account], name: str, role: str) -> Account:
        account = accounts.get(name)
        if account is None:
            raise InvalidFormatError(f"{role} account not found: {name}")
        return account

    @staticmethod
    def _check_currency(account: Account, currency: str, journal_id: str, role: str) -> None:
        if account.currency != currency:
            raise InvalidFormatError(
                f"{role} account currency {account.currency} does not match "
                f"transaction currency {currency} for journal {journal_id}"
            )

    def _secondary(
        self,
        ctx: ParseContext,
        accounts: dict[str, Account],
        name: str,
        amount: Decimal,
        currency: str,
        fallback: AccountType,
    ) -> tuple[Account, Decimal]:
        account = accounts.get(name) or default_account(ctx.accounts, fallback)
        return account, self._convert(ctx, currency, account.currency, amount)

    def _expense(
        self,
        ctx: ParseContext,
        accounts: dict[str, Account],
        source: Account,
        amount: Decimal,
        currency: str,
        destination_name: str,
    ) -> ExpenseIn:
        destination, destination_amount = self._secondary(
            ctx, accounts, destination_name, amount, currency, AccountType.expense
        )
        return ExpenseIn(
            source_account_id=source.id,
            source_amount=amount_text(-abs(amount)),
            source_currency=currency,
            destination_account_id=destination.id,
            destination_amount=amount_text(destination_amount),
            destination_currency=destination.currency,
        )

    def build_request(
        self,
        ctx: ParseContext,
        accounts: dict[str, Account],
        record: dict[str, str],
    ) -> TransactionIn:
        operation = record["type"]
        currency = record["currency_code"].strip().upper()
        foreign_currency = record["foreign_currency_code"].strip().upper()
        foreign_amount = record["foreign_amount"].strip()
        journal_id = record["journal_id"]
        source_name = record["source_name"]
        destination_name = record["destination_name"]
        amount = _decimal(record["amount"], "amount")

        request = TransactionIn(
            transaction_date=parse_date(record["date"], ctx.treat_dates_as_utc),
            title=record["description"],
            notes=record["notes"],
            skip_rules=ctx.skip_rules,
        )

        category = ctx.categories.get(record["category"])
        if category is not None:
            request.category_id = category.id
        candidates = tag_candidates(record["category"], "category:")
        candidates += tag_candidates(record["budget"], "budget:")
        candidates += tag_candidates(record["bill"], "bill:")
        for remote_tag in record["tags"].split(","):
            candidates += tag_candidates(remote_tag, "tag:")
        tag_ids: list[int] = []
        for name in dict.fromkeys(candidates):
            tag = ctx.tags.get(name)
            if tag is not None and tag.id not in tag_ids:
                tag_ids.append(tag.id)
        request.tag_ids = tag_ids

        # paying off a debt account moves money between two balance accounts
        if operation == "Withdrawal" and record["destination_type"] == DEBT:
            operation = "Transfer"

        if operation == "Withdrawal":
            source = self._account(accounts, source_name, "source")
            self._check_currency(source, currency, journal_id, "source")
            body = self._expense(ctx, accounts, source, amount, currency, destination_name)
            if foreign_amount:
                body.fx_source_amount = amount_text(
                    -abs(_decimal(foreign_amount, "foreign amount"))
                )
                body.fx_source_currency = foreign_currency
            request.expense = body
        elif operation in ("Opening balance", "Deposit"):
            if record["source_type"] == DEBT:
                source = self._account(accounts, source_name, "source")
                self._check_currency(source, currency, journal_id, "source")
                request.expense = self._expense(
                    ctx, accounts, source, amount, currency, destination_name
                )
            else:
                destination = self._account(accounts, destination_name, "destination")
                self._check_currency(destination, currency, journal_id, "destination")
                source, source_amount = self._secondary(
                    ctx, accounts, source_name, amount, currency, AccountType.income
                )
                request.income = IncomeIn(
                    source_account_id=source.id,
                    source_amount=amount_text(-source_amount),
                    source_currency=source.currency,
                    destination_account_id=destination.id,
                    destination_amount=amount_text(abs(amount)),
                    destination_currency=currency,
                )
        elif operation == "Reconciliation":
            if record["destination_type"] == RECONCILIATION_ACCOUNT:
                # the reconciled account is on the source side of the export
                target = self._account(accounts, source_name, "source")
                adjusted = -amount
            else:
                target = self._account(accounts, destination_name, "destination")
                adjusted = abs(amount)
            self._check_currency(target, currency, journal_id, "destination")
            request.adjustment = adjustment_request(target, adjusted)
        elif operation == "Transfer":
            source = self._account(accounts, source_name, "source")
            destination = self._account(accounts, destination_name, "destination")
            foreign_currency = foreign_currency or currency
            if foreign_currency != currency and not foreign_amount:
                raise InvalidFormatError(
                    f"foreign amount is required for currency conversion "
                    f"from {currency} to {foreign_currency}"
                )
            destination_amount = (
                _decimal(foreign_amount, "foreign amount") if foreign_amount else amount
            )
            self._check_currency(source, currency, journal_id, "source")
            if destination.currency != foreign_currency:
                raise InvalidFormatError(
                    f"destination account currency {destination.currency} does not match "
                    f"foreign transaction currency {foreign_currency} for journal {journal_id}"
                )
            request.transfer_between_accounts = TransferIn(
                source_account_id=source.id,
                source_amount=amount_text(-abs(amount)),
                source_currency=currency,
                destination_account_id=destination.id,
                destination_amount=amount_text(abs(destination_amount)),
                destination_currency=foreign_currency,
            )
        else:
            raise InvalidFormatError(f"unsupported operation type: {operation}")
        return request

    def parse_payload(self, ctx: ParseContext, data: bytes) -> list[ImportRow]:
        rows = read_rows(data)
        if not rows:
            raise InvalidFormatError("no records found in CSV data")
        header = {name.strip(): index for index, name in enumerate(rows[0])}
        missing = [name for name in COLUMNS if name not in header]
        if missing:
            raise InvalidFormatError(f"missing columns: {', '.join(missing)}")

        accounts = {account.name: account for account in ctx.accounts}
        result: list[ImportRow] = []
        # exports are newest first
        for row in reversed(rows[1:]):
            if not row or not any(cell.strip() for cell in row):
                continue
            record = {
                name: row[header[name]] if header[name] < len(row) else ""
                for name in COLUMNS
            }
            item = ImportRow(
                title=record["description"],
                notes=record["notes"] or row_to_line(row),
                transaction_date=None,
                dedup_keys=[dedup_key(self.source, f"firefly_{record['journal_id']}")],
            )
            try:
                item.request = self.build_request(ctx, accounts, record)
                item.transaction_date = item.request.transaction_date
            except LedgerError as exc:
                item.parsing_error = f"journal {record['journal_id']}: {exc}"
            result.append(item)
        return result

    def parse(self, ctx: ParseContext, payloads: list[bytes]) -> list[ImportRow]:
        result: list[ImportRow] = []
        for payload in payloads:
            result.extend(self.parse_payload(ctx, payload))
        logger.info(f"firefly_parsed: transactions={len(result)}")
        return result
