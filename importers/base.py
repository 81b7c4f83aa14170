from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from errors import ConflictError, InvalidFormatError, NotFoundError
from models import Account, AccountType, Category, ImportSource, Tag
from money import CurrencyConverter
from schemas import AdjustmentIn, ExpenseIn, IncomeIn, TransactionIn, TransferIn


class ParsedType(str, Enum):
    unknown = "unknown"
    income = "income"
    expense = "expense"
    internal_transfer = "internal_transfer"
    remote_transfer = "remote_transfer"


@dataclass(eq=False)
class ParsedTransaction:
    """One bank-side operation before it is mapped onto ledger accounts."""

    raw: str = ""
    type: ParsedType = ParsedType.unknown
    date: Optional[datetime] = None
    description: str = ""
    source_amount: Decimal = Decimal("0")
    source_currency: str = ""
    source_account: str = ""
    destination_amount: Decimal = Decimal("0")
    destination_currency: str = ""
    destination_account: str = ""
    time_from_message: str = ""
    direction_to: bool = False
    original_type: str = ""
    identity: str = ""
    duplicates: list["ParsedTransaction"] = field(default_factory=list)
    parsing_error: Optional[str] = None

    @property
    def dedup_identity(self) -> str:
        return self.identity or self.raw


@dataclass
class ImportRow:
    title: str
    notes: str
    transaction_date: Optional[datetime]
    dedup_keys: list[str]
    request: Optional[TransactionIn] = None
    parsing_error: Optional[str] = None
    duplicate_transaction_id: Optional[int] = None


@dataclass
class ParseContext:
    session: Session
    converter: CurrencyConverter
    accounts: list[Account]
    tags: dict[str, Tag] = field(default_factory=dict)
    categories: dict[str, Category] = field(default_factory=dict)
    skip_rules: bool = False
    treat_dates_as_utc: bool = False


def dedup_key(source: ImportSource, identity: str) -> str:
    digest = hashlib.sha256(f"{source.value}:{identity}".encode("utf-8"))
    return digest.hexdigest()


def amount_text(value: Decimal) -> str:
    return format(value, "f")


def account_map_by_numbers(accounts: Sequence[Account]) -> dict[str, Account]:
    """Map every comma-separated account number to its account."""
    mapping: dict[str, Account] = {}
    for account in accounts:
        for number in (account.account_number or "").split(","):
            number = number.strip()
            if not number:
                continue
            if number in mapping:
                raise ConflictError(f"duplicate account number: {number}")
            mapping[number] = account
    return mapping


def default_account(accounts: Sequence[Account], account_type: AccountType) -> Account:
    for account in accounts:
        if account.type == account_type and account.is_default:
            return account
    raise NotFoundError(f"default account for type {account_type.value} not found")


def strip_account_prefix(account: str) -> str:
    """Lower-case an account string and drop letters, unless it starts with a digit."""
    account = account.lower()
    if account and not account[0].isalpha():
        return account
    return "".join(ch for ch in account if not ch.isalpha())


def to_lines(value: str) -> list[str]:
    return value.replace("\r\n", "\n").split("\n")


class BaseParser:
    source: ImportSource

    def parse(self, ctx: ParseContext, payloads: list[bytes]) -> list[ImportRow]:
        raise NotImplementedError

    def key(self, tx: ParsedTransaction) -> str:
        return dedup_key(self.source, tx.dedup_identity)

    def _resolve(
        self,
        ctx: ParseContext,
        account_map: dict[str, Account],
        name: str,
        amount: Decimal,
        currency: str,
        fallback: Optional[AccountType],
    ) -> tuple[Account, Decimal]:
        """Find an account by number (or its type default) and express ``amount`` in its currency."""
        account = account_map.get(name) if name else None
        if account is None:
            if fallback is None:
                raise InvalidFormatError(
                    f"account not found for internal transfer: account_name={name}"
                )
            account = default_account(ctx.accounts, fallback)
        return account, self._convert(ctx, currency, account.currency, amount)

    @staticmethod
    def _convert(ctx: ParseContext, from_currency: str, to_currency: str, amount: Decimal) -> Decimal:
        amount = abs(amount)
        if not from_currency or from_currency == to_currency:
            return amount
        return abs(ctx.converter.convert(from_currency, to_currency, amount))

    def _expense_request(
        self,
        ctx: ParseContext,
        account_map: dict[str, Account],
        tx: ParsedTransaction,
    ) -> ExpenseIn:
        source, source_amount = self._resolve(
            ctx,
            account_map,
            tx.source_account,
            tx.source_amount,
            tx.source_currency,
            AccountType.asset,
        )
        foreign_currency = tx.destination_currency or tx.source_currency
        foreign_amount = tx.destination_amount or tx.source_amount
        destination = default_account(ctx.accounts, AccountType.expense)
        destination_amount = self._convert(
            ctx, source.currency, destination.currency, source_amount
        )
        body = ExpenseIn(
            source_account_id=source.id,
            source_amount=amount_text(-source_amount),
            source_currency=source.currency,
            destination_account_id=destination.id,
            destination_amount=amount_text(destination_amount),
            destination_currency=destination.currency,
        )
        if foreign_currency and foreign_currency != source.currency:
            body.fx_source_amount = amount_text(-abs(foreign_amount))
            body.fx_source_currency = foreign_currency
        return body

    def _income_request(
        self,
        ctx: ParseContext,
        account_map: dict[str, Account],
        tx: ParsedTransaction,
    ) -> IncomeIn:
        destination, destination_amount = self._resolve(
            ctx,
            account_map,
            tx.destination_account,
            tx.destination_amount,
            tx.destination_currency,
            AccountType.asset,
        )
        source = default_account(ctx.accounts, AccountType.income)
        source_amount = self._convert(
            ctx, destination.currency, source.currency, destination_amount
        )
        return IncomeIn(
            source_account_id=source.id,
            source_amount=amount_text(-source_amount),
            source_currency=source.currency,
            destination_account_id=destination.id,
            destination_amount=amount_text(destination_amount),
            destination_currency=destination.currency,
        )

    def _transfer_request(
        self,
        ctx: ParseContext,
        account_map: dict[str, Account],
        tx: ParsedTransaction,
    ) -> TransferIn:
        source, source_amount = self._resolve(
            ctx, account_map, tx.source_account, tx.source_amount, tx.source_currency, None
        )
        destination, destination_amount = self._resolve(
            ctx,
            account_map,
            tx.destination_account,
            tx.destination_amount or tx.source_amount,
            tx.destination_currency or tx.source_currency,
            None,
        )
        if not tx.source_amount:
            source_amount = self._convert(
                ctx, destination.currency, source.currency, destination_amount
            )
        return TransferIn(
            source_account_id=source.id,
            source_amount=amount_text(-source_amount),
            source_currency=source.currency,
            destination_account_id=destination.id,
            destination_amount=amount_text(destination_amount),
            destination_currency=destination.currency,
        )

    def to_rows(
        self,
        ctx: ParseContext,
        transactions: Sequence[ParsedTransaction],
        account_map: dict[str, Account],
    ) -> list[ImportRow]:
        rows: list[ImportRow] = []
        for tx in transactions:
            keys = [self.key(tx)] + [self.key(dup) for dup in tx.duplicates]
            row = ImportRow(
                title=tx.description,
                notes=tx.raw,
                transaction_date=tx.date,
                dedup_keys=keys,
                parsing_error=tx.parsing_error,
            )
            rows.append(row)
            if tx.parsing_error:
                continue

            request = TransactionIn(
                transaction_date=tx.date,
                title=tx.description,
                notes=tx.raw,
                skip_rules=ctx.skip_rules,
            )
            if tx.type == ParsedType.income:
                request.income = self._income_request(ctx, account_map, tx)
            elif tx.type in (ParsedType.expense, ParsedType.remote_transfer):
                request.expense = self._expense_request(ctx, account_map, tx)
            elif tx.type == ParsedType.internal_transfer:
                request.transfer_between_accounts = self._transfer_request(
                    ctx, account_map, tx
                )
            else:
                row.parsing_error = f"unknown transaction type: {tx.type.value}"
                continue
            row.request = request
        return rows


def adjustment_request(account: Account, amount: Decimal) -> AdjustmentIn:
    return AdjustmentIn(
        destination_account_id=account.id,
        destination_amount=amount_text(amount),
        destination_currency=account.currency,
    )
