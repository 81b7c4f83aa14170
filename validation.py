from __future__ import annotations

import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from cachetools import TTLCache
from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import (
    BusinessRuleViolation,
    MissingFieldError,
    NotFoundError,
    account_not_found,
    currency_not_found,
)
from models import Account, AccountType, Currency, TransactionDraft, TransactionType


@dataclass(frozen=True)
class AccountSnapshot:
    id: int
    currency: str
    type: AccountType


_account_cache: TTLCache = TTLCache(maxsize=1000, ttl=600)
_account_lock = threading.Lock()


def invalidate_account(account_id: int) -> None:
    with _account_lock:
        _account_cache.pop(account_id, None)


def clear_account_cache() -> None:
    with _account_lock:
        _account_cache.clear()


ASSET_OR_LIABILITY = frozenset({AccountType.asset, AccountType.liability})

# transaction type -> (allowed source types, allowed destination types)
APPLICABLE_ACCOUNTS: dict[TransactionType, tuple[frozenset, frozenset]] = {
    TransactionType.transfer_between_accounts: (ASSET_OR_LIABILITY, ASSET_OR_LIABILITY),
    TransactionType.income: (
        frozenset({AccountType.income}),
        frozenset({AccountType.asset}),
    ),
    TransactionType.expense: (ASSET_OR_LIABILITY, frozenset({AccountType.expense})),
    TransactionType.adjustment: (
        frozenset({AccountType.adjustment}),
        ASSET_OR_LIABILITY,
    ),
}


def _required(value: object, field: str, txn_type: TransactionType) -> None:
    missing = value is None or value == "" or value == 0
    if missing:
        raise MissingFieldError(f"{field} is required for {txn_type.label}")


def _absent(value: object, field: str, txn_type: TransactionType) -> None:
    if value not in (None, ""):
        raise BusinessRuleViolation(f"{field} must be empty for {txn_type.label}")


def _negative(value: Optional[Decimal], field: str, txn_type: TransactionType) -> None:
    _required(value, field, txn_type)
    if value > 0:
        raise BusinessRuleViolation(f"{field} must be negative for {txn_type.label}")


def _positive(value: Optional[Decimal], field: str, txn_type: TransactionType) -> None:
    _required(value, field, txn_type)
    if value < 0:
        raise BusinessRuleViolation(f"{field} must be positive for {txn_type.label}")


def validate_shape(draft: TransactionDraft) -> None:
    txn_type = draft.type
    if txn_type is None:
        raise MissingFieldError("transaction type is required")
    if draft.transaction_date_time is None:
        raise MissingFieldError("transaction date is required")

    if txn_type == TransactionType.adjustment:
        _absent(draft.source_account_id, "source_account_id", txn_type)
        _absent(draft.source_amount, "source_amount", txn_type)
        _absent(draft.source_currency, "source_currency", txn_type)
        _required(draft.destination_account_id, "destination_account_id", txn_type)
        _required(draft.destination_amount, "destination_amount", txn_type)
        _required(draft.destination_currency, "destination_currency", txn_type)
    else:
        _required(draft.source_account_id, "source_account_id", txn_type)
        _required(draft.destination_account_id, "destination_account_id", txn_type)
        _negative(draft.source_amount, "source_amount", txn_type)
        _positive(draft.destination_amount, "destination_amount", txn_type)
        _required(draft.source_currency, "source_currency", txn_type)
        _required(draft.destination_currency, "destination_currency", txn_type)

    has_fx_amount = draft.fx_source_amount is not None
    has_fx_currency = bool(draft.fx_source_currency)
    if txn_type != TransactionType.expense:
        _absent(draft.fx_source_amount, "fx_source_amount", txn_type)
        _absent(draft.fx_source_currency, "fx_source_currency", txn_type)
        return

    if has_fx_amount and not has_fx_currency:
        raise MissingFieldError(
            "foreign currency is required when foreign amount is provided"
        )
    if has_fx_currency and not has_fx_amount:
        raise MissingFieldError(
            "foreign amount is required when foreign currency is provided"
        )
    if has_fx_amount and draft.fx_source_amount > 0:
        raise BusinessRuleViolation("foreign amount must be negative")


class TransactionValidator:
    def __init__(self, session: Session) -> None:
        self.session = session

    def _load_accounts(self, account_ids: set[int]) -> dict[int, AccountSnapshot]:
        found: dict[int, AccountSnapshot] = {}
        missing: set[int] = set()
        with _account_lock:
            for account_id in account_ids:
                cached = _account_cache.get(account_id)
                if cached is None:
                    missing.add(account_id)
                else:
                    found[account_id] = cached
        if missing:
            rows = self.session.scalars(
                select(Account).where(
                    Account.id.in_(missing), Account.deleted_at.is_(None)
                )
            ).all()
            snapshots = [AccountSnapshot(row.id, row.currency, row.type) for row in rows]
            with _account_lock:
                for snapshot in snapshots:
                    _account_cache[snapshot.id] = snapshot
            for snapshot in snapshots:
                found[snapshot.id] = snapshot
        return found

    def _known_currencies(self, currency_ids: set[str]) -> set[str]:
        if not currency_ids:
            return set()
        stmt = select(Currency.id).where(
            Currency.id.in_(currency_ids), Currency.deleted_at.is_(None)
        )
        return set(self.session.scalars(stmt).all())

    def validate(self, drafts: Iterable[TransactionDraft]) -> None:
        drafts = list(drafts)
        for draft in drafts:
            validate_shape(draft)

        account_ids: set[int] = set()
        currency_ids: set[str] = set()
        for draft in drafts:
            account_ids.update(
                a for a in (draft.source_account_id, draft.destination_account_id) if a
            )
            currency_ids.update(
                c
                for c in (
                    draft.source_currency,
                    draft.destination_currency,
                    draft.fx_source_currency,
                )
                if c
            )
        accounts = self._load_accounts(account_ids)
        known_currencies = self._known_currencies(currency_ids)

        for draft in drafts:
            for currency_id in (
                draft.source_currency,
                draft.destination_currency,
                draft.fx_source_currency,
            ):
                if currency_id and currency_id not in known_currencies:
                    raise NotFoundError(currency_not_found(currency_id))
            self._validate_accounts(draft, accounts)

    def _validate_accounts(
        self, draft: TransactionDraft, accounts: dict[int, AccountSnapshot]
    ) -> None:
        sides = [
            ("source", draft.source_account_id, draft.source_currency),
            ("destination", draft.destination_account_id, draft.destination_currency),
        ]
        allowed_source, allowed_destination = APPLICABLE_ACCOUNTS[draft.type]
        for side, account_id, currency_id in sides:
            if not account_id:
                continue
            account = accounts.get(account_id)
            if account is None:
                raise NotFoundError(account_not_found(account_id))
            if account.currency != currency_id:
                raise BusinessRuleViolation(
                    f"account with id {account_id} has currency "
                    f"{account.currency}, expected {currency_id}"
                )
            allowed = allowed_source if side == "source" else allowed_destination
            if account.type not in allowed:
                raise BusinessRuleViolation(
                    f"{side} account {account_id} is not applicable for "
                    f"transaction type: {draft.type.label}"
                )
