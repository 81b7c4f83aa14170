from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from config import get_settings
from errors import (
    InvariantViolation,
    MissingFieldError,
    NotFoundError,
    account_not_found,
)
from models import Account, AccountType, DoubleEntry, Transaction
from money import round_to_places
from periods import utc_now


DEBIT_NORMAL_TYPES = {AccountType.asset, AccountType.expense}


def is_debit_normal(account_type: AccountType) -> bool:
    return account_type in DEBIT_NORMAL_TYPES


def source_leg_is_debit(account_type: AccountType, source_base_amount: Decimal) -> bool:
    if is_debit_normal(account_type):
        return source_base_amount > 0
    return source_base_amount < 0


def build_entries(
    txn: Transaction, source_account: Account, base_currency: str
) -> list[DoubleEntry]:
    if txn.source_account_id is None or txn.destination_account_id is None:
        raise MissingFieldError(
            f"transaction {txn.id} requires both source and destination accounts"
        )
    source_base = txn.source_amount_in_base_currency
    destination_base = txn.destination_amount_in_base_currency
    if source_base is None or destination_base is None:
        raise MissingFieldError(
            f"transaction {txn.id} has no amounts in base currency"
        )

    if round_to_places(abs(source_base), 18) != round_to_places(
        abs(destination_base), 18
    ):
        raise InvariantViolation(
            "source and destination amounts in base currency must be equal"
        )
    if not ((source_base > 0 > destination_base) or (source_base < 0 < destination_base)):
        raise InvariantViolation(
            "source and destination amounts in base currency must have opposite signs"
        )

    source_is_debit = source_leg_is_debit(source_account.type, source_base)
    amount = abs(source_base)
    return [
        DoubleEntry(
            transaction_id=txn.id,
            account_id=txn.source_account_id,
            is_debit=source_is_debit,
            amount_in_base_currency=amount,
            base_currency=base_currency,
        ),
        DoubleEntry(
            transaction_id=txn.id,
            account_id=txn.destination_account_id,
            is_debit=not source_is_debit,
            amount_in_base_currency=amount,
            base_currency=base_currency,
        ),
    ]


class DoubleEntryService:
    def __init__(self, session: Session, base_currency: Optional[str] = None) -> None:
        self.session = session
        self.base_currency = base_currency or get_settings().base_currency

    def record(
        self, transactions: Iterable[Transaction], accounts: dict[int, Account]
    ) -> list[DoubleEntry]:
        """Replace the ledger legs of each transaction with freshly posted ones."""
        transactions = list(transactions)
        ids = [txn.id for txn in transactions if txn.id is not None]
        if ids:
            self.session.execute(
                update(DoubleEntry)
                .where(
                    DoubleEntry.transaction_id.in_(ids),
                    DoubleEntry.deleted_at.is_(None),
                )
                .values(deleted_at=utc_now())
                .execution_options(synchronize_session=False)
            )

        entries: list[DoubleEntry] = []
        for txn in transactions:
            source_account = accounts.get(txn.source_account_id)
            if txn.source_account_id is not None and source_account is None:
                raise NotFoundError(account_not_found(txn.source_account_id))
            entries.extend(build_entries(txn, source_account, self.base_currency))
        self.session.add_all(entries)
        self.session.flush()
        return entries

    def delete(self, transaction_ids: Iterable[int]) -> None:
        ids = list(transaction_ids)
        if not ids:
            return
        self.session.execute(
            update(DoubleEntry)
            .where(
                DoubleEntry.transaction_id.in_(ids),
                DoubleEntry.deleted_at.is_(None),
            )
            .values(deleted_at=utc_now())
            .execution_options(synchronize_session=False)
        )
