from __future__ import annotations

import logging
import threading
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Iterable, Iterator, Optional

from cachetools import TTLCache
from sqlalchemy import Column, bindparam, event, func, select, update
from sqlalchemy.orm import Session

from database import insert_ignore
from errors import NotFoundError, account_not_found
from models import Account, DailyStat, MonthlyStat, Transaction
from periods import iter_days, iter_months, month_start, utc_today


logger = logging.getLogger(__name__)

# account_id -> (first_day, last_day) known to have a daily row for every day
_no_gap_cache: TTLCache = TTLCache(maxsize=1000, ttl=600)
_no_gap_lock = threading.Lock()

# ranges filled inside a session's open transaction, published on commit
_PENDING_RANGES = "pending_no_gap_ranges"


def clear_gap_cache(session: Optional[Session] = None) -> None:
    with _no_gap_lock:
        _no_gap_cache.clear()
    if session is not None:
        session.info.pop(_PENDING_RANGES, None)


def _known_range(session: Session, account_id: int) -> Optional[tuple[date, date]]:
    pending = session.info.get(_PENDING_RANGES, {})
    if account_id in pending:
        return pending[account_id]
    with _no_gap_lock:
        return _no_gap_cache.get(account_id)


@event.listens_for(Session, "after_commit")
def _publish_pending_ranges(session: Session) -> None:
    pending = session.info.pop(_PENDING_RANGES, None)
    if not pending:
        return
    with _no_gap_lock:
        _no_gap_cache.update(pending)


@event.listens_for(Session, "after_transaction_end")
def _discard_pending_ranges(session: Session, transaction) -> None:
    # a committed root transaction has already published; anything left was rolled back
    if transaction.parent is None:
        session.info.pop(_PENDING_RANGES, None)


def transaction_sides(txn: Transaction) -> Iterator[tuple[int, Decimal]]:
    """Yield (account_id, signed delta in the account's currency) per side."""
    if txn.source_account_id is not None and txn.source_amount is not None:
        yield txn.source_account_id, txn.source_amount
    if txn.destination_account_id is not None and txn.destination_amount is not None:
        yield txn.destination_account_id, txn.destination_amount


class StatsService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def handle_transactions(
        self, transactions: Iterable[Transaction], *, fill_gaps: bool = True
    ) -> None:
        """Apply newly posted transactions to balances and snapshots."""
        earliest_by_account: dict[int, date] = {}
        for txn in transactions:
            for account_id, delta in transaction_sides(txn):
                self._apply_delta(account_id, txn.transaction_date_only, delta)
                current = earliest_by_account.get(account_id)
                if current is None or txn.transaction_date_only < current:
                    earliest_by_account[account_id] = txn.transaction_date_only

        if fill_gaps:
            for account_id, start in earliest_by_account.items():
                self._ensure_no_gaps(account_id, start)

    def reverse_transactions(self, transactions: Iterable[Transaction]) -> None:
        """Take the contribution of transactions back out (delete/update)."""
        for txn in transactions:
            for account_id, delta in transaction_sides(txn):
                self._apply_delta(account_id, txn.transaction_date_only, -delta)

    def _apply_delta(self, account_id: int, day: date, delta: Decimal) -> None:
        self._ensure_daily_row(account_id, day)
        self._shift(DailyStat.__table__.c.amount, account_id, day, delta)

        month = month_start(day)
        self._ensure_monthly_row(account_id, month)
        self._shift(MonthlyStat.__table__.c.balance, account_id, month, delta)

        account = self.session.get(Account, account_id)
        if account is None:
            raise NotFoundError(account_not_found(account_id))
        account.current_balance = (account.current_balance or Decimal("0")) + delta

    def _shift(self, column: Column, account_id: int, start: date, delta: Decimal) -> None:
        """Add ``delta`` to every snapshot of the account dated ``start`` or later."""
        table = column.table
        criteria = (table.c.account_id == account_id, table.c.date >= start)
        if self.session.get_bind().dialect.name == "postgresql":
            self.session.execute(
                update(table).where(*criteria).values({column.name: column + delta})
            )
            return

        # sqlite keeps decimals as text and would add them as floats
        rows = self.session.execute(select(table.c.date, column).where(*criteria)).all()
        if not rows:
            return
        self.session.execute(
            update(table)
            .where(
                table.c.account_id == bindparam("b_account_id"),
                table.c.date == bindparam("b_date"),
            )
            .values({column.name: bindparam("b_value", type_=column.type)}),
            [
                {"b_account_id": account_id, "b_date": day, "b_value": value + delta}
                for day, value in rows
            ],
        )

    def _ensure_daily_row(self, account_id: int, day: date) -> None:
        exists = self.session.scalar(
            select(DailyStat.date).where(
                DailyStat.account_id == account_id, DailyStat.date == day
            )
        )
        if exists is not None:
            return
        previous = self.session.scalar(
            select(DailyStat.amount)
            .where(DailyStat.account_id == account_id, DailyStat.date < day)
            .order_by(DailyStat.date.desc())
            .limit(1)
        )
        insert_ignore(
            self.session,
            DailyStat.__table__,
            [
                {
                    "account_id": account_id,
                    "date": day,
                    "amount": previous if previous is not None else Decimal("0"),
                }
            ],
        )

    def _ensure_monthly_row(self, account_id: int, month: date) -> None:
        exists = self.session.scalar(
            select(MonthlyStat.date).where(
                MonthlyStat.account_id == account_id, MonthlyStat.date == month
            )
        )
        if exists is not None:
            return
        previous = self.session.scalar(
            select(MonthlyStat.balance)
            .where(MonthlyStat.account_id == account_id, MonthlyStat.date < month)
            .order_by(MonthlyStat.date.desc())
            .limit(1)
        )
        insert_ignore(
            self.session,
            MonthlyStat.__table__,
            [
                {
                    "account_id": account_id,
                    "date": month,
                    "balance": previous if previous is not None else Decimal("0"),
                }
            ],
        )

    def _ensure_no_gaps(self, account_id: int, start: date) -> None:
        today = utc_today()
        cached = _known_range(self.session, account_id)
        if cached is not None:
            first_day, last_day = cached
            if first_day <= start and last_day >= today:
                return
        self.calculate_daily_stat(account_id, start)

    def _contributions(
        self, account_id: int, start: date, end: date
    ) -> dict[date, Decimal]:
        totals: dict[date, Decimal] = defaultdict(lambda: Decimal("0"))
        source_rows = self.session.execute(
            select(Transaction.transaction_date_only, Transaction.source_amount).where(
                Transaction.source_account_id == account_id,
                Transaction.deleted_at.is_(None),
                Transaction.source_amount.is_not(None),
                Transaction.transaction_date_only.between(start, end),
            )
        ).all()
        destination_rows = self.session.execute(
            select(
                Transaction.transaction_date_only, Transaction.destination_amount
            ).where(
                Transaction.destination_account_id == account_id,
                Transaction.deleted_at.is_(None),
                Transaction.destination_amount.is_not(None),
                Transaction.transaction_date_only.between(start, end),
            )
        ).all()
        for day, amount in [*source_rows, *destination_rows]:
            totals[day] += amount
        return totals

    def calculate_daily_stat(self, account_id: int, start_date: date) -> int:
        """Insert a snapshot for every missing day (and month) up to today."""
        today = utc_today()
        if start_date > today:
            return 0

        existing = dict(
            self.session.execute(
                select(DailyStat.date, DailyStat.amount).where(
                    DailyStat.account_id == account_id,
                    DailyStat.date >= start_date,
                    DailyStat.date <= today,
                )
            ).all()
        )
        running = self.session.scalar(
            select(DailyStat.amount)
            .where(DailyStat.account_id == account_id, DailyStat.date < start_date)
            .order_by(DailyStat.date.desc())
            .limit(1)
        )
        running = running if running is not None else Decimal("0")
        contributions = self._contributions(account_id, start_date, today)

        missing_rows: list[dict[str, object]] = []
        for day in iter_days(start_date, today):
            if day in existing:
                running = existing[day]
                continue
            running = running + contributions.get(day, Decimal("0"))
            missing_rows.append({"account_id": account_id, "date": day, "amount": running})
        insert_ignore(self.session, DailyStat.__table__, missing_rows)

        self._calculate_monthly_stat(account_id, start_date, today, contributions)

        cached = _known_range(self.session, account_id)
        first_day = start_date if cached is None else min(cached[0], start_date)
        self.session.info.setdefault(_PENDING_RANGES, {})[account_id] = (first_day, today)
        return len(missing_rows)

    def _calculate_monthly_stat(
        self,
        account_id: int,
        start_date: date,
        today: date,
        contributions: dict[date, Decimal],
    ) -> None:
        first_month = month_start(start_date)
        existing = dict(
            self.session.execute(
                select(MonthlyStat.date, MonthlyStat.balance).where(
                    MonthlyStat.account_id == account_id,
                    MonthlyStat.date >= first_month,
                    MonthlyStat.date <= today,
                )
            ).all()
        )
        running = self.session.scalar(
            select(MonthlyStat.balance)
            .where(MonthlyStat.account_id == account_id, MonthlyStat.date < first_month)
            .order_by(MonthlyStat.date.desc())
            .limit(1)
        )
        running = running if running is not None else Decimal("0")

        monthly_totals: dict[date, Decimal] = defaultdict(lambda: Decimal("0"))
        for day, amount in contributions.items():
            monthly_totals[month_start(day)] += amount

        missing_rows: list[dict[str, object]] = []
        for month in iter_months(first_month, today):
            if month in existing:
                running = existing[month]
                continue
            if month == first_month and month < start_date:
                # part of the month precedes the window; take it from the ledger
                running = running + self._month_total_before(account_id, month, start_date)
            running = running + monthly_totals.get(month, Decimal("0"))
            missing_rows.append({"account_id": account_id, "date": month, "balance": running})
        insert_ignore(self.session, MonthlyStat.__table__, missing_rows)

    def _month_total_before(self, account_id: int, month: date, start_date: date) -> Decimal:
        totals = self._contributions(account_id, month, start_date)
        return sum(
            (amount for day, amount in totals.items() if day < start_date),
            Decimal("0"),
        )

    def fix_daily_gaps(self) -> int:
        """Gap-fill every non-deleted account; returns inserted daily rows."""
        accounts = self.session.scalars(
            select(Account).where(Account.deleted_at.is_(None)).order_by(Account.id)
        ).all()
        inserted = 0
        for account in accounts:
            start = self.session.scalar(
                select(func.max(DailyStat.date)).where(
                    DailyStat.account_id == account.id
                )
            )
            if start is None:
                start = self._first_transaction_date(account.id)
            if start is None:
                start = account.created_at.date()
            inserted += self.calculate_daily_stat(account.id, start)
        return inserted

    def _first_transaction_date(self, account_id: int) -> Optional[date]:
        return self.session.scalar(
            select(func.min(Transaction.transaction_date_only)).where(
                Transaction.deleted_at.is_(None),
                (Transaction.source_account_id == account_id)
                | (Transaction.destination_account_id == account_id),
            )
        )
