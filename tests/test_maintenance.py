from datetime import timedelta
from decimal import Decimal

from sqlalchemy import delete, func, select

from factories import (
    daily_amount,
    days_ago,
    default_account,
    expense_request,
    income_request,
    make_account,
)
from models import AccountType, DailyStat, DoubleEntry, MonthlyStat
from periods import month_start, utc_today
from services import MaintenanceService, TransactionService


def _seed(session):
    wallet = make_account(session, "Wallet")
    expense = default_account(session, AccountType.expense)
    income = default_account(session, AccountType.income)
    service = TransactionService(session)
    service.create(expense_request(wallet, expense, "10", when=days_ago(3)))
    service.create(income_request(income, wallet, "100", when=days_ago(1)))
    return wallet


def _daily_rows(session, account_id):
    return session.execute(
        select(DailyStat.date, DailyStat.amount)
        .where(DailyStat.account_id == account_id)
        .order_by(DailyStat.date)
    ).all()


def test_recalculate_rebuilds_tampered_state(session) -> None:
    wallet = _seed(session)
    today = utc_today()
    wallet.current_balance = Decimal("999")
    session.execute(delete(DailyStat).where(DailyStat.account_id == wallet.id))
    session.execute(delete(MonthlyStat).where(MonthlyStat.account_id == wallet.id))
    session.execute(delete(DoubleEntry))
    session.commit()

    count = MaintenanceService(session).recalculate_all()

    assert count == 2
    session.refresh(wallet)
    assert wallet.current_balance == Decimal("90")
    assert daily_amount(session, wallet.id, today - timedelta(days=3)) == Decimal("-10")
    assert daily_amount(session, wallet.id, today - timedelta(days=2)) == Decimal("-10")
    assert daily_amount(session, wallet.id, today - timedelta(days=1)) == Decimal("90")
    assert daily_amount(session, wallet.id, today) == Decimal("90")
    monthly = session.scalar(
        select(MonthlyStat.balance).where(
            MonthlyStat.account_id == wallet.id, MonthlyStat.date == month_start(today)
        )
    )
    assert monthly == Decimal("90")
    assert session.scalar(select(func.count(DoubleEntry.id))) == 4


def test_recalculate_is_idempotent(session) -> None:
    wallet = _seed(session)
    service = MaintenanceService(session)

    service.recalculate_all()
    first = _daily_rows(session, wallet.id)
    service.recalculate_all()

    assert _daily_rows(session, wallet.id) == first
    session.refresh(wallet)
    assert wallet.current_balance == Decimal("90")


def test_fix_daily_gaps_fills_trailing_days(session) -> None:
    wallet = _seed(session)
    today = utc_today()
    session.execute(
        delete(DailyStat).where(
            DailyStat.account_id == wallet.id,
            DailyStat.date >= today - timedelta(days=1),
        )
    )
    session.commit()

    inserted = MaintenanceService(session).fix_daily_gaps()

    assert inserted >= 2
    assert daily_amount(session, wallet.id, today - timedelta(days=1)) == Decimal("90")
    assert daily_amount(session, wallet.id, today) == Decimal("90")


def test_fix_daily_gaps_twice_inserts_nothing_new(session) -> None:
    _seed(session)
    service = MaintenanceService(session)
    service.fix_daily_gaps()

    assert service.fix_daily_gaps() == 0
