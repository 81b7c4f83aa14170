import base64
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from errors import ConflictError, InvalidFormatError
from factories import make_account
from importers.firefly import COLUMNS
from importers.service import ImportService
from models import (
    AccountType,
    ImportDeduplication,
    ImportSource,
    Transaction,
    TransactionType,
)
from schemas import ImportIn
from services import AccountService


def _encode(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


def _firefly_export() -> str:
    base = dict.fromkeys(COLUMNS, "")
    records = []
    for journal in range(1, 11):
        record = dict(base, journal_id=str(journal), currency_code="USD")
        record["date"] = f"2026-10-{journal:02d}T12:00:00+02:00"
        if journal <= 5:
            record.update(
                type="Withdrawal",
                amount="-10.00",
                description=f"Groceries {journal}",
                source_name="Checking",
                destination_name="Groceries",
            )
        elif journal <= 9:
            record.update(
                type="Deposit",
                amount="100.00",
                description=f"Salary {journal}",
                source_name="Employer",
                destination_name="Checking",
            )
        else:
            record.update(
                type="Transfer",
                amount="-50.00",
                description="To savings",
                source_name="Checking",
                destination_name="Savings",
            )
        records.append(",".join(record[name] for name in COLUMNS))
    # exports list the newest journal first
    return "\n".join([",".join(COLUMNS)] + list(reversed(records))) + "\n"


PRIVAT24_TRANSFER = (
    "PrivatBank, [10/18/2026 10:40 PM]\n"
    "1100.00USD Переказ зі своєї карти\n4*59 22:40\nБал. 1.21USD\n\n"
    "PrivatBank, [10/18/2026 10:40 PM]\n"
    "1100.00USD Зарахування переказу на картку\n4*71 22:40\nБал. 1.60USD\n"
)

COFFEE = "PrivatBank, [10/18/2026 9:15 AM]\n5.00USD Кава\n4*59 09:15\nБал. 95.00USD\n"


def _import(source: ImportSource, text: str, **options) -> ImportIn:
    return ImportIn(source=source, content=[_encode(text)], **options)


def test_firefly_import_is_idempotent(session) -> None:
    checking = make_account(session, "Checking")
    savings = make_account(session, "Savings")
    service = ImportService(session)

    first = service.import_transactions(_import(ImportSource.firefly, _firefly_export()))
    second = service.import_transactions(_import(ImportSource.firefly, _firefly_export()))

    assert (first.imported_count, first.duplicate_count) == (10, 0)
    assert (second.imported_count, second.duplicate_count) == (0, 10)
    assert session.scalar(select(func.count(Transaction.id))) == 10
    session.refresh(checking)
    session.refresh(savings)
    assert checking.current_balance == Decimal("300")
    assert savings.current_balance == Decimal("50")


def test_firefly_rows_are_posted_oldest_first(session) -> None:
    make_account(session, "Checking")
    make_account(session, "Savings")

    rows = ImportService(session).parse(_import(ImportSource.firefly, _firefly_export()))

    assert [row.title for row in rows][:2] == ["Groceries 1", "Groceries 2"]
    assert rows[-1].request.transfer_between_accounts is not None


def test_firefly_missing_account_aborts_import(session) -> None:
    make_account(session, "Checking")

    with pytest.raises(InvalidFormatError, match="failed to parse 1 rows"):
        ImportService(session).import_transactions(
            _import(ImportSource.firefly, _firefly_export())
        )

    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_privat24_transfer_between_own_cards(session) -> None:
    first_card = make_account(session, "Card 59", account_number="4*59")
    second_card = make_account(session, "Card 71", account_number="4*71")
    service = ImportService(session)

    result = service.import_transactions(_import(ImportSource.privat24, PRIVAT24_TRANSFER))

    assert result.imported_count == 1
    txn = session.scalars(select(Transaction)).one()
    assert txn.type == TransactionType.transfer_between_accounts
    assert txn.source_account_id == first_card.id
    assert txn.destination_account_id == second_card.id
    assert txn.title == "Переказ зі своєї карти"
    session.refresh(first_card)
    session.refresh(second_card)
    assert first_card.current_balance == Decimal("-1100")
    assert second_card.current_balance == Decimal("1100")
    # one key for the kept message and one for its merged duplicate
    assert session.scalar(select(func.count()).select_from(ImportDeduplication)) == 2

    again = service.import_transactions(_import(ImportSource.privat24, PRIVAT24_TRANSFER))
    assert (again.imported_count, again.duplicate_count) == (0, 1)


def test_duplicate_rows_in_one_file(session) -> None:
    make_account(session, "Card 59", account_number="4*59")
    service = ImportService(session)
    text = COFFEE + "\n" + COFFEE

    with pytest.raises(ConflictError, match="duplicate reference number found in import data"):
        service.import_transactions(_import(ImportSource.privat24, text))

    result = service.import_transactions(
        _import(ImportSource.privat24, text, skip_duplicate_reference_check=True)
    )
    assert result.imported_count == 2


def test_duplicate_account_number_is_conflict(session) -> None:
    make_account(session, "Card A", account_number="4*59")
    make_account(session, "Card B", account_number="4*59")

    with pytest.raises(ConflictError, match="duplicate account number: 4\\*59"):
        ImportService(session).parse(_import(ImportSource.privat24, COFFEE))


def test_parse_errors_abort_import(session) -> None:
    make_account(session, "Card 67", account_number="4*67")
    text = "PrivatBank, [10/18/2026 9:15 AM]\n10.00PLN Shop\n4*67 10:00\nБал. 5.00USD\n"

    with pytest.raises(InvalidFormatError, match="failed to parse 1 rows"):
        ImportService(session).import_transactions(_import(ImportSource.privat24, text))


def test_parse_preview_marks_existing_transactions(session) -> None:
    card = make_account(session, "Card 59", account_number="4*59")
    service = ImportService(session)
    service.import_transactions(_import(ImportSource.privat24, COFFEE))
    txn = session.scalars(select(Transaction)).one()

    rows = service.parse(_import(ImportSource.privat24, COFFEE))

    assert len(rows) == 1
    assert rows[0].duplicate_transaction_id == txn.id
    assert rows[0].request.expense.source_account_id == card.id
    assert rows[0].request.extra["import_source"] == "privat24"


def test_unknown_card_falls_back_to_default_asset(session) -> None:
    default_asset = AccountService(session).default_account(AccountType.asset)

    ImportService(session).import_transactions(_import(ImportSource.privat24, COFFEE))

    txn = session.scalars(select(Transaction)).one()
    assert txn.source_account_id == default_asset.id
    expense = AccountService(session).default_account(AccountType.expense)
    assert txn.destination_account_id == expense.id


def test_invalid_base64_content(session) -> None:
    with pytest.raises(InvalidFormatError, match="failed to decode file content"):
        ImportService(session).parse(
            ImportIn(source=ImportSource.privat24, content=["not base64!"])
        )
