from decimal import Decimal

import pytest

from errors import BusinessRuleViolation, ConflictError, NotFoundError
from factories import default_account, expense_request, make_account
from models import ACCOUNT_FLAG_DEFAULT, AccountType
from schemas import AccountIn, CategoryIn, CurrencyIn, CurrencyUpdateIn, TagIn
from services import (
    AccountService,
    CategoryService,
    CurrencyService,
    TagService,
    TransactionService,
)


def test_default_accounts_are_seeded(session) -> None:
    service = AccountService(session)

    for account_type in AccountType:
        account = service.default_account(account_type)
        assert account.currency == "USD"
        assert account.is_default


def test_new_default_account_takes_over_the_flag(session) -> None:
    service = AccountService(session)
    old = service.default_account(AccountType.expense)

    new = make_account(
        session, "Food", account_type=AccountType.expense, flags=ACCOUNT_FLAG_DEFAULT
    )

    session.refresh(old)
    assert not old.is_default
    assert service.default_account(AccountType.expense).id == new.id


def test_last_default_account_cannot_be_removed(session) -> None:
    service = AccountService(session)
    account = service.default_account(AccountType.income)

    with pytest.raises(BusinessRuleViolation, match="at least one default account is required"):
        service.delete(account.id)
    with pytest.raises(BusinessRuleViolation, match="at least one default account is required"):
        service.update(
            account.id,
            AccountIn(name=account.name, currency="USD", type=AccountType.income, flags=0),
        )


def test_create_bulk_skips_existing(session) -> None:
    make_account(session, "Wallet", currency="PLN")

    created, skipped = AccountService(session).create_bulk(
        [
            AccountIn(name="Wallet", currency="pln", type=AccountType.asset),
            AccountIn(name="Wallet", currency="UAH", type=AccountType.asset),
            AccountIn(name="Card", currency="USD", type=AccountType.liability),
        ]
    )

    assert [account.name for account in created] == ["Wallet", "Card"]
    assert created[0].currency == "UAH"
    assert skipped == 1


def test_account_currency_is_locked_once_used(session) -> None:
    wallet = make_account(session, "Wallet")
    expense = default_account(session, AccountType.expense)
    TransactionService(session).create(expense_request(wallet, expense, "1"))

    with pytest.raises(BusinessRuleViolation, match="cannot change currency"):
        AccountService(session).update(
            wallet.id, AccountIn(name="Wallet", currency="PLN", type=AccountType.asset)
        )


def test_account_with_unknown_currency(session) -> None:
    with pytest.raises(NotFoundError):
        make_account(session, "Wallet", currency="XYZ")


def test_currency_exchange_rounds_to_target_places(session) -> None:
    service = CurrencyService(session)

    assert service.exchange("uah", "usd", "410") == Decimal("10.00")
    assert service.exchange("USD", "PLN", "2.555") == Decimal("10.22")


def test_base_currency_rules(session) -> None:
    service = CurrencyService(session)

    with pytest.raises(BusinessRuleViolation, match="base currency cannot be deleted"):
        service.delete("USD")
    with pytest.raises(BusinessRuleViolation, match="base currency cannot be disabled"):
        service.update("USD", CurrencyUpdateIn(rate=Decimal("3"), is_active=False))

    updated = service.update("USD", CurrencyUpdateIn(rate=Decimal("3")))
    assert updated.rate == Decimal("1")


def test_currency_delete_and_recreate(session) -> None:
    service = CurrencyService(session)
    make_account(session, "Wallet", currency="PLN")

    with pytest.raises(BusinessRuleViolation, match="currency PLN is used by 1 account"):
        service.delete("PLN")
    with pytest.raises(ConflictError, match="currency EUR already exists"):
        service.create(CurrencyIn(id="eur", rate=Decimal("0.8")))

    service.delete("EUR")
    with pytest.raises(NotFoundError):
        service.get("EUR")

    restored = service.create(CurrencyIn(id="EUR", rate=Decimal("0.95")))
    assert restored.rate == Decimal("0.95")
    assert restored.deleted_at is None


def test_disabled_currencies_are_hidden_by_default(session) -> None:
    service = CurrencyService(session)
    service.update("UAH", CurrencyUpdateIn(rate=Decimal("41"), is_active=False))

    assert "UAH" not in [c.id for c in service.list()]
    assert "UAH" in [c.id for c in service.list(include_disabled=True)]


def test_tag_names_are_unique_ignoring_case(session) -> None:
    service = TagService(session)
    food = service.create(TagIn(name="Food"))
    other = service.create(TagIn(name="Travel"))

    with pytest.raises(ConflictError, match="Tag already exists"):
        service.create(TagIn(name="food "))
    with pytest.raises(ConflictError, match="Tag with this name already exists"):
        service.update(other.id, TagIn(name="FOOD"))

    service.delete(food.id)
    assert service.create(TagIn(name="Food")).id != food.id


def test_category_names_are_unique(session) -> None:
    service = CategoryService(session)
    service.create(CategoryIn(name="Groceries"))

    with pytest.raises(ConflictError, match="Category already exists"):
        service.create(CategoryIn(name="groceries"))
    with pytest.raises(NotFoundError, match="Category not found"):
        service.rename(404, "Other")


def test_deleting_used_tag_clears_associations(session) -> None:
    wallet = make_account(session, "Wallet")
    expense = default_account(session, AccountType.expense)
    tag = TagService(session).create(TagIn(name="Dining"))
    request = expense_request(wallet, expense, "12.99", title="Lunch")
    request.tag_ids = [tag.id]
    txn = TransactionService(session).create(request)

    TagService(session).delete(tag.id)

    assert TransactionService(session).get(txn.id).tag_ids == []
