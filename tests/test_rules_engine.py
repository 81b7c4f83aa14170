from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from errors import RuleScriptError
from factories import default_account, expense_request, make_account
from models import AccountType, Rule, Transaction, TransactionDraft, TransactionType
from rules_engine import LuaInterpreter, RuleExecutor
from schemas import RuleIn, TagIn
from services import RuleService, TagService, TransactionService


def _draft(**overrides) -> TransactionDraft:
    values = dict(
        type=TransactionType.expense,
        source_account_id=1,
        destination_account_id=2,
        source_currency="USD",
        destination_currency="USD",
        source_amount=Decimal("-12.345"),
        destination_amount=Decimal("12.345"),
        transaction_date_time=datetime(2026, 3, 31, 18, 45),
        transaction_date_only=datetime(2026, 3, 31).date(),
        title="Netflix",
    )
    values.update(overrides)
    return TransactionDraft(**values)


def _rule(session, title: str, script: str, **kwargs) -> Rule:
    return RuleService(session).create(RuleIn(title=title, script=script, **kwargs))


def test_rules_run_by_group_then_sort_order(session) -> None:
    _rule(session, "second", 'tx:title(tx:title() .. " b")', group_name="a", sort_order=2)
    _rule(session, "first", 'tx:title(tx:title() .. " a")', group_name="a", sort_order=1)
    _rule(session, "later group", 'tx:title(tx:title() .. " c")', group_name="b")

    result = RuleExecutor(session).process(_draft())

    assert result.title == "Netflix a b c"


def test_final_rule_stops_only_its_group(session) -> None:
    _rule(session, "final", 'tx:title("Streaming")', group_name="a", sort_order=1, is_final_rule=True)
    _rule(session, "skipped", 'tx:title("Never")', group_name="a", sort_order=2)
    _rule(session, "next group", "tx:categoryID(7)", group_name="b")

    result = RuleExecutor(session).process(_draft())

    assert result.title == "Streaming"
    assert result.category_id == 7


def test_final_rule_without_changes_does_not_stop_group(session) -> None:
    _rule(
        session,
        "no match",
        'if tx:title() == "Spotify" then tx:title("Music") end',
        group_name="a",
        sort_order=1,
        is_final_rule=True,
    )
    _rule(session, "runs", "tx:addTag(3)", group_name="a", sort_order=2)

    result = RuleExecutor(session).process(_draft())

    assert result.title == "Netflix"
    assert result.tag_ids == {3}


def test_disabled_and_deleted_rules_are_ignored(session) -> None:
    _rule(session, "disabled", 'tx:title("Disabled")', enabled=False)
    deleted = _rule(session, "deleted", 'tx:title("Deleted")')
    RuleService(session).delete(deleted.id)

    assert RuleExecutor(session).process(_draft()).title == "Netflix"


def test_script_error_leaves_input_untouched(session) -> None:
    _rule(session, "ok", 'tx:title("Changed")', sort_order=1)
    broken = _rule(session, "broken", 'tx:notes("half") error("boom")', sort_order=2)
    draft = _draft()

    with pytest.raises(RuleScriptError, match=f"rule {broken.id} \\(broken\\) failed") as exc:
        RuleExecutor(session).process(draft)

    assert exc.value.rule_id == broken.id
    assert draft.title == "Netflix"
    assert draft.notes == ""


def test_failing_rule_rolls_back_transaction_create(session) -> None:
    wallet = make_account(session, "Wallet")
    expense = default_account(session, AccountType.expense)
    _rule(session, "broken", "tx:addTag()")

    with pytest.raises(RuleScriptError, match="tag ID expected"):
        TransactionService(session).create(expense_request(wallet, expense, "5"))

    assert session.scalar(select(func.count(Transaction.id))) == 0


def test_rule_output_is_validated(session) -> None:
    wallet = make_account(session, "Wallet")
    expense = default_account(session, AccountType.expense)
    _rule(session, "bad currency", 'tx:sourceCurrency("PLN")')

    with pytest.raises(ValueError, match="has currency USD, expected PLN"):
        TransactionService(session).create(expense_request(wallet, expense, "5"))


def test_rules_apply_tags_on_create(session) -> None:
    wallet = make_account(session, "Wallet")
    expense = default_account(session, AccountType.expense)
    streaming = TagService(session).create(TagIn(name="streaming"))
    _rule(
        session,
        "netflix",
        f'if string.find(tx:title(), "Netflix") then tx:addTag({streaming.id}) end',
    )

    txn = TransactionService(session).create(
        expense_request(wallet, expense, "9.99", title="Netflix March")
    )

    assert txn.tag_ids == [streaming.id]


def test_skip_rules_bypasses_executor(session) -> None:
    wallet = make_account(session, "Wallet")
    expense = default_account(session, AccountType.expense)
    _rule(session, "rename", 'tx:title("Renamed")')
    request = expense_request(wallet, expense, "1", title="Original")
    request.skip_rules = True

    assert TransactionService(session).create(request).title == "Original"


def test_rule_execution_is_deterministic(session) -> None:
    _rule(session, "date", "tx:transactionDateTimeAddDate(0, 1, 0)\ntx:addTag(2)")
    executor = RuleExecutor(session)
    draft = _draft()

    assert executor.process(draft) == executor.process(draft)


def test_amount_getters_and_setters(session) -> None:
    draft = _draft()
    script = """
    if tx:sourceAmount() ~= 12.345 then error("unexpected source") end
    if tx:getSourceAmountWithDecimalPlaces(2) ~= 12.35 then error("unexpected rounding") end
    tx:sourceAmount(20)
    tx:destinationAmount(-20)
    tx:fxSourceAmount(5)
    tx:fxSourceCurrency("EUR")
    """

    modified = LuaInterpreter(session).run(script, draft)

    assert modified is True
    assert draft.source_amount == Decimal("-20")
    assert draft.destination_amount == Decimal("20")
    assert draft.fx_source_amount == Decimal("-5")
    assert draft.fx_source_currency == "EUR"


def test_date_helpers_clamp_and_snap_day(session) -> None:
    draft = _draft()

    LuaInterpreter(session).run(
        "tx:transactionDateTimeAddDate(0, 1, 0)\ntx:transactionDateTimeSetTime(7, 30)", draft
    )

    assert draft.transaction_date_time == datetime(2026, 4, 30, 7, 30)
    assert draft.transaction_date_only == datetime(2026, 4, 30).date()


def test_invalid_time_is_a_script_error(session) -> None:
    with pytest.raises(RuleScriptError, match="invalid time 25:0"):
        LuaInterpreter(session).run("tx:transactionDateTimeSetTime(25, 0)", _draft())


def test_tags_and_type_codes(session) -> None:
    draft = _draft(tag_ids={1, 5})
    script = """
    local tags = tx:getTags()
    if #tags ~= 2 or tags[1] ~= 1 or tags[2] ~= 5 then error("unexpected tags") end
    tx:removeTag(1)
    tx:addTag(9)
    if tx:transactionType() ~= 3 then error("expected expense code") end
    tx:transactionType(1)
    tx:destinationAccountID(nil)
    """

    LuaInterpreter(session).run(script, draft)

    assert draft.tag_ids == {5, 9}
    assert draft.type == TransactionType.transfer_between_accounts
    assert draft.destination_account_id is None


def test_reading_only_does_not_modify(session) -> None:
    draft = _draft()

    modified = LuaInterpreter(session).run(
        'local t = tx:title() .. tx:sourceCurrency()\nlocal n = tx:notes()', draft
    )

    assert modified is False


def test_helpers_convert_currency_and_read_account(session) -> None:
    account = make_account(session, "Savings", currency="PLN", account_number="PL123")
    draft = _draft()
    script = f"""
    tx:sourceAmount(helpers:convertCurrency("UAH", "USD", 410))
    local acc = helpers:getAccountByID({account.id})
    tx:notes(acc.name .. "|" .. acc.currency .. "|" .. acc.type .. "|" .. acc.accountNumber)
    """

    LuaInterpreter(session).run(script, draft)

    assert draft.source_amount == Decimal("-10")
    assert draft.notes == "Savings|PLN|asset|PL123"


def test_helper_errors_are_script_errors(session) -> None:
    with pytest.raises(RuleScriptError, match="from, to, amount are expected"):
        LuaInterpreter(session).run('helpers:convertCurrency("USD")', _draft())
    with pytest.raises(RuleScriptError, match="account with id 404 not found"):
        LuaInterpreter(session).run("helpers:getAccountByID(404)", _draft())


def test_sandbox_hides_io_and_os_execute(session) -> None:
    with pytest.raises(RuleScriptError):
        LuaInterpreter(session).run('io.open("/etc/passwd")', _draft())
    with pytest.raises(RuleScriptError):
        LuaInterpreter(session).run('os.execute("true")', _draft())


def test_dry_run_reports_before_and_after(session) -> None:
    wallet = make_account(session, "Wallet")
    expense = default_account(session, AccountType.expense)
    txn = TransactionService(session).create(
        expense_request(wallet, expense, "3", title="Uber")
    )

    result = RuleService(session).dry_run(
        RuleIn(title="rename", script='tx:title("Taxi")'), transaction_id=txn.id
    )

    assert result.rule_applied is True
    assert result.before.title == "Uber"
    assert result.after.title == "Taxi"
    session.refresh(txn)
    assert txn.title == "Uber"
