"""Rule scripts.

Rules are Lua snippets run against a copy of a transaction. A script talks
to the transaction through the ``tx`` object and may call ``helpers``::

    if tx:title() == "Netflix" then
        tx:categoryID(7)
        tx:addTag(3)
    end

Every setter marks the copy as modified; unmodified copies are discarded.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Callable, Optional, Sequence

from lupa import LuaRuntime
from sqlalchemy import select
from sqlalchemy.orm import Session

from errors import NotFoundError, RuleScriptError, account_not_found
from models import Account, InterpreterType, Rule, TransactionDraft, TransactionType
from money import CurrencyConverter, parse_decimal, round_to_places
from periods import add_to_datetime, to_utc_naive


logger = logging.getLogger(__name__)


TRANSACTION_TYPE_CODES: dict[TransactionType, int] = {
    TransactionType.transfer_between_accounts: 1,
    TransactionType.income: 2,
    TransactionType.expense: 3,
    TransactionType.adjustment: 5,
}
TRANSACTION_TYPES_BY_CODE = {code: t for t, code in TRANSACTION_TYPE_CODES.items()}

# Lua globals removed before any script runs.
_BLOCKED_GLOBALS = ("io", "dofile", "loadfile", "require", "package", "debug", "python")
_BLOCKED_OS_FUNCTIONS = ("execute", "remove", "rename", "exit", "getenv", "tmpname")

_METHOD_TABLE_FACTORY = """
function(methods)
    local obj = {}
    for name, fn in pairs(methods) do
        obj[name] = function(self, ...) return fn(...) end
    end
    return obj
end
"""


def _deny_attribute_access(obj, attr_name, is_setting):
    raise AttributeError(f"access to {attr_name} is not allowed")


def _new_runtime() -> LuaRuntime:
    runtime = LuaRuntime(
        unpack_returned_tuples=True,
        register_eval=False,
        register_builtins=False,
        attribute_filter=_deny_attribute_access,
    )
    lua_globals = runtime.globals()
    for name in _BLOCKED_GLOBALS:
        lua_globals[name] = None
    os_table = lua_globals["os"]
    if os_table is not None:
        for name in _BLOCKED_OS_FUNCTIONS:
            os_table[name] = None
    return runtime


def _to_int(value: object, message: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise RuleScriptError(message)
    if isinstance(value, float) and not value.is_integer():
        raise RuleScriptError(message)
    return int(value)


def _to_decimal(value: object) -> Decimal:
    if isinstance(value, bool):
        raise RuleScriptError("number expected")
    if isinstance(value, float):
        return Decimal(repr(value))
    try:
        return parse_decimal(value)
    except ValueError as exc:
        raise RuleScriptError(f"number expected, got {value!r}") from exc


def _as_float(value: Optional[Decimal]) -> Optional[float]:
    if value is None:
        return None
    return float(abs(value))


class _ScriptTransaction:
    """Getter/setter surface bound to one transaction copy."""

    def __init__(self, runtime: LuaRuntime, draft: TransactionDraft) -> None:
        self.runtime = runtime
        self.draft = draft
        self.modified = False

    def _string_field(self, name: str, nullable: bool = False) -> Callable:
        def accessor(*args):
            if not args:
                return getattr(self.draft, name)
            self.modified = True
            value = args[0]
            if value is None:
                setattr(self.draft, name, None if nullable else "")
            else:
                setattr(self.draft, name, str(value))
            return None

        return accessor

    def _id_field(self, name: str) -> Callable:
        def accessor(*args):
            if not args:
                return getattr(self.draft, name)
            self.modified = True
            value = args[0]
            if value is None:
                setattr(self.draft, name, None)
            else:
                setattr(self.draft, name, _to_int(value, "account ID expected"))
            return None

        return accessor

    def _amount_field(self, name: str, sign: Callable[[Decimal], Decimal]) -> Callable:
        def accessor(*args):
            if not args:
                return _as_float(getattr(self.draft, name))
            self.modified = True
            value = args[0]
            if value is None:
                setattr(self.draft, name, None)
            else:
                setattr(self.draft, name, sign(_to_decimal(value)))
            return None

        return accessor

    def _destination_sign(self, value: Decimal) -> Decimal:
        if self.draft.type == TransactionType.adjustment:
            return value
        return abs(value)

    def _amount_with_places(self, name: str) -> Callable:
        def accessor(*args):
            if len(args) != 1:
                raise RuleScriptError("decimalPlaces expected")
            places = _to_int(args[0], "decimalPlaces expected")
            amount = getattr(self.draft, name)
            if amount is None:
                return None
            return float(round_to_places(abs(amount), places))

        return accessor

    def transaction_type(self, *args):
        if not args:
            if self.draft.type is None:
                return 0
            return TRANSACTION_TYPE_CODES[self.draft.type]
        self.modified = True
        code = _to_int(args[0], "transaction type expected")
        if code not in TRANSACTION_TYPES_BY_CODE:
            raise RuleScriptError(f"unsupported transaction type: {code}")
        self.draft.type = TRANSACTION_TYPES_BY_CODE[code]
        return None

    def category_id(self, *args):
        if not args:
            return self.draft.category_id
        self.modified = True
        if args[0] is None:
            self.draft.category_id = None
        else:
            self.draft.category_id = _to_int(args[0], "category ID expected")
        return None

    def transaction_date_time(self, *args):
        if not args:
            if self.draft.transaction_date_time is None:
                return None
            moment = self.draft.transaction_date_time.replace(tzinfo=timezone.utc)
            return int(moment.timestamp())
        self.modified = True
        seconds = _to_int(args[0], "unix timestamp expected")
        moment = to_utc_naive(datetime.fromtimestamp(seconds, tz=timezone.utc))
        self._set_moment(moment)
        return None

    def _set_moment(self, moment: datetime) -> None:
        self.draft.transaction_date_time = moment
        self.draft.transaction_date_only = moment.date()

    def add_date(self, *args):
        if len(args) != 3:
            raise RuleScriptError("expected 3 arguments")
        years, months, days = (_to_int(v, "expected 3 arguments") for v in args)
        if self.draft.transaction_date_time is None:
            raise RuleScriptError("transaction date is not set")
        self.modified = True
        self._set_moment(
            add_to_datetime(self.draft.transaction_date_time, years, months, days)
        )
        return None

    def set_time(self, *args):
        if len(args) != 2:
            raise RuleScriptError("expected 2 arguments")
        hour = _to_int(args[0], "expected 2 arguments")
        minute = _to_int(args[1], "expected 2 arguments")
        if not (0 <= hour <= 23 and 0 <= minute <= 59):
            raise RuleScriptError(f"invalid time {hour}:{minute}")
        current = self.draft.transaction_date_time
        if current is None:
            raise RuleScriptError("transaction date is not set")
        self.modified = True
        self._set_moment(datetime.combine(current.date(), time(hour, minute)))
        return None

    def add_tag(self, *args):
        if len(args) != 1 or args[0] is None:
            raise RuleScriptError("tag ID expected")
        self.draft.tag_ids.add(_to_int(args[0], "tag ID expected"))
        self.modified = True
        return None

    def remove_tag(self, *args):
        if len(args) != 1 or args[0] is None:
            raise RuleScriptError("tag ID expected")
        self.draft.tag_ids.discard(_to_int(args[0], "tag ID expected"))
        self.modified = True
        return None

    def remove_all_tags(self, *args):
        self.draft.tag_ids.clear()
        self.modified = True
        return None

    def get_tags(self, *args):
        return self.runtime.table_from(sorted(self.draft.tag_ids))

    def methods(self) -> dict[str, Callable]:
        return {
            "title": self._string_field("title"),
            "notes": self._string_field("notes"),
            "sourceCurrency": self._string_field("source_currency"),
            "destinationCurrency": self._string_field("destination_currency"),
            "fxSourceCurrency": self._string_field("fx_source_currency"),
            "referenceNumber": self._string_field("reference_number", nullable=True),
            "internalReferenceNumber": self._string_field(
                "internal_reference_number", nullable=True
            ),
            "sourceAccountID": self._id_field("source_account_id"),
            "destinationAccountID": self._id_field("destination_account_id"),
            "categoryID": self.category_id,
            "transactionType": self.transaction_type,
            "sourceAmount": self._amount_field("source_amount", lambda v: -abs(v)),
            "destinationAmount": self._amount_field(
                "destination_amount", self._destination_sign
            ),
            "fxSourceAmount": self._amount_field(
                "fx_source_amount", lambda v: -abs(v)
            ),
            "getSourceAmountWithDecimalPlaces": self._amount_with_places(
                "source_amount"
            ),
            "getDestinationAmountWithDecimalPlaces": self._amount_with_places(
                "destination_amount"
            ),
            "transactionDateTime": self.transaction_date_time,
            "transactionDateTimeAddDate": self.add_date,
            "transactionDateTimeSetTime": self.set_time,
            "addTag": self.add_tag,
            "removeTag": self.remove_tag,
            "getTags": self.get_tags,
            "removeAllTags": self.remove_all_tags,
        }


class _ScriptHelpers:
    def __init__(
        self, runtime: LuaRuntime, session: Session, converter: CurrencyConverter
    ) -> None:
        self.runtime = runtime
        self.session = session
        self.converter = converter

    def convert_currency(self, *args):
        if len(args) != 3 or any(a is None for a in args):
            raise RuleScriptError("from, to, amount are expected")
        from_currency, to_currency, amount = str(args[0]), str(args[1]), args[2]
        try:
            converted = self.converter.convert(
                from_currency, to_currency, _to_decimal(amount)
            )
            places = self.converter.decimal_places(to_currency)
        except NotFoundError as exc:
            raise RuleScriptError(f"failed to convert currency: {exc}") from exc
        return float(round_to_places(converted, places))

    def get_account_by_id(self, *args):
        if len(args) != 1 or args[0] is None:
            raise RuleScriptError("account ID expected")
        account_id = _to_int(args[0], "account ID expected")
        account = self.session.get(Account, account_id)
        if account is None or account.deleted_at is not None:
            raise RuleScriptError(
                f"failed to get account: {account_not_found(account_id)}"
            )
        return self.runtime.table_from(
            {
                "id": account.id,
                "name": account.name,
                "currency": account.currency,
                "type": account.type.value,
                "accountNumber": account.account_number or "",
                "iban": account.iban or "",
                "note": account.note or "",
                "flags": account.flags or 0,
            }
        )

    def methods(self) -> dict[str, Callable]:
        return {
            "convertCurrency": self.convert_currency,
            "getAccountByID": self.get_account_by_id,
        }


class LuaInterpreter:
    def __init__(
        self, session: Session, converter: Optional[CurrencyConverter] = None
    ) -> None:
        self.session = session
        self.converter = converter or CurrencyConverter(session)

    def run(self, script: str, draft: TransactionDraft) -> bool:
        """Run ``script`` against ``draft`` in place; returns whether it was modified."""
        runtime = _new_runtime()
        make_object = runtime.eval(_METHOD_TABLE_FACTORY)
        script_tx = _ScriptTransaction(runtime, draft)
        helpers = _ScriptHelpers(runtime, self.session, self.converter)

        lua_globals = runtime.globals()
        lua_globals["tx"] = make_object(runtime.table_from(script_tx.methods()))
        lua_globals["helpers"] = make_object(runtime.table_from(helpers.methods()))

        try:
            runtime.execute(script)
        except RuleScriptError:
            raise
        except Exception as exc:
            raise RuleScriptError(f"script error: {exc}") from exc
        return script_tx.modified


@dataclass
class DryRunResult:
    before: TransactionDraft
    after: TransactionDraft
    rule_applied: bool


class RuleExecutor:
    def __init__(
        self,
        session: Session,
        interpreter: Optional[LuaInterpreter] = None,
    ) -> None:
        self.session = session
        self.interpreter = interpreter or LuaInterpreter(session)

    def load_groups(self) -> list[tuple[str, list[Rule]]]:
        stmt = (
            select(Rule)
            .where(Rule.enabled.is_(True), Rule.deleted_at.is_(None))
            .order_by(Rule.group_name.asc(), Rule.sort_order.asc(), Rule.id.asc())
        )
        rules = self.session.scalars(stmt).all()
        return [
            (group_name, list(group))
            for group_name, group in itertools.groupby(rules, key=lambda r: r.group_name)
        ]

    def _run_rule(self, rule, draft: TransactionDraft) -> bool:
        if rule.interpreter_type != InterpreterType.lua:
            raise RuleScriptError(
                f"unsupported interpreter type: {rule.interpreter_type}", rule.id
            )
        try:
            return self.interpreter.run(rule.script, draft)
        except RuleScriptError as exc:
            raise RuleScriptError(
                f"rule {rule.id} ({rule.title}) failed: {exc}", rule.id
            ) from exc

    def process(
        self,
        draft: TransactionDraft,
        groups: Optional[Sequence[tuple[str, list[Rule]]]] = None,
    ) -> TransactionDraft:
        if groups is None:
            groups = self.load_groups()
        tx = draft.clone()
        for _group_name, rules in groups:
            for rule in rules:
                candidate = tx.clone()
                if not self._run_rule(rule, candidate):
                    continue
                tx = candidate
                if rule.is_final_rule:
                    break
        return tx

    def process_all(self, drafts: Sequence[TransactionDraft]) -> list[TransactionDraft]:
        groups = self.load_groups()
        return [self.process(draft, groups) for draft in drafts]

    def run_single(self, rule, draft: TransactionDraft) -> DryRunResult:
        candidate = draft.clone()
        applied = self._run_rule(rule, candidate)
        return DryRunResult(
            before=draft.clone(),
            after=candidate if applied else draft.clone(),
            rule_applied=applied,
        )
