from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Iterable, Optional, Sequence

from apscheduler.triggers.cron import CronTrigger
from rapidfuzz import fuzz, process, utils
from sqlalchemy import Numeric, cast, delete, func, literal, or_, select
from sqlalchemy.orm import Session, selectinload

from base_amounts import BaseAmountService
from config import get_settings
from double_entry import DoubleEntryService
from errors import (
    BusinessRuleViolation,
    ConflictError,
    InvalidFormatError,
    MissingFieldError,
    NotFoundError,
    account_not_found,
    currency_not_found,
    transaction_not_found,
)
from models import (
    ACCOUNT_FLAG_DEFAULT,
    Account,
    AccountType,
    Category,
    Currency,
    DailyStat,
    DoubleEntry,
    MonthlyStat,
    Rule,
    ScheduleRule,
    Tag,
    Transaction,
    TransactionDraft,
    TransactionType,
    transaction_tags,
)
from money import CurrencyConverter, parse_decimal, parse_optional_decimal, round_to_places
from periods import to_utc_naive, utc_now
from rules_engine import DryRunResult, LuaInterpreter, RuleExecutor
from schemas import (
    AccountIn,
    CategoryIn,
    CurrencyIn,
    CurrencyUpdateIn,
    RuleIn,
    ScheduleRuleIn,
    TagIn,
    TransactionIn,
    TransactionListIn,
)
from stats import StatsService, clear_gap_cache
from validation import TransactionValidator, invalidate_account


logger = logging.getLogger(__name__)


DEFAULT_ACCOUNTS: list[tuple[str, AccountType]] = [
    ("Default Expense", AccountType.expense),
    ("Default Income", AccountType.income),
    ("Default Liability", AccountType.liability),
    ("Cash", AccountType.asset),
    ("Default Adjustment", AccountType.adjustment),
]

RECALCULATE_CHUNK_SIZE = 500


def _chunks(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class CurrencyService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.base_currency = get_settings().base_currency

    def list(
        self, ids: Optional[list[str]] = None, include_disabled: bool = False
    ) -> list[Currency]:
        stmt = select(Currency).where(Currency.deleted_at.is_(None)).order_by(Currency.id)
        if ids:
            stmt = stmt.where(Currency.id.in_([i.upper() for i in ids]))
        if not include_disabled:
            stmt = stmt.where(Currency.is_active.is_(True))
        return self.session.scalars(stmt).all()

    def get(self, currency_id: str) -> Currency:
        currency = self.session.get(Currency, currency_id.upper())
        if not currency or currency.deleted_at is not None:
            raise NotFoundError(currency_not_found(currency_id))
        return currency

    def ensure_base_currency(self) -> Currency:
        currency = self.session.get(Currency, self.base_currency)
        if currency is None:
            currency = Currency(
                id=self.base_currency, rate=Decimal("1"), decimal_places=2
            )
            self.session.add(currency)
        currency.rate = Decimal("1")
        currency.is_active = True
        currency.deleted_at = None
        self.session.commit()
        return currency

    def create(self, data: CurrencyIn) -> Currency:
        currency_id = data.id.strip().upper()
        existing = self.session.get(Currency, currency_id)
        if existing and existing.deleted_at is None:
            raise ConflictError(f"currency {currency_id} already exists")
        currency = existing or Currency(id=currency_id)
        currency.rate = Decimal("1") if currency_id == self.base_currency else data.rate
        currency.is_active = data.is_active
        currency.decimal_places = data.decimal_places
        currency.deleted_at = None
        self.session.add(currency)
        self.session.commit()
        self.session.refresh(currency)
        return currency

    def update(self, currency_id: str, data: CurrencyUpdateIn) -> Currency:
        currency = self.get(currency_id)
        if currency.id == self.base_currency:
            if not data.is_active:
                raise BusinessRuleViolation("base currency cannot be disabled")
            currency.rate = Decimal("1")
        else:
            currency.rate = data.rate
        currency.is_active = data.is_active
        currency.decimal_places = data.decimal_places
        self.session.commit()
        self.session.refresh(currency)
        return currency

    def delete(self, currency_id: str) -> None:
        currency = self.get(currency_id)
        if currency.id == self.base_currency:
            raise BusinessRuleViolation("base currency cannot be deleted")
        in_use = self.session.scalar(
            select(func.count(Account.id)).where(
                Account.currency == currency.id, Account.deleted_at.is_(None)
            )
        )
        if in_use:
            raise BusinessRuleViolation(
                f"currency {currency.id} is used by {in_use} account(s)"
            )
        currency.deleted_at = utc_now()
        self.session.commit()

    def exchange(self, from_currency: str, to_currency: str, amount: str) -> Decimal:
        converter = CurrencyConverter(self.session)
        value = parse_decimal(amount)
        converted = converter.convert(from_currency.upper(), to_currency.upper(), value)
        return round_to_places(converted, converter.decimal_places(to_currency.upper()))


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.base_currency = get_settings().base_currency

    def list(self, include_deleted: bool = False) -> list[Account]:
        stmt = select(Account).order_by(
            Account.display_order.is_(None),
            Account.display_order.asc(),
            Account.id.asc(),
        )
        if not include_deleted:
            stmt = stmt.where(Account.deleted_at.is_(None))
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.deleted_at is not None:
            raise NotFoundError(account_not_found(account_id))
        return account

    def default_account(self, account_type: AccountType) -> Account:
        stmt = (
            select(Account)
            .where(
                Account.type == account_type,
                Account.flags.op("&")(ACCOUNT_FLAG_DEFAULT) == ACCOUNT_FLAG_DEFAULT,
                Account.deleted_at.is_(None),
            )
            .order_by(Account.id)
            .limit(1)
        )
        account = self.session.scalar(stmt)
        if account is None:
            raise NotFoundError(f"default account for type {account_type.value} not found")
        return account

    def _check_currency(self, currency_id: str) -> None:
        currency = self.session.get(Currency, currency_id)
        if currency is None or currency.deleted_at is not None:
            raise NotFoundError(currency_not_found(currency_id))

    def _apply(self, account: Account, data: AccountIn) -> None:
        account.name = data.name.strip()
        account.currency = data.currency.strip().upper()
        account.type = data.type
        account.flags = data.flags
        account.extra = dict(data.extra)
        account.note = data.note
        account.iban = data.iban
        account.account_number = data.account_number
        account.liability_percent = data.liability_percent
        account.display_order = data.display_order

    def create(self, data: AccountIn) -> Account:
        self._check_currency(data.currency.strip().upper())
        account = Account(current_balance=Decimal("0"))
        self._apply(account, data)
        self.session.add(account)
        self.session.flush()
        self._ensure_default_exists(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def create_bulk(self, items: list[AccountIn]) -> tuple[list[Account], int]:
        """Create accounts, skipping ones whose (name, type, currency) exist."""
        existing = {
            (a.name, a.type, a.currency)
            for a in self.session.scalars(
                select(Account).where(Account.deleted_at.is_(None))
            ).all()
        }
        created: list[Account] = []
        skipped = 0
        for data in items:
            key = (data.name.strip(), data.type, data.currency.strip().upper())
            if key in existing:
                skipped += 1
                continue
            self._check_currency(key[2])
            account = Account(current_balance=Decimal("0"))
            self._apply(account, data)
            self.session.add(account)
            self.session.flush()
            self._ensure_default_exists(account)
            existing.add(key)
            created.append(account)
        self.session.commit()
        return created, skipped

    def update(self, account_id: int, data: AccountIn) -> Account:
        account = self.get(account_id)
        new_currency = data.currency.strip().upper()
        if new_currency != account.currency:
            self._check_currency(new_currency)
            used = self.session.scalar(
                select(func.count(Transaction.id)).where(
                    Transaction.deleted_at.is_(None),
                    or_(
                        Transaction.source_account_id == account.id,
                        Transaction.destination_account_id == account.id,
                    ),
                )
            )
            if used:
                raise BusinessRuleViolation(
                    "cannot change currency of an account with transactions"
                )
        was_default = account.is_default
        self._apply(account, data)
        self.session.flush()
        self._ensure_default_exists(account, was_default=was_default)
        invalidate_account(account.id)
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        if account.is_default:
            raise BusinessRuleViolation("at least one default account is required")
        account.deleted_at = utc_now()
        invalidate_account(account.id)
        self.session.commit()

    def _ensure_default_exists(self, account: Account, was_default: bool = False) -> None:
        """Keep exactly one default account per type."""
        others = self.session.scalars(
            select(Account).where(
                Account.type == account.type,
                Account.id != account.id,
                Account.deleted_at.is_(None),
                Account.flags.op("&")(ACCOUNT_FLAG_DEFAULT) == ACCOUNT_FLAG_DEFAULT,
            )
        ).all()
        if account.is_default:
            for other in others:
                other.flags = other.flags & ~ACCOUNT_FLAG_DEFAULT
                invalidate_account(other.id)
            return
        if others:
            return
        if was_default:
            raise BusinessRuleViolation("at least one default account is required")
        # first account of its type becomes the default
        account.flags = account.flags | ACCOUNT_FLAG_DEFAULT

    def ensure_default_accounts(self) -> list[Account]:
        CurrencyService(self.session).ensure_base_currency()
        created: list[Account] = []
        for name, account_type in DEFAULT_ACCOUNTS:
            stmt = select(Account.id).where(
                Account.type == account_type,
                Account.flags.op("&")(ACCOUNT_FLAG_DEFAULT) == ACCOUNT_FLAG_DEFAULT,
                Account.deleted_at.is_(None),
            )
            if self.session.scalar(stmt) is not None:
                continue
            account = Account(
                name=name,
                currency=self.base_currency,
                type=account_type,
                flags=ACCOUNT_FLAG_DEFAULT,
                current_balance=Decimal("0"),
                extra={},
            )
            self.session.add(account)
            created.append(account)
        self.session.commit()
        for account in created:
            logger.info(f"default_account_created: id={account.id} name={account.name}")
        return created


class TagService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.deleted_at.is_(None)).order_by(Tag.name)
        return self.session.scalars(stmt).all()

    def by_name(self) -> dict[str, Tag]:
        return {tag.name: tag for tag in self.list_all()}

    def _name_taken(self, name: str, exclude_id: Optional[int] = None) -> bool:
        stmt = select(Tag.id).where(
            Tag.deleted_at.is_(None), func.lower(Tag.name) == name.lower()
        )
        if exclude_id is not None:
            stmt = stmt.where(Tag.id != exclude_id)
        return self.session.scalar(stmt) is not None

    def create(self, data: TagIn) -> Tag:
        clean_name = data.name.strip()
        if not clean_name:
            raise MissingFieldError("Tag name cannot be empty")
        if self._name_taken(clean_name):
            raise ConflictError("Tag already exists")
        tag = Tag(name=clean_name, color=data.color, icon=data.icon)
        self.session.add(tag)
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def update(self, tag_id: int, data: TagIn) -> Tag:
        tag = self.session.get(Tag, tag_id)
        if not tag or tag.deleted_at is not None:
            raise NotFoundError("Tag not found")
        clean_name = data.name.strip()
        if not clean_name:
            raise MissingFieldError("Tag name cannot be empty")
        if self._name_taken(clean_name, exclude_id=tag_id):
            raise ConflictError("Tag with this name already exists")
        tag.name = clean_name
        tag.color = data.color
        tag.icon = data.icon
        self.session.commit()
        self.session.refresh(tag)
        return tag

    def delete(self, tag_id: int) -> None:
        tag = self.session.get(Tag, tag_id)
        if not tag or tag.deleted_at is not None:
            raise NotFoundError("Tag not found")
        self.session.execute(
            delete(transaction_tags).where(transaction_tags.c.tag_id == tag.id)
        )
        tag.deleted_at = utc_now()
        self.session.commit()


class CategoryService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self) -> list[Category]:
        stmt = select(Category).where(Category.deleted_at.is_(None)).order_by(Category.name)
        return self.session.scalars(stmt).all()

    def by_name(self) -> dict[str, Category]:
        return {category.name: category for category in self.list_all()}

    def create(self, data: CategoryIn) -> Category:
        clean_name = data.name.strip()
        existing = self.session.scalar(
            select(Category.id).where(
                Category.deleted_at.is_(None),
                func.lower(Category.name) == clean_name.lower(),
            )
        )
        if existing is not None:
            raise ConflictError("Category already exists")
        category = Category(name=clean_name)
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        category = self.session.get(Category, category_id)
        if not category or category.deleted_at is not None:
            raise NotFoundError("Category not found")
        category.name = name.strip()
        self.session.commit()
        self.session.refresh(category)
        return category

    def delete(self, category_id: int) -> None:
        category = self.session.get(Category, category_id)
        if not category or category.deleted_at is not None:
            raise NotFoundError("Category not found")
        category.deleted_at = utc_now()
        self.session.commit()


def draft_from_request(data: TransactionIn) -> TransactionDraft:
    """Map a typed create request onto the flat transaction shape."""
    if data.transaction_date is None:
        raise MissingFieldError("transaction date is required")

    bodies = [
        (TransactionType.expense, data.expense),
        (TransactionType.income, data.income),
        (TransactionType.transfer_between_accounts, data.transfer_between_accounts),
        (TransactionType.adjustment, data.adjustment),
    ]
    present = [(t, body) for t, body in bodies if body is not None]
    if not present:
        raise MissingFieldError("transaction kind is required")
    if len(present) > 1:
        raise InvalidFormatError("exactly one transaction kind must be set")
    txn_type, body = present[0]

    moment = to_utc_naive(data.transaction_date)
    draft = TransactionDraft(
        type=txn_type,
        transaction_date_time=moment,
        transaction_date_only=moment.date(),
        title=data.title,
        notes=data.notes,
        extra=dict(data.extra),
        tag_ids=set(data.tag_ids),
        category_id=data.category_id,
        reference_number=data.reference_number,
        internal_reference_number=data.internal_reference_number,
    )
    draft.destination_account_id = body.destination_account_id
    draft.destination_amount = parse_optional_decimal(
        body.destination_amount, field="destination_amount"
    )
    draft.destination_currency = (body.destination_currency or "").upper()
    if txn_type != TransactionType.adjustment:
        draft.source_account_id = body.source_account_id
        draft.source_amount = parse_optional_decimal(
            body.source_amount, field="source_amount"
        )
        draft.source_currency = (body.source_currency or "").upper()
    if txn_type == TransactionType.expense:
        draft.fx_source_amount = parse_optional_decimal(
            body.fx_source_amount, field="fx_source_amount"
        )
        draft.fx_source_currency = (body.fx_source_currency or "").upper()
    return draft


class TransactionService:
    """Single write path for transactions.

    Every create/update/delete runs validate -> rules -> persist -> lock
    accounts -> base amounts -> double entry -> stats inside one database
    transaction and rolls back on any failure.
    """

    def __init__(self, session: Session) -> None:
        self.session = session
        self.base_currency = get_settings().base_currency
        self.converter = CurrencyConverter(session)
        self.validator = TransactionValidator(session)
        self.executor = RuleExecutor(session, LuaInterpreter(session, self.converter))
        self.base_amounts = BaseAmountService(session, self.converter, self.base_currency)
        self.double_entries = DoubleEntryService(session, self.base_currency)
        self.stats = StatsService(session)

    def create(self, data: TransactionIn) -> Transaction:
        return self.create_bulk([data])[0]

    def create_bulk(
        self, items: Sequence[TransactionIn], *, commit: bool = True
    ) -> list[Transaction]:
        try:
            drafts = [draft_from_request(item) for item in items]
            skip_rules = [item.skip_rules for item in items]
            transactions = self._post(drafts, skip_rules)
            if commit:
                self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return transactions

    def create_from_draft(
        self, draft: TransactionDraft, *, skip_rules: bool = False
    ) -> Transaction:
        try:
            txn = self._post([draft], [skip_rules])[0]
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return txn

    def _apply_rules(
        self, drafts: list[TransactionDraft], skip_rules: Sequence[bool]
    ) -> list[TransactionDraft]:
        groups = None
        processed: list[TransactionDraft] = []
        for draft, skip in zip(drafts, skip_rules):
            if skip:
                processed.append(draft)
                continue
            if groups is None:
                groups = self.executor.load_groups()
            processed.append(self.executor.process(draft, groups))
        changed = [after for before, after in zip(drafts, processed) if after != before]
        if changed:
            self.validator.validate(changed)
        return processed

    def _fill_adjustment_source(self, draft: TransactionDraft) -> None:
        if draft.type != TransactionType.adjustment:
            return
        adjustment = AccountService(self.session).default_account(AccountType.adjustment)
        draft.source_account_id = adjustment.id
        draft.source_currency = adjustment.currency
        draft.source_amount = -self.converter.convert(
            draft.destination_currency, adjustment.currency, draft.destination_amount
        )

    def _load_tags(self, tag_ids: Iterable[int]) -> list[Tag]:
        tag_ids = sorted(set(tag_ids))
        if not tag_ids:
            return []
        tags = self.session.scalars(
            select(Tag).where(Tag.id.in_(tag_ids), Tag.deleted_at.is_(None))
        ).all()
        found = {tag.id for tag in tags}
        for tag_id in tag_ids:
            if tag_id not in found:
                raise NotFoundError(f"tag with id {tag_id} not found")
        return list(tags)

    def _check_category(self, category_id: Optional[int]) -> None:
        if category_id is None:
            return
        category = self.session.get(Category, category_id)
        if category is None or category.deleted_at is not None:
            raise NotFoundError(f"category with id {category_id} not found")

    def _lock_accounts(self, account_ids: Iterable[int]) -> dict[int, Account]:
        ids = sorted({a for a in account_ids if a is not None})
        if not ids:
            return {}
        stmt = (
            select(Account)
            .where(Account.id.in_(ids))
            .order_by(Account.id.asc())
            .with_for_update()
        )
        accounts = {account.id: account for account in self.session.scalars(stmt).all()}
        for account_id in ids:
            if account_id not in accounts:
                raise NotFoundError(account_not_found(account_id))
        return accounts

    @staticmethod
    def _bump_first_transaction_at(
        transactions: Iterable[Transaction], accounts: dict[int, Account]
    ) -> None:
        for txn in transactions:
            for account_id in (txn.source_account_id, txn.destination_account_id):
                account = accounts.get(account_id)
                if account is None:
                    continue
                if (
                    account.first_transaction_at is None
                    or txn.transaction_date_time < account.first_transaction_at
                ):
                    account.first_transaction_at = txn.transaction_date_time

    def _refresh_first_transaction_at(self, accounts: dict[int, Account]) -> None:
        for account in accounts.values():
            account.first_transaction_at = self.session.scalar(
                select(func.min(Transaction.transaction_date_time)).where(
                    Transaction.deleted_at.is_(None),
                    or_(
                        Transaction.source_account_id == account.id,
                        Transaction.destination_account_id == account.id,
                    ),
                )
            )

    def _post(
        self, drafts: list[TransactionDraft], skip_rules: Sequence[bool]
    ) -> list[Transaction]:
        self.validator.validate(drafts)
        drafts = self._apply_rules(drafts, skip_rules)
        now = utc_now()

        transactions: list[Transaction] = []
        for draft in drafts:
            self._fill_adjustment_source(draft)
            self._check_category(draft.category_id)
            txn = Transaction(created_at=now, updated_at=now)
            draft.apply_to(txn)
            txn.tags = self._load_tags(draft.tag_ids)
            transactions.append(txn)
        self.session.add_all(transactions)
        self.session.flush()

        accounts = self._lock_accounts(
            a
            for txn in transactions
            for a in (txn.source_account_id, txn.destination_account_id)
        )
        self._bump_first_transaction_at(transactions, accounts)
        self.base_amounts.normalize_all(transactions)
        self.double_entries.record(transactions, accounts)
        self.stats.handle_transactions(transactions)
        self.session.flush()
        return transactions

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.id == transaction_id)
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalar(stmt)
        if not txn:
            raise NotFoundError(transaction_not_found(transaction_id))
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        try:
            txn = self.get(transaction_id)
            draft = draft_from_request(data)
            draft.id = txn.id
            draft.flags = txn.flags
            draft.voided_by_transaction_id = txn.voided_by_transaction_id
            self.validator.validate([draft])
            draft = self._apply_rules([draft], [data.skip_rules])[0]
            self._fill_adjustment_source(draft)
            self._check_category(draft.category_id)

            accounts = self._lock_accounts(
                [
                    txn.source_account_id,
                    txn.destination_account_id,
                    draft.source_account_id,
                    draft.destination_account_id,
                ]
            )
            self.stats.reverse_transactions([txn])
            draft.apply_to(txn)
            txn.tags = self._load_tags(draft.tag_ids)
            txn.updated_at = utc_now()
            self.session.flush()

            self._refresh_first_transaction_at(accounts)
            self.base_amounts.normalize_all([txn])
            self.double_entries.record([txn], accounts)
            self.stats.handle_transactions([txn])
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return txn

    def delete(self, transaction_id: int) -> None:
        try:
            txn = self.get(transaction_id)
            accounts = self._lock_accounts(
                [txn.source_account_id, txn.destination_account_id]
            )
            self.stats.reverse_transactions([txn])
            txn.deleted_at = utc_now()
            self.session.flush()
            self.double_entries.delete([txn.id])
            self._refresh_first_transaction_at(accounts)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def list(self, filters: TransactionListIn) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(selectinload(Transaction.tags))
            .where(Transaction.deleted_at.is_(None))
            .order_by(
                Transaction.transaction_date_time.desc(), Transaction.id.desc()
            )
            .offset(filters.offset)
            .limit(filters.limit)
        )
        if filters.ids:
            stmt = stmt.where(Transaction.id.in_(filters.ids))
        if filters.from_date:
            stmt = stmt.where(Transaction.transaction_date_only >= filters.from_date)
        if filters.to_date:
            stmt = stmt.where(Transaction.transaction_date_only <= filters.to_date)
        if filters.amount_from is not None or filters.amount_to is not None:
            amount = cast(
                func.abs(
                    func.coalesce(
                        Transaction.destination_amount, Transaction.source_amount
                    )
                ),
                Numeric(38, 18),
            )
            if filters.amount_from is not None:
                stmt = stmt.where(
                    amount >= cast(literal(str(filters.amount_from)), Numeric(38, 18))
                )
            if filters.amount_to is not None:
                stmt = stmt.where(
                    amount <= cast(literal(str(filters.amount_to)), Numeric(38, 18))
                )
        if filters.text_query:
            like = f"%{filters.text_query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Transaction.title).like(like),
                    func.lower(Transaction.notes).like(like),
                )
            )
        if filters.account_ids:
            stmt = stmt.where(
                or_(
                    Transaction.source_account_id.in_(filters.account_ids),
                    Transaction.destination_account_id.in_(filters.account_ids),
                )
            )
        if filters.transaction_types:
            stmt = stmt.where(Transaction.type.in_(filters.transaction_types))
        if filters.category_ids:
            stmt = stmt.where(Transaction.category_id.in_(filters.category_ids))
        if filters.tag_ids:
            stmt = stmt.where(
                Transaction.id.in_(
                    select(transaction_tags.c.transaction_id).where(
                        transaction_tags.c.tag_id.in_(filters.tag_ids)
                    )
                )
            )
        return self.session.scalars(stmt).all()

    def title_suggestions(self, query: str, limit: int = 10) -> list[str]:
        rows = self.session.scalars(
            select(Transaction.title)
            .where(Transaction.deleted_at.is_(None), Transaction.title != "")
            .order_by(Transaction.transaction_date_time.desc())
            .limit(2000)
        ).all()
        titles = list(dict.fromkeys(rows))
        if not query.strip():
            return titles[:limit]
        matches = process.extract(
            query,
            titles,
            scorer=fuzz.WRatio,
            processor=utils.default_process,
            limit=limit,
            score_cutoff=60,
        )
        return [title for title, _score, _idx in matches]


class RuleService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def list_all(self, include_deleted: bool = False) -> list[Rule]:
        stmt = select(Rule).order_by(
            Rule.group_name.asc(), Rule.sort_order.asc(), Rule.id.asc()
        )
        if not include_deleted:
            stmt = stmt.where(Rule.deleted_at.is_(None))
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> Rule:
        rule = self.session.get(Rule, rule_id)
        if not rule or rule.deleted_at is not None:
            raise NotFoundError(f"rule with id {rule_id} not found")
        return rule

    @staticmethod
    def _apply(rule: Rule, data: RuleIn) -> None:
        rule.title = data.title.strip()
        rule.script = data.script
        rule.interpreter_type = data.interpreter_type
        rule.sort_order = data.sort_order
        rule.group_name = data.group_name
        rule.enabled = data.enabled
        rule.is_final_rule = data.is_final_rule

    def create(self, data: RuleIn) -> Rule:
        if not data.script.strip():
            raise MissingFieldError("script is required")
        rule = Rule()
        self._apply(rule, data)
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def update(self, rule_id: int, data: RuleIn) -> Rule:
        if not data.script.strip():
            raise MissingFieldError("script is required")
        rule = self.get(rule_id)
        self._apply(rule, data)
        self.session.commit()
        self.session.refresh(rule)
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        rule.deleted_at = utc_now()
        self.session.commit()

    def dry_run(
        self, data: RuleIn, transaction_id: Optional[int] = None
    ) -> DryRunResult:
        """Run one unsaved rule against a stored (or empty) transaction."""
        if transaction_id is not None:
            txn = TransactionService(self.session).get(transaction_id)
            draft = TransactionDraft.from_transaction(txn)
            if draft.type == TransactionType.adjustment:
                draft.source_account_id = None
                draft.source_amount = None
                draft.source_currency = ""
        else:
            now = utc_now()
            draft = TransactionDraft(
                transaction_date_time=now, transaction_date_only=now.date()
            )
        rule = Rule()
        self._apply(rule, data)
        result = RuleExecutor(self.session).run_single(rule, draft)
        if result.rule_applied:
            TransactionValidator(self.session).validate([result.after])
        return result


def validate_cron_expression(expression: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(expression.strip())
    except ValueError as exc:
        raise InvalidFormatError(f"invalid cron expression {expression!r}: {exc}") from exc


class ScheduleRuleService:
    def __init__(
        self, session: Session, on_change: Optional[Callable[[], None]] = None
    ) -> None:
        self.session = session
        self.on_change = on_change

    def list_all(self, include_deleted: bool = False) -> list[ScheduleRule]:
        stmt = select(ScheduleRule).order_by(ScheduleRule.id.asc())
        if not include_deleted:
            stmt = stmt.where(ScheduleRule.deleted_at.is_(None))
        return self.session.scalars(stmt).all()

    def list_enabled(self) -> list[ScheduleRule]:
        stmt = (
            select(ScheduleRule)
            .where(ScheduleRule.enabled.is_(True), ScheduleRule.deleted_at.is_(None))
            .order_by(ScheduleRule.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, rule_id: int) -> ScheduleRule:
        rule = self.session.get(ScheduleRule, rule_id)
        if not rule or rule.deleted_at is not None:
            raise NotFoundError(f"schedule rule with id {rule_id} not found")
        return rule

    @staticmethod
    def _apply(rule: ScheduleRule, data: ScheduleRuleIn) -> None:
        rule.title = data.title.strip()
        rule.script = data.script
        rule.interpreter_type = data.interpreter_type
        rule.cron_expression = data.cron_expression.strip()
        rule.enabled = data.enabled
        rule.group_name = data.group_name

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change()

    def create(self, data: ScheduleRuleIn) -> ScheduleRule:
        validate_cron_expression(data.cron_expression)
        rule = ScheduleRule()
        self._apply(rule, data)
        self.session.add(rule)
        self.session.commit()
        self.session.refresh(rule)
        self._changed()
        return rule

    def update(self, rule_id: int, data: ScheduleRuleIn) -> ScheduleRule:
        validate_cron_expression(data.cron_expression)
        rule = self.get(rule_id)
        self._apply(rule, data)
        self.session.commit()
        self.session.refresh(rule)
        self._changed()
        return rule

    def delete(self, rule_id: int) -> None:
        rule = self.get(rule_id)
        rule.deleted_at = utc_now()
        self.session.commit()
        self._changed()

    def _empty_draft(self) -> TransactionDraft:
        now = utc_now()
        return TransactionDraft(transaction_date_time=now, transaction_date_only=now.date())

    def dry_run(self, data: ScheduleRuleIn) -> DryRunResult:
        rule = Rule(title=data.title, script=data.script, interpreter_type=data.interpreter_type)
        result = RuleExecutor(self.session).run_single(rule, self._empty_draft())
        TransactionValidator(self.session).validate([result.after])
        return result

    def run(self, rule_id: int) -> Transaction:
        """Fire a scheduled rule: build a transaction from its script and post it."""
        rule = self.get(rule_id)
        draft = self._empty_draft()
        LuaInterpreter(self.session).run(rule.script, draft)
        txn = TransactionService(self.session).create_from_draft(draft)
        rule.last_run_at = utc_now()
        self.session.commit()
        return txn


class MaintenanceService:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.base_currency = get_settings().base_currency

    def fix_daily_gaps(self) -> int:
        try:
            inserted = StatsService(self.session).fix_daily_gaps()
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"fix_daily_gaps: inserted_rows={inserted}")
        return inserted

    def recalculate_all(self) -> int:
        """Rebuild balances, ledger legs and snapshots from the transactions table."""
        try:
            accounts = {
                account.id: account
                for account in self.session.scalars(
                    select(Account).order_by(Account.id).with_for_update()
                ).all()
            }
            for account in accounts.values():
                account.current_balance = Decimal("0")
                account.first_transaction_at = None

            self.session.execute(delete(DoubleEntry))
            self.session.execute(delete(DailyStat))
            self.session.execute(delete(MonthlyStat))
            clear_gap_cache(self.session)

            transactions = self.session.scalars(
                select(Transaction)
                .where(Transaction.deleted_at.is_(None))
                .order_by(Transaction.transaction_date_time.asc(), Transaction.id.asc())
            ).all()

            converter = CurrencyConverter(self.session)
            base_amounts = BaseAmountService(self.session, converter, self.base_currency)
            double_entries = DoubleEntryService(self.session, self.base_currency)
            stats = StatsService(self.session)

            first_dates: dict[int, datetime] = {}
            for chunk in _chunks(transactions, RECALCULATE_CHUNK_SIZE):
                base_amounts.normalize_all(chunk)
                double_entries.record(chunk, accounts)
                stats.handle_transactions(chunk, fill_gaps=False)
                TransactionService._bump_first_transaction_at(chunk, accounts)
                for txn in chunk:
                    for account_id in (txn.source_account_id, txn.destination_account_id):
                        if account_id is not None and account_id not in first_dates:
                            first_dates[account_id] = txn.transaction_date_time

            for account_id, first in sorted(first_dates.items()):
                stats.calculate_daily_stat(account_id, first.date())
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        logger.info(f"recalculate_all: transactions={len(transactions)}")
        return len(transactions)
