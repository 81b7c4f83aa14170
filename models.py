import copy
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

from database import Base


ACCOUNT_FLAG_DEFAULT = 1


class DecimalType(TypeDecorator):
    """NUMERIC(38, 18) on real databases, exact decimal text on SQLite."""

    impl = Numeric(38, 18)
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "sqlite":
            return dialect.type_descriptor(String(64))
        return dialect.type_descriptor(Numeric(38, 18))

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        if dialect.name == "sqlite":
            return format(value, "f")
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            return Decimal(repr(value))
        if isinstance(value, Decimal):
            return value
        return Decimal(str(value))


BIGINT = BigInteger().with_variant(Integer, "sqlite")


class AccountType(str, Enum):
    asset = "asset"
    liability = "liability"
    income = "income"
    expense = "expense"
    adjustment = "adjustment"


class TransactionType(str, Enum):
    transfer_between_accounts = "transfer_between_accounts"
    income = "income"
    expense = "expense"
    adjustment = "adjustment"

    @property
    def label(self) -> str:
        return f"TRANSACTION_TYPE_{self.value.upper()}"


class ImportSource(str, Enum):
    privat24 = "privat24"
    monobank = "monobank"
    paribas = "paribas"
    firefly = "firefly"
    revolut = "revolut"


class InterpreterType(str, Enum):
    lua = "lua"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Currency(Base):
    __tablename__ = "currencies"

    id: Mapped[str] = mapped_column(String(10), primary_key=True)
    rate: Mapped[Decimal] = mapped_column(DecimalType, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    decimal_places: Mapped[int] = mapped_column(Integer, default=2, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        CheckConstraint("decimal_places >= 0", name="ck_currency_decimal_places"),
    )


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    currency: Mapped[str] = mapped_column(
        ForeignKey("currencies.id"), nullable=False
    )
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    current_balance: Mapped[Decimal] = mapped_column(
        DecimalType, default=Decimal("0"), nullable=False
    )
    flags: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    extra: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    note: Mapped[str] = mapped_column(Text, default="", nullable=False)
    iban: Mapped[str] = mapped_column(String(64), default="", nullable=False)
    account_number: Mapped[str] = mapped_column(Text, default="", nullable=False)
    liability_percent: Mapped[Optional[Decimal]] = mapped_column(DecimalType)
    display_order: Mapped[Optional[int]] = mapped_column(Integer)
    first_transaction_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    last_updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_accounts_type_flags", "type", "flags"),
    )

    @property
    def is_default(self) -> bool:
        return bool(self.flags & ACCOUNT_FLAG_DEFAULT)


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[str] = mapped_column(String(9), default="", nullable=False)
    icon: Mapped[str] = mapped_column(String(50), default="", nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index(
            "uq_tags_name_active",
            "name",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index(
            "uq_categories_name_active",
            "name",
            unique=True,
            sqlite_where=text("deleted_at IS NULL"),
            postgresql_where=text("deleted_at IS NULL"),
        ),
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column("transaction_id", BIGINT, ForeignKey("transactions.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(BIGINT, primary_key=True)
    type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    source_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    destination_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )
    source_currency: Mapped[str] = mapped_column(String(10), default="", nullable=False)
    destination_currency: Mapped[str] = mapped_column(
        String(10), default="", nullable=False
    )
    source_amount: Mapped[Optional[Decimal]] = mapped_column(DecimalType)
    destination_amount: Mapped[Optional[Decimal]] = mapped_column(DecimalType)
    fx_source_amount: Mapped[Optional[Decimal]] = mapped_column(DecimalType)
    fx_source_currency: Mapped[str] = mapped_column(
        String(10), default="", nullable=False
    )
    source_amount_in_base_currency: Mapped[Optional[Decimal]] = mapped_column(
        DecimalType
    )
    destination_amount_in_base_currency: Mapped[Optional[Decimal]] = mapped_column(
        DecimalType
    )
    transaction_date_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    transaction_date_only: Mapped[date] = mapped_column(Date, nullable=False)
    title: Mapped[str] = mapped_column(Text, default="", nullable=False)
    notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    extra: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    reference_number: Mapped[Optional[str]] = mapped_column(String(255))
    internal_reference_number: Mapped[Optional[str]] = mapped_column(String(255))
    flags: Mapped[int] = mapped_column(BIGINT, default=0, nullable=False)
    voided_by_transaction_id: Mapped[Optional[int]] = mapped_column(BIGINT)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    tags: Mapped[list["Tag"]] = relationship("Tag", secondary="transaction_tags")

    __table_args__ = (
        Index("ix_transactions_date_time", "transaction_date_time"),
        Index("ix_transactions_source_date", "source_account_id", "transaction_date_only"),
        Index(
            "ix_transactions_destination_date",
            "destination_account_id",
            "transaction_date_only",
        ),
    )

    @property
    def tag_ids(self) -> list[int]:
        return sorted(tag.id for tag in self.tags)


class DoubleEntry(Base):
    __tablename__ = "double_entries"

    id: Mapped[int] = mapped_column(BIGINT, primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    is_debit: Mapped[bool] = mapped_column(Boolean, nullable=False)
    amount_in_base_currency: Mapped[Decimal] = mapped_column(DecimalType, nullable=False)
    base_currency: Mapped[str] = mapped_column(String(10), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_double_entries_transaction", "transaction_id"),
        Index("ix_double_entries_account", "account_id"),
    )


class DailyStat(Base):
    __tablename__ = "daily_stats"

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), primary_key=True)
    date: Mapped[date] = mapped_column(Date, primary_key=True)
    amount: Mapped[Decimal] = mapped_column(DecimalType, nullable=False)


class MonthlyStat(Base):
    __tablename__ = "monthly_stats"

    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), primary_key=True)
    date: Mapped[date] = mapped_column(Date, primary_key=True)
    balance: Mapped[Decimal] = mapped_column(DecimalType, nullable=False)


class Rule(Base, TimestampMixin):
    __tablename__ = "rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    script: Mapped[str] = mapped_column(Text, nullable=False)
    interpreter_type: Mapped[InterpreterType] = mapped_column(
        SAEnum(InterpreterType), default=InterpreterType.lua, nullable=False
    )
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    group_name: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_final_rule: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    __table_args__ = (
        Index("ix_rules_group_order", "group_name", "sort_order", "id"),
    )


class ScheduleRule(Base, TimestampMixin):
    __tablename__ = "schedule_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    script: Mapped[str] = mapped_column(Text, nullable=False)
    interpreter_type: Mapped[InterpreterType] = mapped_column(
        SAEnum(InterpreterType), default=InterpreterType.lua, nullable=False
    )
    cron_expression: Mapped[str] = mapped_column(String(100), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    group_name: Mapped[str] = mapped_column(String(100), default="", nullable=False)
    last_run_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class ImportDeduplication(Base):
    __tablename__ = "import_deduplications"

    import_source: Mapped[ImportSource] = mapped_column(
        SAEnum(ImportSource), primary_key=True
    )
    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id"), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )


@dataclass
class TransactionDraft:
    """Plain-value copy of a transaction, used by validation and rule scripts."""

    type: Optional[TransactionType] = None
    source_account_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    source_currency: str = ""
    destination_currency: str = ""
    source_amount: Optional[Decimal] = None
    destination_amount: Optional[Decimal] = None
    fx_source_amount: Optional[Decimal] = None
    fx_source_currency: str = ""
    transaction_date_time: Optional[datetime] = None
    transaction_date_only: Optional[date] = None
    title: str = ""
    notes: str = ""
    extra: dict[str, str] = field(default_factory=dict)
    tag_ids: set[int] = field(default_factory=set)
    category_id: Optional[int] = None
    reference_number: Optional[str] = None
    internal_reference_number: Optional[str] = None
    flags: int = 0
    voided_by_transaction_id: Optional[int] = None
    id: Optional[int] = None

    def clone(self) -> "TransactionDraft":
        return copy.deepcopy(self)

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionDraft":
        return cls(
            id=txn.id,
            type=txn.type,
            source_account_id=txn.source_account_id,
            destination_account_id=txn.destination_account_id,
            source_currency=txn.source_currency or "",
            destination_currency=txn.destination_currency or "",
            source_amount=txn.source_amount,
            destination_amount=txn.destination_amount,
            fx_source_amount=txn.fx_source_amount,
            fx_source_currency=txn.fx_source_currency or "",
            transaction_date_time=txn.transaction_date_time,
            transaction_date_only=txn.transaction_date_only,
            title=txn.title or "",
            notes=txn.notes or "",
            extra=dict(txn.extra or {}),
            tag_ids=set(txn.tag_ids),
            category_id=txn.category_id,
            reference_number=txn.reference_number,
            internal_reference_number=txn.internal_reference_number,
            flags=txn.flags or 0,
            voided_by_transaction_id=txn.voided_by_transaction_id,
        )

    def apply_to(self, txn: Transaction) -> None:
        """Copy every value field (not tags) onto an ORM row."""
        txn.type = self.type
        txn.source_account_id = self.source_account_id
        txn.destination_account_id = self.destination_account_id
        txn.source_currency = self.source_currency
        txn.destination_currency = self.destination_currency
        txn.source_amount = self.source_amount
        txn.destination_amount = self.destination_amount
        txn.fx_source_amount = self.fx_source_amount
        txn.fx_source_currency = self.fx_source_currency
        txn.transaction_date_time = self.transaction_date_time
        txn.transaction_date_only = self.transaction_date_only
        txn.title = self.title
        txn.notes = self.notes
        txn.extra = dict(self.extra)
        txn.category_id = self.category_id
        txn.reference_number = self.reference_number
        txn.internal_reference_number = self.internal_reference_number
        txn.flags = self.flags
        txn.voided_by_transaction_id = self.voided_by_transaction_id
