from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, ImportSource, InterpreterType, TransactionType


class AccountIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=200)
    currency: str = Field(..., min_length=3, max_length=10)
    type: AccountType
    flags: int = Field(0, ge=0)
    extra: dict[str, str] = Field(default_factory=dict)
    note: str = ""
    iban: str = ""
    account_number: str = ""
    liability_percent: Optional[Decimal] = None
    display_order: Optional[int] = None


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    currency: str
    type: AccountType
    current_balance: Decimal
    flags: int
    extra: dict[str, str]
    note: str
    iban: str
    account_number: str
    liability_percent: Optional[Decimal] = None
    display_order: Optional[int] = None
    first_transaction_at: Optional[datetime] = None
    created_at: datetime
    last_updated_at: datetime
    deleted_at: Optional[datetime] = None


class AccountBulkOut(BaseModel):
    created: list[AccountOut]
    skipped_count: int


class CurrencyIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=3, max_length=10)
    rate: Decimal = Field(..., gt=0)
    is_active: bool = True
    decimal_places: int = Field(2, ge=0, le=18)


class CurrencyUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rate: Decimal = Field(..., gt=0)
    is_active: bool = True
    decimal_places: int = Field(2, ge=0, le=18)


class CurrencyOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    rate: Decimal
    is_active: bool
    decimal_places: int
    updated_at: datetime
    deleted_at: Optional[datetime] = None


class ExchangeIn(BaseModel):
    from_currency: str
    to_currency: str
    amount: str


class ExchangeOut(BaseModel):
    amount: str


class TagIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field("", max_length=9)
    icon: str = Field("", max_length=50)


class TagOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    color: str
    icon: str


class CategoryIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str


class _TwoSidedIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_account_id: Optional[int] = None
    source_amount: Optional[str] = None
    source_currency: str = ""
    destination_account_id: Optional[int] = None
    destination_amount: Optional[str] = None
    destination_currency: str = ""


class ExpenseIn(_TwoSidedIn):
    fx_source_amount: Optional[str] = None
    fx_source_currency: Optional[str] = None


class IncomeIn(_TwoSidedIn):
    pass


class TransferIn(_TwoSidedIn):
    pass


class AdjustmentIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    destination_account_id: Optional[int] = None
    destination_amount: Optional[str] = None
    destination_currency: str = ""


class TransactionIn(BaseModel):
    """Create/update request; exactly one of the typed bodies must be set."""

    model_config = ConfigDict(extra="forbid")

    transaction_date: Optional[datetime] = None
    title: str = ""
    notes: str = ""
    extra: dict[str, str] = Field(default_factory=dict)
    tag_ids: list[int] = Field(default_factory=list)
    category_id: Optional[int] = None
    reference_number: Optional[str] = None
    internal_reference_number: Optional[str] = None
    skip_rules: bool = False

    expense: Optional[ExpenseIn] = None
    income: Optional[IncomeIn] = None
    transfer_between_accounts: Optional[TransferIn] = None
    adjustment: Optional[AdjustmentIn] = None


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    source_account_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    source_currency: str
    destination_currency: str
    source_amount: Optional[Decimal] = None
    destination_amount: Optional[Decimal] = None
    fx_source_amount: Optional[Decimal] = None
    fx_source_currency: str
    source_amount_in_base_currency: Optional[Decimal] = None
    destination_amount_in_base_currency: Optional[Decimal] = None
    transaction_date_time: datetime
    transaction_date_only: date
    title: str
    notes: str
    extra: dict[str, str]
    tag_ids: list[int]
    category_id: Optional[int] = None
    reference_number: Optional[str] = None
    internal_reference_number: Optional[str] = None
    flags: int
    voided_by_transaction_id: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class TransactionListIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ids: list[int] = Field(default_factory=list)
    amount_from: Optional[Decimal] = None
    amount_to: Optional[Decimal] = None
    from_date: Optional[date] = None
    to_date: Optional[date] = None
    text_query: Optional[str] = None
    account_ids: list[int] = Field(default_factory=list)
    transaction_types: list[TransactionType] = Field(default_factory=list)
    category_ids: list[int] = Field(default_factory=list)
    tag_ids: list[int] = Field(default_factory=list)
    limit: int = Field(50, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class RuleIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    script: str = Field(..., min_length=1)
    interpreter_type: InterpreterType = InterpreterType.lua
    sort_order: int = 0
    group_name: str = Field("", max_length=100)
    enabled: bool = True
    is_final_rule: bool = False


class RuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    script: str
    interpreter_type: InterpreterType
    sort_order: int
    group_name: str
    enabled: bool
    is_final_rule: bool
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None


class ScheduleRuleIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(..., min_length=1, max_length=200)
    script: str = Field(..., min_length=1)
    interpreter_type: InterpreterType = InterpreterType.lua
    cron_expression: str = Field(..., min_length=1, max_length=100)
    enabled: bool = True
    group_name: str = Field("", max_length=100)


class ScheduleRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    script: str
    interpreter_type: InterpreterType
    cron_expression: str
    enabled: bool
    group_name: str
    last_run_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    deleted_at: Optional[datetime] = None


class DryRunIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    rule: RuleIn
    transaction_id: Optional[int] = None


class ImportIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source: ImportSource
    content: list[str] = Field(..., min_length=1)
    skip_rules: bool = False
    treat_dates_as_utc: bool = False
    skip_duplicate_reference_check: bool = False


class ImportOut(BaseModel):
    imported_count: int
    duplicate_count: int


class RecalculateOut(BaseModel):
    transaction_count: int


class FixGapsOut(BaseModel):
    inserted_rows: int


class ParsedRowOut(BaseModel):
    title: str
    notes: str
    transaction_date: Optional[datetime] = None
    parsing_error: Optional[str] = None
    duplicate_transaction_id: Optional[int] = None
    transaction: Optional[TransactionIn] = None


class ImportParseOut(BaseModel):
    rows: list[ParsedRowOut]


class DraftOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    type: Optional[TransactionType] = None
    source_account_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    source_currency: str
    destination_currency: str
    source_amount: Optional[Decimal] = None
    destination_amount: Optional[Decimal] = None
    fx_source_amount: Optional[Decimal] = None
    fx_source_currency: str
    transaction_date_time: Optional[datetime] = None
    title: str
    notes: str
    extra: dict[str, str]
    tag_ids: list[int]
    category_id: Optional[int] = None
    reference_number: Optional[str] = None
    internal_reference_number: Optional[str] = None


class DryRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    before: DraftOut
    after: DraftOut
    rule_applied: bool
