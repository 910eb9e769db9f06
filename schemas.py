from datetime import date
from typing import Annotated, Any, Optional

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)

from config import get_settings
from models import (
    AccountType,
    IncomeProfileType,
    IntervalType,
    InvoiceStatus,
    PeriodType,
    TransferLeg,
)


def _normalize_tags(tags: list[str]) -> list[str]:
    return [t.strip() for t in tags if t and t.strip()]


TagList = Annotated[
    list[Annotated[str, Field(max_length=40)]], AfterValidator(_normalize_tags)
]


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: AccountType = AccountType.private
    color: Optional[str] = Field(default=None, max_length=9)
    iban: Optional[str] = Field(default=None, max_length=34)
    initial_balance_cents: int = 0


class AccountPatch(BaseModel):
    """Only the fields a caller actually sends are applied."""

    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    type: Optional[AccountType] = None
    color: Optional[str] = Field(default=None, max_length=9)
    iban: Optional[str] = Field(default=None, max_length=34)
    initial_balance_cents: Optional[int] = None


class TransactionIn(BaseModel):
    account_id: int
    tx_date: date
    amount_cents: int
    description: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, max_length=120)
    tags: TagList = Field(default_factory=list)
    is_business: bool = False
    is_tax_relevant: bool = False


class TransactionPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    tx_date: Optional[date] = None
    amount_cents: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, max_length=120)
    is_business: Optional[bool] = None
    is_tax_relevant: Optional[bool] = None


class TransferIn(BaseModel):
    from_account_id: int
    to_account_id: int
    tx_date: date
    amount_cents: int
    description: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, max_length=120)
    tags: TagList = Field(default_factory=list)
    is_business: bool = False
    is_tax_relevant: bool = False

    @model_validator(mode="after")
    def _check_transfer(self) -> "TransferIn":
        if self.amount_cents <= 0:
            raise ValueError("amount must be > 0 for a transfer")
        if self.from_account_id == self.to_account_id:
            raise ValueError("from and to must differ")
        return self


class MarkPaidIn(BaseModel):
    account_id: int
    tx_date: date
    category: str = Field(default="Income", min_length=1, max_length=120)
    description: Optional[str] = Field(default=None, max_length=240)
    tags: TagList = Field(default_factory=list)
    is_business: bool = False
    is_tax_relevant: bool = False


class InvoiceIn(BaseModel):
    profile_id: Optional[int] = None
    customer_name: str = Field(default="", max_length=240)
    amount_cents: int = Field(..., gt=0)
    currency: str = Field(
        default_factory=lambda: get_settings().default_currency,
        min_length=3,
        max_length=3,
    )
    service_date: Optional[date] = None
    issued_at: Optional[date] = None
    due_date: Optional[date] = None
    expected_payment_date: Optional[date] = None
    status: InvoiceStatus = InvoiceStatus.planned
    notes: Optional[str] = Field(default=None, max_length=4000)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _open_status(self) -> "InvoiceIn":
        if self.status not in (InvoiceStatus.planned, InvoiceStatus.sent):
            raise ValueError("New invoices must be planned or sent")
        return self


class InvoicePatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    profile_id: Optional[int] = None
    customer_name: Optional[str] = Field(default=None, max_length=240)
    amount_cents: Optional[int] = Field(default=None, gt=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    service_date: Optional[date] = None
    issued_at: Optional[date] = None
    due_date: Optional[date] = None
    expected_payment_date: Optional[date] = None
    status: Optional[InvoiceStatus] = None
    notes: Optional[str] = Field(default=None, max_length=4000)

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value


class RecurringRuleIn(BaseModel):
    account_id: int
    amount_cents: int
    description: str = Field(..., min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, max_length=120)
    interval_type: IntervalType
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    start_date: date
    end_date: Optional[date] = None
    is_business: bool = False
    is_tax_relevant: bool = False

    @model_validator(mode="after")
    def _end_after_start(self) -> "RecurringRuleIn":
        if self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class RecurringRulePatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    amount_cents: Optional[int] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    category: Optional[str] = Field(default=None, max_length=120)
    interval_type: Optional[IntervalType] = None
    day_of_month: Optional[int] = Field(default=None, ge=1, le=31)
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    is_business: Optional[bool] = None
    is_tax_relevant: Optional[bool] = None


class BudgetIn(BaseModel):
    account_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=120)
    category: str = Field(..., min_length=1, max_length=120)
    planned_amount_cents: int = Field(..., gt=0)
    period_type: PeriodType = PeriodType.monthly
    period_start: date
    period_end: date

    @model_validator(mode="after")
    def _period_order(self) -> "BudgetIn":
        if self.period_end < self.period_start:
            raise ValueError("period_end must be on or after period_start")
        return self


class BudgetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    account_id: Optional[int] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    category: Optional[str] = Field(default=None, min_length=1, max_length=120)
    planned_amount_cents: Optional[int] = Field(default=None, gt=0)
    period_type: Optional[PeriodType] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None


class IncomeProfileIn(BaseModel):
    type: IncomeProfileType
    name: str = Field(..., min_length=1, max_length=120)
    settings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class IncomeProfilePatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    settings: Optional[dict[str, Any]] = None
    is_active: Optional[bool] = None


class SalaryIn(BaseModel):
    profile_id: int
    net_amount_cents: int = Field(..., gt=0)
    gross_amount_cents: Optional[int] = Field(default=None, gt=0)
    payout_day: int = Field(..., ge=1, le=31)
    yearly_bonus_amount_cents: Optional[int] = Field(default=None, gt=0)
    yearly_bonus_month: Optional[int] = Field(default=None, ge=1, le=12)
    yearly_bonus_day: Optional[int] = Field(default=None, ge=1, le=31)
    currency: str = Field(
        default_factory=lambda: get_settings().default_currency,
        min_length=3,
        max_length=3,
    )
    is_active: bool = True

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class CommissionRuleIn(BaseModel):
    profile_id: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=120)
    is_active: bool = True
    rule_json: dict[str, Any] = Field(default_factory=dict)


class CommissionRuleVersionIn(BaseModel):
    valid_from: date
    valid_to: Optional[date] = None
    rule_json: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _non_empty_range(self) -> "CommissionRuleVersionIn":
        if self.valid_to is not None and self.valid_to <= self.valid_from:
            raise ValueError("valid_to must be after valid_from")
        return self


class _ReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class AccountOut(_ReadModel):
    id: int
    name: str
    type: AccountType
    color: Optional[str]
    iban: Optional[str]
    initial_balance_cents: int


class AccountBalanceOut(_ReadModel):
    account: AccountOut
    movement_cents: int
    balance_cents: int


class TransactionOut(_ReadModel):
    id: int
    tx_date: date
    amount_cents: int
    description: str
    category: Optional[str]
    account_id: Optional[int]
    transfer_group_id: Optional[str]
    transfer_leg: Optional[TransferLeg]
    invoice_id: Optional[int]
    is_business: bool
    is_tax_relevant: bool
    tags: list[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _tag_names(cls, value: Any) -> list[str]:
        return [getattr(tag, "name", tag) for tag in value or []]


class LedgerEntryOut(_ReadModel):
    kind: str
    id: Optional[int]
    tx_date: date
    amount_cents: int
    description: str
    category: Optional[str]
    is_business: bool
    is_tax_relevant: bool
    account_id: Optional[int]
    from_account_id: Optional[int]
    to_account_id: Optional[int]
    transfer_group_id: Optional[str]
    tags: list[str]


class TransferOut(_ReadModel):
    transfer_group_id: str
    out_leg: TransactionOut
    in_leg: TransactionOut


class InvoiceOut(_ReadModel):
    id: int
    profile_id: Optional[int]
    customer_name: str
    amount_cents: int
    currency: str
    service_date: Optional[date]
    issued_at: Optional[date]
    due_date: Optional[date]
    expected_payment_date: Optional[date]
    status: InvoiceStatus
    paid_at: Optional[date]
    paid_tx_id: Optional[int]
    notes: Optional[str]


class PaidInvoiceOut(_ReadModel):
    invoice: InvoiceOut
    transaction: TransactionOut


class RecurringRuleOut(_ReadModel):
    id: int
    account_id: int
    amount_cents: int
    description: str
    category: Optional[str]
    interval_type: IntervalType
    day_of_month: Optional[int]
    start_date: date
    end_date: Optional[date]
    is_business: bool
    is_tax_relevant: bool


class BudgetOut(_ReadModel):
    id: int
    account_id: Optional[int]
    name: str
    category: str
    planned_amount_cents: int
    period_type: PeriodType
    period_start: date
    period_end: date


class BudgetUsageOut(_ReadModel):
    budget: BudgetOut
    used_cents: int
    remaining_cents: int


class IncomeProfileOut(_ReadModel):
    id: int
    type: IncomeProfileType
    name: str
    settings: dict[str, Any]
    is_active: bool


class SalaryOut(_ReadModel):
    id: int
    profile_id: int
    net_amount_cents: int
    gross_amount_cents: Optional[int]
    payout_day: int
    yearly_bonus_amount_cents: Optional[int]
    yearly_bonus_month: Optional[int]
    yearly_bonus_day: Optional[int]
    currency: str
    is_active: bool


class CommissionRuleOut(_ReadModel):
    id: int
    profile_id: Optional[int]
    name: str
    is_active: bool
    rule_json: dict[str, Any]


class CommissionRuleVersionOut(_ReadModel):
    id: int
    commission_rule_id: int
    valid_from: date
    valid_to: Optional[date]
    rule_json: dict[str, Any]
