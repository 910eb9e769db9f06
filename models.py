from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _value_enum(enum_cls: type[Enum], name: str) -> SAEnum:
    return SAEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [member.value for member in cls],
    )


class AccountType(str, Enum):
    private = "PRIVATE"
    business = "BUSINESS"
    tax = "TAX"


class TransferLeg(str, Enum):
    out = "OUT"
    in_ = "IN"


class IntervalType(str, Enum):
    weekly = "WEEKLY"
    monthly = "MONTHLY"
    yearly = "YEARLY"


class PeriodType(str, Enum):
    weekly = "WEEKLY"
    monthly = "MONTHLY"


class InvoiceStatus(str, Enum):
    planned = "planned"
    sent = "sent"
    paid = "paid"
    void = "void"


OPEN_INVOICE_STATUSES = (InvoiceStatus.planned, InvoiceStatus.sent)


class IncomeProfileType(str, Enum):
    employee = "employee"
    self_employed = "self_employed"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=_utcnow, onupdate=_utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    type: Mapped[AccountType] = mapped_column(
        _value_enum(AccountType, "accounttype"),
        nullable=False,
        default=AccountType.private,
    )
    color: Mapped[Optional[str]] = mapped_column(String(9))
    iban: Mapped[Optional[str]] = mapped_column(String(34))
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

    __table_args__ = (Index("ix_accounts_user", "user_id"),)


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(40), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column(
        "transaction_id",
        Integer,
        ForeignKey("transactions.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    tx_date: Mapped[date] = mapped_column(Date, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(120))
    is_business: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_tax_relevant: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    from_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    transfer_group_id: Mapped[Optional[str]] = mapped_column(String(36))
    transfer_leg: Mapped[Optional[TransferLeg]] = mapped_column(
        _value_enum(TransferLeg, "transferleg")
    )
    invoice_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("invoices.id", use_alter=True, name="fk_transactions_invoice")
    )

    account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[account_id]
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )

    __table_args__ = (
        CheckConstraint(
            "(transfer_group_id IS NULL AND transfer_leg IS NULL)"
            " OR (transfer_group_id IS NOT NULL AND transfer_leg IS NOT NULL)",
            name="ck_transactions_transfer_leg_pairing",
        ),
        Index("ix_transactions_user_date", "user_id", "tx_date"),
        Index("ix_transactions_user_account_date", "user_id", "account_id", "tx_date"),
        Index("ix_transactions_transfer_group", "user_id", "transfer_group_id"),
    )


class RecurringRule(Base, TimestampMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(120))
    interval_type: Mapped[IntervalType] = mapped_column(
        _value_enum(IntervalType, "intervaltype"), nullable=False
    )
    day_of_month: Mapped[Optional[int]] = mapped_column(Integer)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date)
    is_business: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_tax_relevant: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )

    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        CheckConstraint(
            "day_of_month IS NULL OR (day_of_month BETWEEN 1 AND 31)",
            name="ck_recurring_day_of_month",
        ),
        CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_recurring_end_after_start",
        ),
        Index("ix_recurring_user_start", "user_id", "start_date"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    category: Mapped[str] = mapped_column(String(120), nullable=False)
    planned_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    period_type: Mapped[PeriodType] = mapped_column(
        _value_enum(PeriodType, "periodtype"), nullable=False
    )
    period_start: Mapped[date] = mapped_column(Date, nullable=False)
    period_end: Mapped[date] = mapped_column(Date, nullable=False)

    account: Mapped[Optional["Account"]] = relationship("Account")

    __table_args__ = (
        CheckConstraint("planned_amount_cents > 0", name="ck_budget_planned_positive"),
        CheckConstraint("period_end >= period_start", name="ck_budget_period_order"),
        Index("ix_budget_user_period", "user_id", "period_start"),
    )


class IncomeProfile(Base, TimestampMixin):
    __tablename__ = "income_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    type: Mapped[IncomeProfileType] = mapped_column(
        _value_enum(IncomeProfileType, "incomeprofiletype"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    settings: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class SalarySetting(Base, TimestampMixin):
    __tablename__ = "salary_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    profile_id: Mapped[int] = mapped_column(
        ForeignKey("income_profiles.id"), nullable=False
    )
    net_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    gross_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    payout_day: Mapped[int] = mapped_column(Integer, nullable=False)
    # Stored for completeness; the month projection does not schedule bonuses.
    yearly_bonus_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    yearly_bonus_month: Mapped[Optional[int]] = mapped_column(Integer)
    yearly_bonus_day: Mapped[Optional[int]] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("net_amount_cents > 0", name="ck_salary_net_positive"),
        CheckConstraint(
            "payout_day BETWEEN 1 AND 31", name="ck_salary_payout_day_range"
        ),
        Index(
            "uq_salary_user_active",
            "user_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )


class Invoice(Base, TimestampMixin):
    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    profile_id: Mapped[Optional[int]] = mapped_column(ForeignKey("income_profiles.id"))
    customer_name: Mapped[str] = mapped_column(String(240), nullable=False, default="")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")
    service_date: Mapped[Optional[date]] = mapped_column(Date)
    issued_at: Mapped[Optional[date]] = mapped_column(Date)
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    expected_payment_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[InvoiceStatus] = mapped_column(
        _value_enum(InvoiceStatus, "invoicestatus"),
        nullable=False,
        default=InvoiceStatus.planned,
    )
    paid_at: Mapped[Optional[date]] = mapped_column(Date)
    paid_tx_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", use_alter=True, name="fk_invoices_paid_tx")
    )
    notes: Mapped[Optional[str]] = mapped_column(Text)

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_invoice_amount_positive"),
        CheckConstraint(
            "(status = 'paid') = (paid_tx_id IS NOT NULL)",
            name="ck_invoice_paid_has_tx",
        ),
        Index("ix_invoice_user_expected", "user_id", "status", "expected_payment_date"),
    )


class CommissionRule(Base, TimestampMixin):
    __tablename__ = "commission_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    profile_id: Mapped[Optional[int]] = mapped_column(ForeignKey("income_profiles.id"))
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    rule_json: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    versions: Mapped[list["CommissionRuleVersion"]] = relationship(
        "CommissionRuleVersion",
        back_populates="rule",
        cascade="all, delete-orphan",
    )


class CommissionRuleVersion(Base, TimestampMixin):
    __tablename__ = "commission_rule_versions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    commission_rule_id: Mapped[int] = mapped_column(
        ForeignKey("commission_rules.id", ondelete="CASCADE"), nullable=False
    )
    # Half-open [valid_from, valid_to); valid_to NULL means open-ended.
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[Optional[date]] = mapped_column(Date)
    rule_json: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict
    )

    rule: Mapped["CommissionRule"] = relationship(
        "CommissionRule", back_populates="versions"
    )

    __table_args__ = (
        CheckConstraint(
            "valid_to IS NULL OR valid_to > valid_from",
            name="ck_commission_version_range",
        ),
        Index(
            "ix_commission_version_rule_from", "commission_rule_id", "valid_from"
        ),
    )
