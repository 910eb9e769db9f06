from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from models import (
    OPEN_INVOICE_STATUSES,
    Budget,
    IntervalType,
    Invoice,
    RecurringRule,
    SalarySetting,
)
from periods import MonthWindow, clamp_day

MAX_WEEKLY_OCCURRENCES = 6


class EventKind(str, Enum):
    recurring = "recurring"
    salary = "salary"
    invoice = "invoice"
    budget_reserve = "budget_reserve"


@dataclass(frozen=True)
class CashEvent:
    date: date
    amount_cents: int  # signed: income positive, expense negative
    title: str
    kind: EventKind
    source_ref: str
    source_id: Optional[int] = None
    category: Optional[str] = None
    account_id: Optional[int] = None

    def as_dict(self) -> dict[str, object]:
        event_id = self.source_ref
        if self.kind == EventKind.recurring:
            event_id = f"{self.source_ref}:{self.date.isoformat()}"
        return {
            "id": event_id,
            "date": self.date.isoformat(),
            "amount": self.amount_cents / 100,
            "title": self.title,
            "kind": self.kind.value,
            "sourceRef": self.source_ref,
            "sourceId": self.source_id,
            "category": self.category,
            "accountId": self.account_id,
        }


def _recurring_event(rule: RecurringRule, on: date) -> CashEvent:
    return CashEvent(
        date=on,
        amount_cents=rule.amount_cents,
        title=rule.description,
        kind=EventKind.recurring,
        source_ref=f"recurring:{rule.id}",
        source_id=rule.id,
        category=rule.category,
        account_id=rule.account_id,
    )


def expand_recurring_rule(rule: RecurringRule, window: MonthWindow) -> list[CashEvent]:
    """Place one recurring rule into a month.

    MONTHLY rules land on their (clamped) day of month and are skipped when no
    day is configured. WEEKLY rules step in 7-day increments from the first of
    the month, not from the rule's start date. YEARLY rules fire only in the
    month of their start date.
    """
    if rule.interval_type == IntervalType.monthly:
        if not rule.day_of_month:
            return []
        return [_recurring_event(rule, window.on_day(rule.day_of_month))]

    if rule.interval_type == IntervalType.weekly:
        events: list[CashEvent] = []
        for i in range(MAX_WEEKLY_OCCURRENCES):
            on = window.start + timedelta(days=7 * i)
            if on > window.end:
                break
            events.append(_recurring_event(rule, on))
        return events

    if rule.interval_type == IntervalType.yearly:
        if rule.start_date.month != window.month_number:
            return []
        return [_recurring_event(rule, window.on_day(rule.start_date.day))]

    return []


def expand_salary(setting: SalarySetting, window: MonthWindow) -> list[CashEvent]:
    payout = date(
        window.year, window.month_number, clamp_day(setting.payout_day, window.last_day)
    )
    return [
        CashEvent(
            date=payout,
            amount_cents=abs(setting.net_amount_cents),
            title="Salary",
            kind=EventKind.salary,
            source_ref=f"salary:{setting.id}:{payout.isoformat()}",
            source_id=setting.id,
        )
    ]


def invoice_event(invoice: Invoice) -> CashEvent:
    title = f"Invoice: {invoice.customer_name}" if invoice.customer_name else "Invoice"
    return CashEvent(
        date=invoice.expected_payment_date,
        amount_cents=invoice.amount_cents,
        title=title,
        kind=EventKind.invoice,
        source_ref=f"invoice:{invoice.id}",
        source_id=invoice.id,
    )


def budget_reserve_event(budget: Budget) -> CashEvent:
    return CashEvent(
        date=budget.period_start,
        amount_cents=-budget.planned_amount_cents,
        title=f"Budget: {budget.name}",
        kind=EventKind.budget_reserve,
        source_ref=f"budget:{budget.id}",
        source_id=budget.id,
        category=budget.category,
        account_id=budget.account_id,
    )


def recurring_events(
    session: Session, user_id: int, window: MonthWindow
) -> list[CashEvent]:
    stmt = (
        select(RecurringRule)
        .where(
            RecurringRule.user_id == user_id,
            RecurringRule.start_date < window.end_exclusive,
            or_(
                RecurringRule.end_date.is_(None),
                RecurringRule.end_date >= window.start,
            ),
        )
        .order_by(RecurringRule.id)
    )
    events: list[CashEvent] = []
    for rule in session.scalars(stmt):
        events.extend(expand_recurring_rule(rule, window))
    return events


def active_salary(session: Session, user_id: int) -> Optional[SalarySetting]:
    stmt = (
        select(SalarySetting)
        .where(SalarySetting.user_id == user_id, SalarySetting.is_active.is_(True))
        .order_by(SalarySetting.created_at.desc(), SalarySetting.id.desc())
        .limit(1)
    )
    return session.scalar(stmt)


def salary_events(session: Session, user_id: int, window: MonthWindow) -> list[CashEvent]:
    setting = active_salary(session, user_id)
    if not setting:
        return []
    return expand_salary(setting, window)


def invoice_events(
    session: Session, user_id: int, window: MonthWindow
) -> list[CashEvent]:
    stmt = (
        select(Invoice)
        .where(
            Invoice.user_id == user_id,
            Invoice.status.in_(OPEN_INVOICE_STATUSES),
            Invoice.expected_payment_date >= window.start,
            Invoice.expected_payment_date < window.end_exclusive,
        )
        .order_by(
            Invoice.expected_payment_date, Invoice.created_at, Invoice.id
        )
    )
    return [invoice_event(invoice) for invoice in session.scalars(stmt)]


def budget_reserve_events(
    session: Session, user_id: int, window: MonthWindow
) -> list[CashEvent]:
    stmt = (
        select(Budget)
        .where(
            Budget.user_id == user_id,
            Budget.period_start >= window.start,
            Budget.period_start < window.end_exclusive,
        )
        .order_by(Budget.period_start, Budget.id)
    )
    return [budget_reserve_event(budget) for budget in session.scalars(stmt)]


def plan_events(session: Session, user_id: int, window: MonthWindow) -> list[CashEvent]:
    # Concatenated as-is: a misconfigured duplicate rule shows up twice.
    return (
        recurring_events(session, user_id, window)
        + salary_events(session, user_id, window)
        + invoice_events(session, user_id, window)
        + budget_reserve_events(session, user_id, window)
    )
