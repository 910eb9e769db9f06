from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import AccountType, IntervalType
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    RecurringRuleIn,
    RecurringRulePatch,
    TransactionIn,
    TransferIn,
)
from services import (
    AccountService,
    BudgetService,
    CashflowService,
    InvalidReferenceError,
    NotFoundError,
    RecurringRuleService,
    StateConflictError,
    TransactionService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _spend(session, account_id, on, cents, category="Food"):
    TransactionService(session).create(
        TransactionIn(
            account_id=account_id,
            tx_date=on,
            amount_cents=cents,
            description="x",
            category=category,
        )
    )


def test_account_balances_include_transfers() -> None:
    session = make_session()
    service = AccountService(session)
    a = service.create(AccountIn(name="A", initial_balance_cents=10000))
    b = service.create(AccountIn(name="B", type=AccountType.business))
    _spend(session, a.id, date(2025, 1, 3), -2500)
    TransactionService(session).create_transfer(
        TransferIn(
            from_account_id=a.id,
            to_account_id=b.id,
            tx_date=date(2025, 1, 4),
            amount_cents=1000,
            description="Move",
        )
    )

    balances = {row.account.name: row for row in service.balances()}
    assert balances["A"].balance_cents == 6500
    assert balances["A"].movement_cents == -3500
    assert balances["B"].balance_cents == 1000


def test_account_patch_and_delete_rules() -> None:
    session = make_session()
    service = AccountService(session)
    account = service.create(AccountIn(name="Old", color="#fff"))

    updated = service.update(account.id, AccountPatch(name="New", color=None))
    assert updated.name == "New"
    assert updated.color is None
    with pytest.raises(ValueError, match="name cannot be empty"):
        service.update(account.id, AccountPatch(name=None))

    _spend(session, account.id, date(2025, 1, 3), -100)
    with pytest.raises(StateConflictError):
        service.delete(account.id)

    unused = service.create(AccountIn(name="Unused"))
    service.delete(unused.id)
    with pytest.raises(NotFoundError, match="Account not found"):
        service.get(unused.id)


def test_recurring_rule_update_keeps_dates_ordered() -> None:
    session = make_session()
    account = AccountService(session).create(AccountIn(name="A"))
    service = RecurringRuleService(session)
    rule = service.create(
        RecurringRuleIn(
            account_id=account.id,
            amount_cents=-999,
            description="Streaming",
            interval_type=IntervalType.monthly,
            day_of_month=3,
            start_date=date(2025, 1, 1),
        )
    )

    with pytest.raises(ValueError, match="end_date must be on or after start_date"):
        service.update(rule.id, RecurringRulePatch(end_date=date(2024, 12, 31)))
    updated = service.update(
        rule.id, RecurringRulePatch(end_date=date(2025, 6, 30), amount_cents=-1299)
    )
    assert updated.end_date == date(2025, 6, 30)
    assert updated.amount_cents == -1299
    assert updated.description == "Streaming"

    service.delete(rule.id)
    with pytest.raises(NotFoundError, match="Rule not found"):
        service.get(rule.id)


def test_budget_overview_sums_expenses_live() -> None:
    session = make_session()
    accounts = AccountService(session)
    a = accounts.create(AccountIn(name="A"))
    b = accounts.create(AccountIn(name="B"))
    service = BudgetService(session)
    everywhere = service.create(
        BudgetIn(
            name="Food",
            category="Food",
            planned_amount_cents=30000,
            period_start=date(2025, 5, 1),
            period_end=date(2025, 5, 31),
        )
    )
    only_a = service.create(
        BudgetIn(
            account_id=a.id,
            name="Food A",
            category="Food",
            planned_amount_cents=10000,
            period_start=date(2025, 5, 1),
            period_end=date(2025, 5, 31),
        )
    )
    _spend(session, a.id, date(2025, 5, 2), -4000)
    _spend(session, b.id, date(2025, 5, 31), -1500)
    _spend(session, a.id, date(2025, 5, 3), 900)  # refunds are not usage
    _spend(session, a.id, date(2025, 6, 1), -7000)  # outside the period
    _spend(session, a.id, date(2025, 5, 4), -300, category="Fun")

    usage = {row.budget.id: row for row in service.overview()}
    assert usage[everywhere.id].used_cents == 5500
    assert usage[everywhere.id].remaining_cents == 24500
    assert usage[only_a.id].used_cents == 4000
    assert usage[only_a.id].remaining_cents == 6000


def test_budget_period_must_be_ordered() -> None:
    with pytest.raises(ValueError):
        BudgetIn(
            name="x",
            category="x",
            planned_amount_cents=1,
            period_start=date(2025, 5, 2),
            period_end=date(2025, 5, 1),
        )


def test_budget_update_checks_account_and_period() -> None:
    session = make_session()
    mine = AccountService(session).create(AccountIn(name="Mine"))
    theirs = AccountService(session, user_id=2).create(AccountIn(name="Theirs"))
    service = BudgetService(session)
    budget = service.create(
        BudgetIn(
            name="Food",
            category="Food",
            planned_amount_cents=30000,
            period_start=date(2025, 5, 1),
            period_end=date(2025, 5, 31),
        )
    )

    updated = service.update(
        budget.id, BudgetPatch(account_id=mine.id, planned_amount_cents=25000)
    )
    assert updated.account_id == mine.id
    assert updated.planned_amount_cents == 25000
    assert updated.category == "Food"

    cleared = service.update(budget.id, BudgetPatch(account_id=None))
    assert cleared.account_id is None

    with pytest.raises(InvalidReferenceError):
        service.update(budget.id, BudgetPatch(account_id=theirs.id))
    with pytest.raises(ValueError, match="period_end must be on or after"):
        service.update(budget.id, BudgetPatch(period_start=date(2025, 6, 1)))
    with pytest.raises(ValueError, match="category cannot be empty"):
        service.update(budget.id, BudgetPatch(category=None))
    with pytest.raises(ValueError, match="No changes"):
        service.update(budget.id, BudgetPatch())
    with pytest.raises(NotFoundError, match="Budget not found"):
        BudgetService(session, user_id=2).update(budget.id, BudgetPatch(name="x"))


def test_dashboard_summary_covers_last_thirty_days() -> None:
    session = make_session()
    accounts = AccountService(session)
    a = accounts.create(AccountIn(name="A", initial_balance_cents=10000))
    b = accounts.create(AccountIn(name="B"))
    _spend(session, a.id, date(2025, 6, 25), -2500)
    _spend(session, a.id, date(2025, 6, 20), 5000, category="Income")
    _spend(session, a.id, date(2025, 5, 21), -1000)
    TransactionService(session).create_transfer(
        TransferIn(
            from_account_id=a.id,
            to_account_id=b.id,
            tx_date=date(2025, 6, 29),
            amount_cents=1000,
            description="Move",
        )
    )

    summary = CashflowService(session).dashboard_summary(today=date(2025, 6, 30))

    assert summary.since == date(2025, 5, 31)
    assert summary.total_balance_cents == 11500
    assert summary.cashflow_cents == 2500
    assert summary.income_cents == 5000
    assert summary.expense_cents == -2500
    assert summary.as_dict() == {
        "since": "2025-05-31",
        "totalBalance": 115.0,
        "cashflow30d": 25.0,
        "income30d": 50.0,
        "expense30d": -25.0,
    }
