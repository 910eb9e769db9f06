from datetime import date

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import IncomeProfileType
from schemas import (
    CommissionRuleIn,
    CommissionRuleVersionIn,
    IncomeProfileIn,
    IncomeProfilePatch,
    SalaryIn,
)
from services import (
    CommissionRuleService,
    IncomeProfileService,
    InvalidReferenceError,
    NotFoundError,
    SalaryService,
    StateConflictError,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def _profile(session, kind=IncomeProfileType.employee):
    return IncomeProfileService(session).create(IncomeProfileIn(type=kind, name="Main"))


def test_salary_upsert_keeps_one_active_row() -> None:
    session = make_session()
    profile = _profile(session)
    service = SalaryService(session)

    first = service.upsert(
        SalaryIn(profile_id=profile.id, net_amount_cents=300000, payout_day=25)
    )
    second = service.upsert(
        SalaryIn(
            profile_id=profile.id,
            net_amount_cents=320000,
            payout_day=31,
            currency="eur",
        )
    )

    assert second.id == first.id
    assert len(service.list()) == 1
    active = service.get_active()
    assert active.net_amount_cents == 320000
    assert active.payout_day == 31
    assert active.currency == "EUR"


def test_inactive_salary_is_stored_separately() -> None:
    session = make_session()
    profile = _profile(session)
    service = SalaryService(session)
    active = service.upsert(
        SalaryIn(profile_id=profile.id, net_amount_cents=300000, payout_day=25)
    )
    service.upsert(
        SalaryIn(
            profile_id=profile.id,
            net_amount_cents=100000,
            payout_day=1,
            is_active=False,
        )
    )

    assert len(service.list()) == 2
    assert service.get_active().id == active.id


def test_salary_requires_owned_profile() -> None:
    session = make_session()
    foreign = IncomeProfileService(session, user_id=2).create(
        IncomeProfileIn(type=IncomeProfileType.employee, name="Theirs")
    )
    with pytest.raises(InvalidReferenceError, match="Invalid profile reference"):
        SalaryService(session).upsert(
            SalaryIn(profile_id=foreign.id, net_amount_cents=1, payout_day=1)
        )


def test_salary_input_validation() -> None:
    with pytest.raises(ValidationError):
        SalaryIn(profile_id=1, net_amount_cents=0, payout_day=1)
    with pytest.raises(ValidationError):
        SalaryIn(profile_id=1, net_amount_cents=1, payout_day=32)


def test_commission_versions_must_not_overlap() -> None:
    session = make_session()
    profile = _profile(session, IncomeProfileType.self_employed)
    service = CommissionRuleService(session)
    rule = service.create(CommissionRuleIn(profile_id=profile.id, name="Sales"))

    service.add_version(
        rule.id,
        CommissionRuleVersionIn(
            valid_from=date(2025, 1, 1),
            valid_to=date(2025, 7, 1),
            rule_json={"rate": 0.1},
        ),
    )
    # Half-open ranges: starting exactly on the previous valid_to is fine.
    service.add_version(
        rule.id,
        CommissionRuleVersionIn(valid_from=date(2025, 7, 1), rule_json={"rate": 0.12}),
    )

    with pytest.raises(StateConflictError, match="overlaps"):
        service.add_version(
            rule.id,
            CommissionRuleVersionIn(
                valid_from=date(2024, 12, 1), valid_to=date(2025, 1, 2)
            ),
        )
    with pytest.raises(StateConflictError, match="overlaps"):
        service.add_version(
            rule.id, CommissionRuleVersionIn(valid_from=date(2030, 1, 1))
        )

    versions = service.list_versions(rule.id)
    assert [v.valid_from for v in versions] == [date(2025, 7, 1), date(2025, 1, 1)]


def test_commission_version_before_all_others_is_allowed() -> None:
    session = make_session()
    service = CommissionRuleService(session)
    rule = service.create(CommissionRuleIn(name="Sales"))
    service.add_version(rule.id, CommissionRuleVersionIn(valid_from=date(2025, 1, 1)))

    earlier = service.add_version(
        rule.id,
        CommissionRuleVersionIn(
            valid_from=date(2024, 1, 1), valid_to=date(2025, 1, 1)
        ),
    )
    assert earlier.commission_rule_id == rule.id


def test_commission_version_range_must_be_non_empty() -> None:
    with pytest.raises(ValidationError, match="valid_to must be after valid_from"):
        CommissionRuleVersionIn(valid_from=date(2025, 1, 1), valid_to=date(2025, 1, 1))


def test_commission_rule_of_other_user_is_not_found() -> None:
    session = make_session()
    rule = CommissionRuleService(session, user_id=2).create(
        CommissionRuleIn(name="Theirs")
    )
    with pytest.raises(NotFoundError, match="Commission rule not found"):
        CommissionRuleService(session).add_version(
            rule.id, CommissionRuleVersionIn(valid_from=date(2025, 1, 1))
        )


def test_income_profile_update_and_delete() -> None:
    session = make_session()
    service = IncomeProfileService(session)
    profile = _profile(session)

    updated = service.update(
        profile.id, IncomeProfilePatch(name="Day job", settings={"tax_class": 1})
    )
    assert updated.name == "Day job"
    assert updated.settings == {"tax_class": 1}
    assert updated.is_active is True
    with pytest.raises(ValueError, match="No changes"):
        service.update(profile.id, IncomeProfilePatch())

    SalaryService(session).upsert(
        SalaryIn(profile_id=profile.id, net_amount_cents=300000, payout_day=25)
    )
    with pytest.raises(StateConflictError, match="salary_settings"):
        service.delete(profile.id)

    spare = _profile(session, IncomeProfileType.self_employed)
    service.delete(spare.id)
    with pytest.raises(NotFoundError, match="Income profile not found"):
        service.get(spare.id)
    with pytest.raises(NotFoundError):
        IncomeProfileService(session, user_id=2).delete(profile.id)


def test_salary_delete() -> None:
    session = make_session()
    profile = _profile(session)
    service = SalaryService(session)
    setting = service.upsert(
        SalaryIn(profile_id=profile.id, net_amount_cents=300000, payout_day=25)
    )

    with pytest.raises(NotFoundError, match="Salary setting not found"):
        SalaryService(session, user_id=2).delete(setting.id)
    service.delete(setting.id)
    assert service.get_active() is None
    with pytest.raises(NotFoundError, match="Salary setting not found"):
        service.delete(setting.id)
