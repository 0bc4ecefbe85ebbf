from __future__ import annotations

import datetime as dt

import pytest

UTC = dt.timezone.utc


def _sub(auth_db, company):
    from core.services import subscriptions as subs

    return subs.get_subscription(auth_db, company.id)


@pytest.mark.parametrize(
    "current,new,allowed",
    [
        ("trialing", "active", True),
        ("trialing", "trial_expired", True),
        ("trialing", "canceled", True),
        ("trialing", "past_due", False),
        ("trial_expired", "active", True),
        ("trial_expired", "trialing", True),
        ("trial_expired", "canceled", False),
        ("active", "past_due", True),
        ("active", "canceled", True),
        ("active", "trialing", False),
        ("past_due", "active", True),
        ("past_due", "canceled", True),
        ("past_due", "trial_expired", False),
        ("canceled", "active", True),
        ("canceled", "trialing", False),
        ("canceled", "canceled", True),
    ],
)
def test_transition_table(current, new, allowed):
    from core.services.subscriptions import can_transition

    assert can_transition(current, new) is allowed


def test_transition_rejects_and_keeps_status(owner, auth_db):
    from core.errors import InvalidTransition, ValidationFailed
    from core.services import subscriptions as subs

    sub = _sub(auth_db, owner[1])
    with pytest.raises(InvalidTransition) as err:
        subs.transition(sub, subs.PAST_DUE)
    assert err.value.details == {"from": "trialing", "to": "past_due"}
    assert err.value.status_code == 409
    assert sub.status == subs.TRIALING
    with pytest.raises(ValidationFailed):
        subs.transition(sub, "frozen")


def test_effective_status_follows_the_clock(owner, auth_db):
    from core.services import subscriptions as subs

    sub = _sub(auth_db, owner[1])
    end = sub.trial_end
    assert subs.effective_status(sub, now=end - dt.timedelta(seconds=1)) == subs.TRIALING
    assert subs.effective_status(sub, now=end + dt.timedelta(seconds=1)) == subs.TRIAL_EXPIRED

    sub.status = subs.ACTIVE
    sub.current_period_end = dt.datetime(2025, 6, 30, tzinfo=UTC)
    sub.cancel_at_period_end = True
    assert subs.effective_status(sub, now=dt.datetime(2025, 6, 1, tzinfo=UTC)) == subs.ACTIVE
    assert subs.effective_status(sub, now=dt.datetime(2025, 7, 1, tzinfo=UTC)) == subs.CANCELED
    sub.cancel_at_period_end = False
    assert subs.effective_status(sub, now=dt.datetime(2025, 7, 1, tzinfo=UTC)) == subs.ACTIVE


def test_trial_status_counts_days(owner, auth_db):
    from core.services import subscriptions as subs

    sub = _sub(auth_db, owner[1])
    moment = sub.trial_start + dt.timedelta(days=3, hours=1)
    info = subs.trial_status(sub, now=moment)
    assert info["is_active"] and not info["is_expired"]
    assert info["days_used"] == 3
    assert info["days_remaining"] == 11
    assert info["extensions"] == 0 and info["can_extend"]

    late = subs.trial_status(sub, now=sub.trial_end + dt.timedelta(days=2))
    assert late["is_expired"] and not late["is_active"]
    assert late["days_remaining"] == 0
    assert late["status"] == subs.TRIAL_EXPIRED


def test_trial_status_none_for_paid(owner, auth_db):
    from core.services import subscriptions as subs

    sub = _sub(auth_db, owner[1])
    subs.activate_paid(auth_db, sub)
    assert subs.trial_status(sub) is None
    assert subs.trial_status(None) is None


def test_extend_trial_limits(owner, auth_db):
    from core.errors import Conflict, ValidationFailed
    from core.services import subscriptions as subs

    company = owner[1]
    sub = _sub(auth_db, company)
    original_end = sub.trial_end
    subs.extend_trial(auth_db, company.id)
    assert sub.trial_end == original_end + dt.timedelta(days=7)
    subs.extend_trial(auth_db, company.id, days=3)
    assert sub.trial_extensions == 2
    with pytest.raises(Conflict) as err:
        subs.extend_trial(auth_db, company.id)
    assert err.value.code == "trial_extension_limit"
    with pytest.raises(ValidationFailed):
        subs.extend_trial(auth_db, company.id, days=0)


def test_extend_expired_trial_restarts_from_now(owner, auth_db):
    from core.services import subscriptions as subs

    company = owner[1]
    sub = _sub(auth_db, company)
    later = sub.trial_end + dt.timedelta(days=10)
    assert subs.expire_trials(auth_db, now=later) == 1
    assert sub.status == subs.TRIAL_EXPIRED
    subs.extend_trial(auth_db, company.id, days=5, now=later)
    assert sub.status == subs.TRIALING
    assert subs.as_utc(sub.trial_end) == later + dt.timedelta(days=5)


def test_paid_subscription_cannot_be_extended(owner, auth_db):
    from core.errors import InvalidTransition
    from core.services import subscriptions as subs

    company = owner[1]
    subs.activate_paid(auth_db, _sub(auth_db, company))
    with pytest.raises(InvalidTransition):
        subs.extend_trial(auth_db, company.id)


def test_expire_trials_only_touches_overdue(owner, auth_db):
    from core.services import subscriptions as subs

    sub = _sub(auth_db, owner[1])
    assert subs.expire_trials(auth_db, now=sub.trial_end - dt.timedelta(hours=1)) == 0
    assert sub.status == subs.TRIALING
    assert subs.expire_trials(auth_db, now=sub.trial_end + dt.timedelta(hours=1)) == 1
    assert subs.expire_trials(auth_db, now=sub.trial_end + dt.timedelta(hours=2)) == 0


def test_expire_trials_leaves_commit_to_caller(owner, auth_db):
    from core.services import subscriptions as subs

    sub = _sub(auth_db, owner[1])
    assert subs.expire_trials(auth_db, now=sub.trial_end + dt.timedelta(hours=1)) == 1
    auth_db.rollback()
    assert _sub(auth_db, owner[1]).status == subs.TRIALING


def test_expiring_trials_window(owner, auth_db):
    from core.services import subscriptions as subs

    sub = _sub(auth_db, owner[1])
    assert subs.expiring_trials(auth_db, within_days=3, now=sub.trial_end - dt.timedelta(days=5)) == []
    found = subs.expiring_trials(auth_db, within_days=3, now=sub.trial_end - dt.timedelta(days=2))
    assert [s.company_id for s in found] == [owner[1].id]


def test_access_per_status(owner, auth_db):
    from core.services import plans as plan_service
    from core.services import subscriptions as subs

    company = owner[1]
    sub = _sub(auth_db, company)
    now = sub.trial_start + dt.timedelta(days=1)

    trial = subs.resolve_access(auth_db, company.id, now=now)
    assert trial.is_trial and trial.status == subs.TRIALING
    assert trial.max_employees is None and trial.max_payrolls is None
    assert trial.features == frozenset(plan_service.FEATURES)

    expired = subs.resolve_access(auth_db, company.id, now=sub.trial_end + dt.timedelta(days=1))
    assert expired.status == subs.TRIAL_EXPIRED
    assert expired.features == frozenset({"employees"})
    assert expired.max_payrolls == 0

    plan_service.seed_plans(auth_db)
    starter = auth_db.query(plan_service.Plan).filter_by(name="Starter").one()
    subs.activate_paid(auth_db, sub, plan=starter)
    paid = subs.resolve_access(auth_db, company.id, now=now)
    assert paid.is_paid_active and not paid.is_trial
    assert (paid.max_employees, paid.max_payrolls) == (10, 12)
    assert paid.features == frozenset({"employees", "payroll", "reporting"})
    assert paid.to_dict()["limits"]["features"] == ["employees", "payroll", "reporting"]

    subs.mark_past_due(auth_db, sub)
    past_due = subs.resolve_access(auth_db, company.id, now=now)
    assert past_due.features == frozenset({"employees"}) and past_due.max_payrolls == 0


def test_access_without_subscription(auth_db):
    from core.services import subscriptions as subs

    access = subs.resolve_access(auth_db, 999)
    assert not access.has_subscription
    assert access.max_employees == 1 and access.max_payrolls == 0
    assert access.has_feature("employees") and not access.has_feature("payroll")


def test_access_is_cached_until_transition(owner, auth_db):
    from core.cache import access_key, get_cache
    from core.services import subscriptions as subs

    company = owner[1]
    first = subs.resolve_access(auth_db, company.id)
    assert get_cache().get(access_key(company.id)) is first
    assert subs.resolve_access(auth_db, company.id) is first
    subs.activate_paid(auth_db, _sub(auth_db, company))
    assert get_cache().get(access_key(company.id)) is None
    assert subs.resolve_access(auth_db, company.id).status == subs.ACTIVE


@pytest.fixture()
def clock(monkeypatch):
    """Moves both the wall clock seen by subscriptions and the cache clock."""
    import time

    from core.services import subscriptions as subs

    state = {"offset": 0.0}
    wall = subs.utc_now()
    mono = time.monotonic()
    monkeypatch.setattr(subs, "utc_now", lambda: wall + dt.timedelta(seconds=state["offset"]))
    monkeypatch.setattr("core.cache.time.monotonic", lambda: mono + state["offset"])
    state["now"] = wall
    return state


def test_cached_trial_access_ends_with_the_trial(owner, auth_db, clock):
    from core.services import subscriptions as subs

    company = owner[1]
    sub = _sub(auth_db, company)
    sub.trial_end = clock["now"] + dt.timedelta(seconds=60)
    auth_db.commit()
    subs.invalidate(company.id)

    assert subs.resolve_access(auth_db, company.id).status == subs.TRIALING
    clock["offset"] = 30
    assert subs.resolve_access(auth_db, company.id).status == subs.TRIALING
    clock["offset"] = 61
    access = subs.resolve_access(auth_db, company.id)
    assert access.status == subs.TRIAL_EXPIRED
    assert access.max_payrolls == 0 and not access.has_feature("payroll")


def test_cached_access_ends_with_a_cancelled_period(owner, auth_db, clock):
    from core.services import subscriptions as subs

    company = owner[1]
    subs.activate_paid(
        auth_db,
        _sub(auth_db, company),
        period_start=clock["now"] - dt.timedelta(days=29),
        period_end=clock["now"] + dt.timedelta(seconds=90),
        cancel_at_period_end=True,
    )
    auth_db.commit()

    assert subs.resolve_access(auth_db, company.id).status == subs.ACTIVE
    clock["offset"] = 91
    assert subs.resolve_access(auth_db, company.id).status == subs.CANCELED


def test_expired_trial_access_is_cached_normally(owner, auth_db):
    from core.cache import access_key, get_cache
    from core.services import subscriptions as subs

    company = owner[1]
    sub = _sub(auth_db, company)
    sub.trial_end = subs.utc_now() - dt.timedelta(days=1)
    auth_db.commit()
    subs.invalidate(company.id)

    assert subs.resolve_access(auth_db, company.id).status == subs.TRIAL_EXPIRED
    # No boundary ahead: the restricted access is cached normally
    assert get_cache().get(access_key(company.id)) is not None


def test_limits_raise_payment_required():
    from core.errors import LimitExceeded
    from core.services.subscriptions import AccessInfo, ensure_employee_capacity, ensure_feature, ensure_payroll_capacity

    access = AccessInfo(
        company_id=1,
        status="active",
        plan_name="Starter",
        is_trial=False,
        has_subscription=True,
        max_employees=10,
        max_payrolls=12,
        features=frozenset({"employees", "payroll"}),
    )
    ensure_employee_capacity(access, 9)
    with pytest.raises(LimitExceeded) as err:
        ensure_employee_capacity(access, 10)
    assert err.value.code == "employee_limit_reached" and err.value.status_code == 402
    with pytest.raises(LimitExceeded) as err:
        ensure_payroll_capacity(access, 12)
    assert err.value.code == "payroll_limit_reached"
    with pytest.raises(LimitExceeded) as err:
        ensure_feature(access, "reporting")
    assert err.value.code == "feature_unavailable"


def test_start_trial_is_idempotent_but_single(owner, auth_db):
    from core.errors import Conflict
    from core.services import subscriptions as subs

    company = owner[1]
    sub = _sub(auth_db, company)
    assert subs.start_trial(auth_db, company) is sub
    subs.activate_paid(auth_db, sub)
    with pytest.raises(Conflict):
        subs.start_trial(auth_db, company)


def test_ensure_subscription_anchors_at_company_creation(auth_db):
    from core.models import Company, Subscription
    from core.services import subscriptions as subs

    created = dt.datetime(2025, 1, 1, tzinfo=UTC)
    company = Company(name="Zonder Abonnement B.V.", created_at=created)
    auth_db.add(company)
    auth_db.commit()

    sub, made = subs.ensure_subscription(auth_db, company, now=dt.datetime(2025, 1, 5, tzinfo=UTC))
    assert made and sub.status == subs.TRIALING
    assert subs.as_utc(sub.trial_end) == created + dt.timedelta(days=14)
    assert subs.ensure_subscription(auth_db, company) == (sub, False)

    late = Company(name="Te Laat B.V.", created_at=created)
    auth_db.add(late)
    auth_db.commit()
    sub2, made2 = subs.ensure_subscription(auth_db, late, now=dt.datetime(2025, 3, 1, tzinfo=UTC))
    assert made2 and sub2.status == subs.TRIAL_EXPIRED
    assert auth_db.query(Subscription).count() == 2


def test_cancel_trial_is_immediate(owner, auth_db):
    from core.services import subscriptions as subs

    company = owner[1]
    sub = subs.cancel(auth_db, company.id)
    assert sub.status == subs.CANCELED and sub.canceled_at is not None


def test_cancel_and_reactivate_paid(owner, auth_db, processor):
    from core.errors import InvalidTransition
    from core.services import subscriptions as subs

    company = owner[1]
    sub = _sub(auth_db, company)
    subs.activate_paid(
        auth_db,
        sub,
        subscription_id="sub_123",
        period_end=dt.datetime.now(UTC) + dt.timedelta(days=20),
    )
    gateway = processor.gateway()

    subs.cancel(auth_db, company.id, gateway=gateway)
    assert sub.cancel_at_period_end and sub.status == subs.ACTIVE
    assert processor.calls[-1][:2] == ("POST", "/v1/subscriptions/sub_123")
    assert "cancel_at_period_end=true" in processor.calls[-1][2]

    subs.reactivate(auth_db, company.id, gateway=gateway)
    assert not sub.cancel_at_period_end
    assert "cancel_at_period_end=false" in processor.calls[-1][2]
    with pytest.raises(InvalidTransition):
        subs.reactivate(auth_db, company.id, gateway=gateway)


def test_cancel_past_due_ends_now(owner, auth_db):
    from core.services import subscriptions as subs

    company = owner[1]
    sub = _sub(auth_db, company)
    subs.activate_paid(auth_db, sub)
    subs.mark_past_due(auth_db, sub)
    subs.cancel(auth_db, company.id)
    assert sub.status == subs.CANCELED


def test_activate_paid_records_conversion(owner, auth_db):
    from core.errors import ValidationFailed
    from core.services import plans as plan_service
    from core.services import subscriptions as subs

    sub = _sub(auth_db, owner[1])
    with pytest.raises(ValidationFailed):
        subs.activate_paid(auth_db, sub, plan=plan_service.get_trial_plan(auth_db))
    assert sub.status == subs.TRIALING
    subs.activate_paid(auth_db, sub, customer_id="cus_1", subscription_id="sub_1")
    assert sub.converted_from_trial and sub.trial_converted_at is not None
    assert sub.processor_customer_id == "cus_1"
