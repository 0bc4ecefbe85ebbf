from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from core.cache import access_key, company_prefix, get_cache
from core.errors import Conflict, InvalidTransition, LimitExceeded, NotFound, ValidationFailed
from core.metrics import count_event
from core.models import Company, Plan, Subscription, as_utc, utc_now
from core.settings import get_settings

from . import plans as plan_service

logger = logging.getLogger("salarysync.subscriptions")

TRIALING = "trialing"
ACTIVE = "active"
PAST_DUE = "past_due"
TRIAL_EXPIRED = "trial_expired"
CANCELED = "canceled"

STATUSES = (TRIALING, ACTIVE, PAST_DUE, TRIAL_EXPIRED, CANCELED)

# Every status change goes through this table
_TRANSITIONS: dict[str, frozenset[str]] = {
    TRIALING: frozenset({ACTIVE, TRIAL_EXPIRED, CANCELED}),
    TRIAL_EXPIRED: frozenset({ACTIVE, TRIALING}),
    ACTIVE: frozenset({ACTIVE, PAST_DUE, CANCELED}),
    PAST_DUE: frozenset({ACTIVE, CANCELED}),
    CANCELED: frozenset({ACTIVE}),
}


@dataclass(frozen=True)
class AccessInfo:
    """What a company may do right now. Limits of None mean unlimited."""

    company_id: int
    status: str
    plan_name: Optional[str]
    is_trial: bool
    has_subscription: bool
    max_employees: Optional[int]
    max_payrolls: Optional[int]
    features: frozenset[str] = field(default_factory=frozenset)
    trial_end: Optional[dt.datetime] = None
    current_period_end: Optional[dt.datetime] = None
    cancel_at_period_end: bool = False

    @property
    def is_paid_active(self) -> bool:
        return self.status == ACTIVE

    def has_feature(self, feature: str) -> bool:
        return feature in self.features

    def to_dict(self) -> dict[str, Any]:
        return {
            "company_id": self.company_id,
            "status": self.status,
            "plan": self.plan_name,
            "is_trial": self.is_trial,
            "has_subscription": self.has_subscription,
            "limits": {
                "max_employees": self.max_employees,
                "max_payrolls": self.max_payrolls,
                "features": plan_service.feature_names(self.features),
            },
            "trial_end": self.trial_end.isoformat() if self.trial_end else None,
            "current_period_end": self.current_period_end.isoformat() if self.current_period_end else None,
            "cancel_at_period_end": self.cancel_at_period_end,
        }


def _now(now: Optional[dt.datetime]) -> dt.datetime:
    return as_utc(now) if now is not None else utc_now()


def can_transition(current: str, new: str) -> bool:
    return current == new or new in _TRANSITIONS.get(current, frozenset())


def transition(sub: Subscription, new_status: str, *, reason: str = "") -> None:
    """Move a subscription to ``new_status`` or raise InvalidTransition."""
    if new_status not in STATUSES:
        raise ValidationFailed(f"unknown subscription status: {new_status}")
    current = sub.status
    if current == new_status:
        return
    if not can_transition(current, new_status):
        raise InvalidTransition(
            f"cannot move subscription from {current} to {new_status}",
            details={"from": current, "to": new_status},
        )
    sub.status = new_status
    logger.info(
        "subscription %s -> %s (%s)",
        current,
        new_status,
        reason or "unspecified",
        extra={"event": "subscription_transition", "company_id": sub.company_id},
    )
    invalidate(sub.company_id)


def invalidate(company_id: int) -> None:
    get_cache().delete_prefix(company_prefix(company_id))


def get_subscription(db: Session, company_id: int) -> Optional[Subscription]:
    return db.query(Subscription).filter(Subscription.company_id == company_id).first()


def require_subscription(db: Session, company_id: int) -> Subscription:
    sub = get_subscription(db, company_id)
    if sub is None:
        raise NotFound("company has no subscription", code="no_subscription")
    return sub


def effective_status(sub: Subscription, now: Optional[dt.datetime] = None) -> str:
    """Stored status corrected for time that passed since the last write."""
    moment = _now(now)
    if sub.status == TRIALING:
        trial_end = as_utc(sub.trial_end)
        if trial_end is None or moment > trial_end:
            return TRIAL_EXPIRED
    if sub.status == ACTIVE and sub.cancel_at_period_end:
        period_end = as_utc(sub.current_period_end)
        if period_end is not None and moment > period_end:
            return CANCELED
    return sub.status


def _compute_access(db: Session, company_id: int, now: dt.datetime) -> AccessInfo:
    sub = get_subscription(db, company_id)
    if sub is None:
        return AccessInfo(
            company_id=company_id,
            status="none",
            plan_name=None,
            is_trial=False,
            has_subscription=False,
            max_employees=1,
            max_payrolls=0,
            features=frozenset({"employees"}),
        )
    status = effective_status(sub, now)
    plan = sub.plan
    common = dict(
        company_id=company_id,
        status=status,
        plan_name=plan.name if plan else None,
        has_subscription=True,
        trial_end=as_utc(sub.trial_end),
        current_period_end=as_utc(sub.current_period_end),
        cancel_at_period_end=bool(sub.cancel_at_period_end),
    )
    if status == TRIALING:
        return AccessInfo(
            is_trial=True,
            max_employees=None,
            max_payrolls=None,
            features=frozenset(plan_service.FEATURES),
            **common,
        )
    if status == ACTIVE and plan is not None:
        return AccessInfo(
            is_trial=False,
            max_employees=plan.max_employees,
            max_payrolls=plan.max_payrolls,
            features=plan_service.plan_features(plan),
            **common,
        )
    # Expired, past due or canceled: employee records stay manageable, payroll stops
    return AccessInfo(
        is_trial=False,
        max_employees=None,
        max_payrolls=0,
        features=frozenset({"employees"}),
        **common,
    )


def _access_ttl(access: AccessInfo, now: dt.datetime) -> float:
    """Seconds the access may be cached: never past the moment it changes by itself."""
    ttl = float(get_cache().default_ttl)
    boundary = None
    if access.status == TRIALING:
        boundary = access.trial_end
    elif access.status == ACTIVE and access.cancel_at_period_end:
        boundary = access.current_period_end
    if boundary is not None:
        ttl = min(ttl, (boundary - now).total_seconds())
    return ttl


def resolve_access(db: Session, company_id: int, now: Optional[dt.datetime] = None) -> AccessInfo:
    """Effective limits and features for a company.

    Memoized in the TTL cache for the current time only, and never beyond the end
    of a running trial or a period that ends in cancellation. Explicit ``now``
    values (tests, back-dated checks) always hit the database.
    """
    if now is not None:
        return _compute_access(db, company_id, as_utc(now))
    cache = get_cache()
    key = access_key(company_id)
    cached = cache.get(key)
    if cached is not None:
        return cached
    moment = utc_now()
    access = _compute_access(db, company_id, moment)
    ttl = _access_ttl(access, moment)
    if ttl > 0:
        cache.set(key, access, ttl)
    return access


def ensure_feature(access: AccessInfo, feature: str) -> None:
    if not access.has_feature(feature):
        raise LimitExceeded(
            f"feature '{feature}' is not included in the current subscription",
            code="feature_unavailable",
            details={"feature": feature, "status": access.status},
        )


def ensure_employee_capacity(access: AccessInfo, active_employees: int) -> None:
    limit = access.max_employees
    if limit is not None and active_employees >= limit:
        raise LimitExceeded(
            f"employee limit reached ({limit})",
            code="employee_limit_reached",
            details={"limit": limit, "current": active_employees},
        )


def ensure_payroll_capacity(access: AccessInfo, runs_this_year: int) -> None:
    limit = access.max_payrolls
    if limit is not None and runs_this_year >= limit:
        raise LimitExceeded(
            "payroll run limit reached" if limit else "payroll processing requires an active subscription",
            code="payroll_limit_reached",
            details={"limit": limit, "current": runs_this_year, "status": access.status},
        )


# ------------------------------
# Trial lifecycle
# ------------------------------


def start_trial(db: Session, company: Company, now: Optional[dt.datetime] = None) -> Subscription:
    """Open the trial for a company that has no subscription yet.

    Idempotent for a company that is already trialing; any other existing
    subscription is a conflict (one subscription per company).
    """
    existing = get_subscription(db, company.id)
    if existing is not None:
        if existing.status == TRIALING:
            return existing
        raise Conflict("company already has a subscription", code="subscription_exists")
    moment = _now(now)
    trial_end = moment + dt.timedelta(days=get_settings().trial_duration_days)
    sub = Subscription(
        company_id=company.id,
        plan_id=plan_service.get_trial_plan(db).id,
        status=TRIALING,
        trial_start=moment,
        trial_end=trial_end,
        current_period_start=moment,
        current_period_end=trial_end,
    )
    db.add(sub)
    db.flush()
    invalidate(company.id)
    count_event("trial_started")
    logger.info("trial started", extra={"event": "trial_started", "company_id": company.id})
    return sub


def trial_status(sub: Optional[Subscription], now: Optional[dt.datetime] = None) -> Optional[dict[str, Any]]:
    """Trial progress; None when the subscription never was (or no longer is) a trial."""
    if sub is None or sub.trial_start is None or sub.trial_end is None:
        return None
    if sub.status not in (TRIALING, TRIAL_EXPIRED):
        return None
    moment = _now(now)
    start = as_utc(sub.trial_start)
    end = as_utc(sub.trial_end)
    day = 86400.0
    days_used = max(0, math.floor((moment - start).total_seconds() / day))
    days_remaining = max(0, math.ceil((end - moment).total_seconds() / day))
    is_expired = moment > end
    return {
        "is_active": sub.status == TRIALING and not is_expired,
        "is_expired": is_expired,
        "status": effective_status(sub, moment),
        "trial_start": start.isoformat(),
        "trial_end": end.isoformat(),
        "days_used": days_used,
        "days_remaining": days_remaining,
        "extensions": int(sub.trial_extensions or 0),
        "can_extend": int(sub.trial_extensions or 0) < get_settings().trial_max_extensions,
    }


def extend_trial(db: Session, company_id: int, days: Optional[int] = None, now: Optional[dt.datetime] = None) -> Subscription:
    settings = get_settings()
    days = int(days if days is not None else settings.trial_extension_days)
    if days <= 0 or days > 90:
        raise ValidationFailed("extension must be between 1 and 90 days")
    sub = require_subscription(db, company_id)
    if sub.status not in (TRIALING, TRIAL_EXPIRED):
        raise InvalidTransition("only trials can be extended", details={"from": sub.status})
    if int(sub.trial_extensions or 0) >= settings.trial_max_extensions:
        raise Conflict("maximum number of trial extensions reached", code="trial_extension_limit")
    moment = _now(now)
    # An expired trial restarts from now, an active one from its current end
    base = as_utc(sub.trial_end) or moment
    if base < moment:
        base = moment
    sub.trial_end = base + dt.timedelta(days=days)
    sub.current_period_end = sub.trial_end
    sub.trial_extensions = int(sub.trial_extensions or 0) + 1
    transition(sub, TRIALING, reason="trial_extended")
    db.flush()
    invalidate(company_id)
    count_event("trial_extended")
    return sub


def expire_trials(db: Session, now: Optional[dt.datetime] = None) -> int:
    """Bulk move overdue trials to trial_expired; returns how many changed."""
    moment = _now(now)
    overdue = db.query(Subscription).filter(Subscription.status == TRIALING).all()
    changed = 0
    for sub in overdue:
        end = as_utc(sub.trial_end)
        if end is None or end < moment:
            transition(sub, TRIAL_EXPIRED, reason="trial_ended")
            changed += 1
    db.flush()
    if changed:
        count_event("trial_expired", amount=changed)
    return changed


def expiring_trials(db: Session, within_days: int = 3, now: Optional[dt.datetime] = None) -> list[Subscription]:
    moment = _now(now)
    horizon = moment + dt.timedelta(days=int(within_days))
    rows = db.query(Subscription).filter(Subscription.status == TRIALING).all()
    out = []
    for sub in rows:
        end = as_utc(sub.trial_end)
        if end is not None and moment <= end <= horizon:
            out.append(sub)
    return sorted(out, key=lambda s: as_utc(s.trial_end))


def ensure_subscription(db: Session, company: Company, now: Optional[dt.datetime] = None) -> tuple[Subscription, bool]:
    """Return the company's subscription, creating the missing one.

    The repaired trial is anchored at company creation, so a company that slipped
    through without one cannot earn a fresh 14 days; it lands in trial_expired
    when that window has passed.
    """
    sub = get_subscription(db, company.id)
    if sub is not None:
        return sub, False
    moment = _now(now)
    start = as_utc(company.created_at) or moment
    end = start + dt.timedelta(days=get_settings().trial_duration_days)
    sub = Subscription(
        company_id=company.id,
        plan_id=plan_service.get_trial_plan(db).id,
        status=TRIALING if end >= moment else TRIAL_EXPIRED,
        trial_start=start,
        trial_end=end,
        current_period_start=start,
        current_period_end=end,
    )
    db.add(sub)
    db.flush()
    invalidate(company.id)
    logger.warning(
        "created missing subscription (%s)", sub.status, extra={"event": "subscription_repaired", "company_id": company.id}
    )
    return sub, True


# ------------------------------
# Paid lifecycle
# ------------------------------


def activate_paid(
    db: Session,
    sub: Subscription,
    *,
    plan: Optional[Plan] = None,
    customer_id: Optional[str] = None,
    subscription_id: Optional[str] = None,
    period_start: Optional[dt.datetime] = None,
    period_end: Optional[dt.datetime] = None,
    cancel_at_period_end: Optional[bool] = None,
    now: Optional[dt.datetime] = None,
) -> Subscription:
    if plan is not None and plan.is_trial:
        raise ValidationFailed("the trial plan cannot be purchased")
    moment = _now(now)
    was_trial = sub.status in (TRIALING, TRIAL_EXPIRED)
    transition(sub, ACTIVE, reason="payment")
    if plan is not None:
        sub.plan_id = plan.id
        sub.plan = plan
    if customer_id:
        sub.processor_customer_id = customer_id
    if subscription_id:
        sub.processor_subscription_id = subscription_id
    if period_start is not None:
        sub.current_period_start = as_utc(period_start)
    if period_end is not None:
        sub.current_period_end = as_utc(period_end)
    if cancel_at_period_end is not None:
        sub.cancel_at_period_end = bool(cancel_at_period_end)
    sub.canceled_at = None
    if was_trial:
        sub.converted_from_trial = True
        sub.trial_converted_at = moment
        count_event("trial_converted")
    db.flush()
    invalidate(sub.company_id)
    return sub


def mark_past_due(db: Session, sub: Subscription) -> Subscription:
    transition(sub, PAST_DUE, reason="payment_failed")
    db.flush()
    invalidate(sub.company_id)
    return sub


def mark_canceled(db: Session, sub: Subscription, now: Optional[dt.datetime] = None) -> Subscription:
    transition(sub, CANCELED, reason="canceled")
    sub.canceled_at = _now(now)
    sub.cancel_at_period_end = False
    db.flush()
    invalidate(sub.company_id)
    return sub


def cancel(db: Session, company_id: int, gateway=None, now: Optional[dt.datetime] = None) -> Subscription:
    """Cancel a subscription.

    A trial ends immediately. A paid subscription keeps running until the end of
    the current period (the processor is told first when one is linked).
    """
    sub = require_subscription(db, company_id)
    status = effective_status(sub, now)
    if status == TRIALING:
        return mark_canceled(db, sub, now)
    if status not in (ACTIVE, PAST_DUE):
        raise InvalidTransition(f"cannot cancel a {status} subscription", details={"from": status})
    if sub.cancel_at_period_end:
        return sub
    if sub.processor_subscription_id and gateway is not None:
        gateway.set_cancel_at_period_end(sub.processor_subscription_id, True)
    if status == PAST_DUE:
        return mark_canceled(db, sub, now)
    sub.cancel_at_period_end = True
    db.flush()
    invalidate(company_id)
    return sub


def reactivate(db: Session, company_id: int, gateway=None, now: Optional[dt.datetime] = None) -> Subscription:
    sub = require_subscription(db, company_id)
    if effective_status(sub, now) != ACTIVE or not sub.cancel_at_period_end:
        raise InvalidTransition("only a pending cancellation can be undone", details={"from": sub.status})
    if sub.processor_subscription_id and gateway is not None:
        gateway.set_cancel_at_period_end(sub.processor_subscription_id, False)
    sub.cancel_at_period_end = False
    db.flush()
    invalidate(company_id)
    return sub


def subscription_to_dict(sub: Optional[Subscription], now: Optional[dt.datetime] = None) -> Optional[dict[str, Any]]:
    if sub is None:
        return None
    return {
        "id": sub.id,
        "company_id": sub.company_id,
        "plan": sub.plan.name if sub.plan else None,
        "status": sub.status,
        "effective_status": effective_status(sub, now),
        "current_period_start": as_utc(sub.current_period_start).isoformat() if sub.current_period_start else None,
        "current_period_end": as_utc(sub.current_period_end).isoformat() if sub.current_period_end else None,
        "cancel_at_period_end": bool(sub.cancel_at_period_end),
        "trial_end": as_utc(sub.trial_end).isoformat() if sub.trial_end else None,
        "trial_extensions": int(sub.trial_extensions or 0),
        "converted_from_trial": bool(sub.converted_from_trial),
    }
