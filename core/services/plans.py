from __future__ import annotations

import json
import logging
import os
from typing import Any, Iterable, Optional

from sqlalchemy.orm import Session

from core.errors import NotFound
from core.models import Plan

logger = logging.getLogger("salarysync.plans")

FEATURES: tuple[str, ...] = (
    "employees",
    "payroll",
    "leave_management",
    "time_tracking",
    "reporting",
    "multi_company",
)

# Keywords used to normalize free-text feature lists stored by older plan rows
FEATURE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "employees": ("employee", "staff", "personnel", "hr", "workforce"),
    "payroll": ("payroll", "salary", "wage", "tax", "compensation"),
    "leave_management": ("leave", "vacation", "time_off", "absence", "holiday"),
    "time_tracking": ("time", "hours", "timesheet", "attendance", "clock"),
    "reporting": ("report", "analytics", "dashboard", "insights", "statistics"),
    "multi_company": ("multi", "multiple", "companies", "organizations", "entities"),
}
_ALL_MARKERS = ("all", "full", "complete")

TRIAL_PLAN_NAME = "Trial"

DEFAULT_PLANS: list[dict[str, Any]] = [
    {
        "name": TRIAL_PLAN_NAME,
        "description": "14-day free trial with every feature",
        "price_cents": 0,
        "max_employees": None,
        "max_payrolls": None,
        "features": list(FEATURES),
        "is_trial": True,
        "sort_order": 0,
        "price_env": None,
    },
    {
        "name": "Starter",
        "description": "Payroll for small teams",
        "price_cents": 2900,
        "max_employees": 10,
        "max_payrolls": 12,
        "features": ["employees", "payroll", "reporting"],
        "is_trial": False,
        "sort_order": 10,
        "price_env": "PAYMENT_PRICE_STARTER",
    },
    {
        "name": "Professional",
        "description": "Growing companies with leave and time tracking",
        "price_cents": 7900,
        "max_employees": 50,
        "max_payrolls": None,
        "features": ["employees", "payroll", "reporting", "leave_management", "time_tracking"],
        "is_trial": False,
        "sort_order": 20,
        "price_env": "PAYMENT_PRICE_PROFESSIONAL",
    },
    {
        "name": "Enterprise",
        "description": "Unlimited employees and multiple companies",
        "price_cents": 19900,
        "max_employees": None,
        "max_payrolls": None,
        "features": list(FEATURES),
        "is_trial": False,
        "sort_order": 30,
        "price_env": "PAYMENT_PRICE_ENTERPRISE",
    },
]


def map_features(raw: Any) -> frozenset[str]:
    """Normalize a feature declaration to canonical feature keys.

    Accepts canonical keys, legacy free-text labels ("Basic payroll", "Advanced reports"),
    or a {feature: bool} mapping. Labels containing all/full/complete grant every feature.
    Anything unrecognizable falls back to employee management only.
    """
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            raw = [raw]
    if isinstance(raw, dict):
        return frozenset(key for key in FEATURES if bool(raw.get(key)))
    if not isinstance(raw, (list, tuple, set, frozenset)):
        return frozenset({"employees"})
    granted: set[str] = set()
    for item in raw:
        label = str(item or "").strip().lower()
        if not label:
            continue
        if label in FEATURES:
            granted.add(label)
            continue
        if any(marker in label for marker in _ALL_MARKERS):
            return frozenset(FEATURES)
        for key, keywords in FEATURE_KEYWORDS.items():
            if any(kw in label for kw in keywords):
                granted.add(key)
    return frozenset(granted) if granted else frozenset({"employees"})


def plan_features(plan: Optional[Plan]) -> frozenset[str]:
    if plan is None:
        return frozenset({"employees"})
    return map_features(plan.features_json or "[]")


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    return {
        "id": plan.id,
        "name": plan.name,
        "description": plan.description or "",
        "price_cents": int(plan.price_cents or 0),
        "currency": plan.currency,
        "interval": plan.interval,
        "max_employees": plan.max_employees,
        "max_payrolls": plan.max_payrolls,
        "features": sorted(plan_features(plan)),
        "is_trial": bool(plan.is_trial),
        "purchasable": bool(plan.processor_price_id) and not plan.is_trial,
    }


def seed_plans(db: Session) -> list[dict[str, Any]]:
    """Create missing catalogue plans; existing plans are reported, not modified
    (except a processor price id that is configured but not yet stored)."""
    results: list[dict[str, Any]] = []
    for spec in DEFAULT_PLANS:
        price_id = (os.environ.get(spec["price_env"]) or "").strip() if spec["price_env"] else ""
        existing = db.query(Plan).filter(Plan.name == spec["name"]).first()
        if existing:
            if price_id and not existing.processor_price_id:
                existing.processor_price_id = price_id
            results.append({"action": "exists", "plan": spec["name"], "id": existing.id})
            continue
        plan = Plan(
            name=spec["name"],
            description=spec["description"],
            price_cents=spec["price_cents"],
            max_employees=spec["max_employees"],
            max_payrolls=spec["max_payrolls"],
            features_json=json.dumps(spec["features"]),
            processor_price_id=price_id or None,
            is_trial=spec["is_trial"],
            sort_order=spec["sort_order"],
            is_active=True,
        )
        db.add(plan)
        db.flush()
        logger.info("plan created", extra={"event": "plan_created"})
        results.append({"action": "created", "plan": plan.name, "id": plan.id})
    db.commit()
    return results


def get_trial_plan(db: Session) -> Plan:
    """The trial plan, created on demand so registration never depends on seeding."""
    plan = db.query(Plan).filter(Plan.is_trial.is_(True)).order_by(Plan.id).first()
    if plan:
        return plan
    spec = DEFAULT_PLANS[0]
    plan = Plan(
        name=spec["name"],
        description=spec["description"],
        price_cents=0,
        features_json=json.dumps(spec["features"]),
        is_trial=True,
        is_active=True,
        sort_order=0,
    )
    db.add(plan)
    db.flush()
    return plan


def list_active_plans(db: Session, *, include_trial: bool = False) -> list[Plan]:
    q = db.query(Plan).filter(Plan.is_active.is_(True))
    if not include_trial:
        q = q.filter(Plan.is_trial.is_(False))
    return q.order_by(Plan.sort_order, Plan.id).all()


def get_plan(db: Session, plan_id: int) -> Plan:
    plan = db.get(Plan, plan_id)
    if plan is None or not plan.is_active:
        raise NotFound("plan not found")
    return plan


def find_by_price_id(db: Session, price_id: Optional[str]) -> Optional[Plan]:
    if not price_id:
        return None
    return db.query(Plan).filter(Plan.processor_price_id == price_id).first()


def feature_names(features: Iterable[str]) -> list[str]:
    return [f for f in FEATURES if f in set(features)]
