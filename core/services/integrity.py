from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.models import Company, Employee, PayrollRecord, PayrollRun, Plan, Subscription, User, UserCompany, as_utc, utc_now

from . import companies as company_service
from . import payroll as payroll_service
from . import plans as plan_service
from . import subscriptions as subs

logger = logging.getLogger("salarysync.integrity")

CHECKS = (
    "stale_active_company",
    "memberships_on_inactive_company",
    "memberships_of_inactive_user",
    "companies_without_owner",
    "companies_without_subscription",
    "overdue_trials",
    "subscriptions_on_inactive_plan",
    "employees_of_unknown_company",
    "records_of_unknown_employee",
    "run_totals_out_of_sync",
)

# Reported only; fixing these needs a human decision
_REPORT_ONLY = {"memberships_of_inactive_user", "companies_without_owner", "records_of_unknown_employee"}


def _stale_active_company(auth_db: Session) -> list[dict[str, Any]]:
    out = []
    for user in auth_db.query(User).filter(User.is_active.is_(True)):
        memberships = company_service.list_memberships(auth_db, user)
        valid_ids = {m.company_id for m in memberships}
        if user.active_company_id is None and not valid_ids:
            continue
        if user.active_company_id not in valid_ids:
            out.append({"user_id": user.id, "active_company_id": user.active_company_id})
    return out


def _memberships_on_inactive_company(auth_db: Session) -> list[dict[str, Any]]:
    rows = (
        auth_db.query(UserCompany)
        .join(Company, Company.id == UserCompany.company_id)
        .filter(UserCompany.is_active.is_(True), Company.is_active.is_(False))
        .all()
    )
    return [{"membership_id": m.id, "user_id": m.user_id, "company_id": m.company_id} for m in rows]


def _memberships_of_inactive_user(auth_db: Session) -> list[dict[str, Any]]:
    rows = (
        auth_db.query(UserCompany)
        .join(User, User.id == UserCompany.user_id)
        .filter(UserCompany.is_active.is_(True), User.is_active.is_(False))
        .all()
    )
    return [{"membership_id": m.id, "user_id": m.user_id, "company_id": m.company_id} for m in rows]


def _companies_without_owner(auth_db: Session) -> list[dict[str, Any]]:
    owned = select(UserCompany.company_id).where(UserCompany.role == "owner", UserCompany.is_active.is_(True))
    rows = auth_db.query(Company).filter(Company.is_active.is_(True), Company.id.notin_(owned)).all()
    return [{"company_id": c.id, "name": c.name} for c in rows]


def _companies_without_subscription(auth_db: Session) -> list[dict[str, Any]]:
    with_sub = select(Subscription.company_id)
    rows = auth_db.query(Company).filter(Company.id.notin_(with_sub)).all()
    return [{"company_id": c.id, "name": c.name} for c in rows]


def _overdue_trials(auth_db: Session, now: dt.datetime) -> list[dict[str, Any]]:
    out = []
    for sub in auth_db.query(Subscription).filter(Subscription.status == subs.TRIALING):
        end = as_utc(sub.trial_end)
        if end is None or end < now:
            out.append({"company_id": sub.company_id, "trial_end": end.isoformat() if end else None})
    return out


def _subscriptions_on_inactive_plan(auth_db: Session) -> list[dict[str, Any]]:
    rows = (
        auth_db.query(Subscription)
        .outerjoin(Plan, Plan.id == Subscription.plan_id)
        .filter((Plan.id.is_(None)) | (Plan.is_active.is_(False)))
        .all()
    )
    return [{"company_id": s.company_id, "plan_id": s.plan_id, "status": s.status} for s in rows]


def _employees_of_unknown_company(auth_db: Session, hr_db: Session) -> list[dict[str, Any]]:
    known = {cid for (cid,) in auth_db.query(Company.id)}
    rows = hr_db.query(Employee).filter(Employee.is_active.is_(True)).all()
    return [{"employee_id": e.id, "company_id": e.company_id} for e in rows if e.company_id not in known]


def _records_of_unknown_employee(hr_db: Session, payroll_db: Session) -> list[dict[str, Any]]:
    known = {eid for (eid,) in hr_db.query(Employee.id)}
    out = []
    for rec_id, emp_id, company_id, period in payroll_db.query(
        PayrollRecord.id, PayrollRecord.employee_id, PayrollRecord.company_id, PayrollRecord.period
    ):
        if emp_id not in known:
            out.append({"record_id": rec_id, "employee_id": emp_id, "company_id": company_id, "period": period})
    return out


def _run_totals_out_of_sync(payroll_db: Session) -> list[dict[str, Any]]:
    sums = {
        run_id: (int(count or 0), Decimal(str(gross or 0)))
        for run_id, count, gross in payroll_db.query(
            PayrollRecord.run_id, func.count(PayrollRecord.id), func.sum(PayrollRecord.gross_salary)
        ).group_by(PayrollRecord.run_id)
    }
    out = []
    for run in payroll_db.query(PayrollRun):
        count, gross = sums.get(run.id, (0, Decimal(0)))
        if count != int(run.employee_count or 0) or gross.quantize(Decimal("0.01")) != Decimal(run.total_gross or 0).quantize(Decimal("0.01")):
            out.append({"run_id": run.id, "company_id": run.company_id, "period": run.period})
    return out


def check(auth_db: Session, hr_db: Session, payroll_db: Session, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    """Report every invariant violation without changing anything."""
    moment = as_utc(now) if now else utc_now()
    issues = {
        "stale_active_company": _stale_active_company(auth_db),
        "memberships_on_inactive_company": _memberships_on_inactive_company(auth_db),
        "memberships_of_inactive_user": _memberships_of_inactive_user(auth_db),
        "companies_without_owner": _companies_without_owner(auth_db),
        "companies_without_subscription": _companies_without_subscription(auth_db),
        "overdue_trials": _overdue_trials(auth_db, moment),
        "subscriptions_on_inactive_plan": _subscriptions_on_inactive_plan(auth_db),
        "employees_of_unknown_company": _employees_of_unknown_company(auth_db, hr_db),
        "records_of_unknown_employee": _records_of_unknown_employee(hr_db, payroll_db),
        "run_totals_out_of_sync": _run_totals_out_of_sync(payroll_db),
    }
    counts = {key: len(value) for key, value in issues.items()}
    return {"ok": not any(counts.values()), "counts": counts, "issues": issues}


def repair(auth_db: Session, hr_db: Session, payroll_db: Session, now: Optional[dt.datetime] = None) -> dict[str, Any]:
    """Fix what can be fixed mechanically, then report what is left."""
    moment = as_utc(now) if now else utc_now()
    before = check(auth_db, hr_db, payroll_db, now=moment)
    issues = before["issues"]
    repaired: dict[str, int] = {key: 0 for key in CHECKS if key not in _REPORT_ONLY}

    # Memberships first so the active-company repair sees the result
    for item in issues["memberships_on_inactive_company"]:
        membership = auth_db.get(UserCompany, item["membership_id"])
        if membership is not None:
            membership.is_active = False
            repaired["memberships_on_inactive_company"] += 1
    auth_db.commit()

    for item in issues["stale_active_company"]:
        user = auth_db.get(User, item["user_id"])
        if user is not None:
            company_service.resolve_active_membership(auth_db, user)
            repaired["stale_active_company"] += 1

    for item in issues["companies_without_subscription"]:
        company = auth_db.get(Company, item["company_id"])
        if company is not None:
            subs.ensure_subscription(auth_db, company, now=moment)
            repaired["companies_without_subscription"] += 1

    repaired["overdue_trials"] = subs.expire_trials(auth_db, now=moment)

    trial_plan = plan_service.get_trial_plan(auth_db)
    for item in issues["subscriptions_on_inactive_plan"]:
        sub = subs.get_subscription(auth_db, item["company_id"])
        if sub is not None and sub.status in (subs.TRIALING, subs.TRIAL_EXPIRED):
            sub.plan_id = trial_plan.id
            subs.invalidate(sub.company_id)
            repaired["subscriptions_on_inactive_plan"] += 1
    auth_db.commit()

    for item in issues["employees_of_unknown_company"]:
        emp = hr_db.get(Employee, item["employee_id"])
        if emp is not None:
            emp.is_active = False
            repaired["employees_of_unknown_company"] += 1
    hr_db.commit()

    for item in issues["run_totals_out_of_sync"]:
        run = payroll_db.get(PayrollRun, item["run_id"])
        if run is not None:
            payroll_service.refresh_totals(payroll_db, run)
            repaired["run_totals_out_of_sync"] += 1
    payroll_db.commit()

    after = check(auth_db, hr_db, payroll_db, now=moment)
    logger.info("integrity repair finished", extra={"event": "integrity_repair"})
    return {"repaired": repaired, "before": before["counts"], "remaining": after}
