from __future__ import annotations

import logging
from decimal import Decimal
from io import BytesIO
from typing import Any, Iterable, Optional

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from core.errors import Conflict, NotFound, ValidationFailed
from core.exporter import build_loonjournaal_workbook
from core.metrics import count_event
from core.models import Company, Employee, PayrollRecord, PayrollRun, utc_now
from core.utils.dates import month_bounds

from . import calculation
from . import subscriptions as subs

logger = logging.getLogger("salarysync.payroll")

DRAFT = "draft"
FINALIZED = "finalized"

_SUM_FIELDS = (
    "gross_salary",
    "total_employee_contributions",
    "total_employer_contributions",
    "holiday_allowance",
    "gross_after_contributions",
)

_CUMULATIVE_FIELDS = (
    "hours_worked",
    "overtime_hours",
    "base_pay",
    "overtime_pay",
    "bonus",
    *_SUM_FIELDS,
)


def _check_period(year: int, month: int) -> tuple[int, int]:
    year, month = int(year), int(month)
    if not 2000 <= year <= 2100:
        raise ValidationFailed("year out of range", details={"field": "year"})
    if not 1 <= month <= 12:
        raise ValidationFailed("month must be 1..12", details={"field": "month"})
    return year, month


def get_run(db: Session, company_id: int, year: int, month: int) -> Optional[PayrollRun]:
    return (
        db.query(PayrollRun)
        .filter(PayrollRun.company_id == company_id, PayrollRun.year == year, PayrollRun.month == month)
        .first()
    )


def require_run(db: Session, company_id: int, year: int, month: int) -> PayrollRun:
    run = get_run(db, company_id, year, month)
    if run is None:
        raise NotFound("no payroll run for this period", code="run_not_found")
    return run


def runs_in_year(db: Session, company_id: int, year: int) -> int:
    return db.query(PayrollRun).filter(PayrollRun.company_id == company_id, PayrollRun.year == year).count()


def employees_for_period(
    hr_db: Session, company_id: int, year: int, month: int, employee_ids: Optional[Iterable[int]] = None
) -> list[Employee]:
    """Employees whose employment overlaps the month.

    Deactivated employees are included when they left within the period, so the
    final partial month is still paid.
    """
    first, last = month_bounds(year, month)
    q = hr_db.query(Employee).filter(
        Employee.company_id == company_id,
        Employee.start_date <= last,
        or_(Employee.end_date.is_(None), Employee.end_date >= first),
        or_(Employee.is_active.is_(True), Employee.end_date.isnot(None)),
    )
    if employee_ids is not None:
        wanted = {int(i) for i in employee_ids}
        rows = q.filter(Employee.id.in_(wanted)).order_by(Employee.employee_number).all()
        missing = wanted - {e.id for e in rows}
        if missing:
            raise NotFound(
                "employees not found or not employed in this period",
                code="employee_not_found",
                details={"employee_ids": sorted(missing)},
            )
        return rows
    return q.order_by(Employee.employee_number).all()


def refresh_totals(db: Session, run: PayrollRun) -> None:
    db.flush()
    row = (
        db.query(
            func.count(PayrollRecord.id),
            func.coalesce(func.sum(PayrollRecord.gross_salary), 0),
            func.coalesce(func.sum(PayrollRecord.total_employee_contributions), 0),
            func.coalesce(func.sum(PayrollRecord.total_employer_contributions), 0),
            func.coalesce(func.sum(PayrollRecord.holiday_allowance), 0),
        )
        .filter(PayrollRecord.run_id == run.id)
        .one()
    )
    count, gross, employee_part, employer_part, holiday = row
    run.employee_count = int(count or 0)
    run.total_gross = calculation.money(Decimal(str(gross)))
    run.total_employee_contributions = calculation.money(Decimal(str(employee_part)))
    run.total_employer_contributions = calculation.money(Decimal(str(employer_part)))
    run.total_holiday_allowance = calculation.money(Decimal(str(holiday)))


def _apply_result(record: PayrollRecord, emp: Employee, result: calculation.PayrollResult) -> None:
    record.employee_number = emp.employee_number
    record.employee_name = emp.full_name
    record.period = result.period
    for field in (
        "salary_type",
        "hours_worked",
        "overtime_hours",
        "pro_rata_factor",
        "base_pay",
        "overtime_pay",
        "bonus",
        "gross_salary",
        "aow_contribution",
        "wlz_contribution",
        "ww_contribution",
        "wia_contribution",
        "total_employee_contributions",
        "employer_aow",
        "employer_wlz",
        "employer_ww",
        "employer_wia",
        "employer_awf",
        "employer_aof",
        "employer_zvw",
        "total_employer_contributions",
        "holiday_allowance",
        "gross_after_contributions",
        "minimum_wage_monthly",
        "below_minimum_wage",
    ):
        setattr(record, field, getattr(result, field))
    record.status = "processed"


def run_payroll(
    db: Session,
    hr_db: Session,
    *,
    company: Company,
    year: int,
    month: int,
    access: subs.AccessInfo,
    actor_id: Optional[int] = None,
    employee_ids: Optional[Iterable[int]] = None,
    inputs: Optional[dict[int, dict[str, Any]]] = None,
    method: str = "calendar",
) -> dict[str, Any]:
    """Calculate and store one record per employee for the period.

    A period already run is recalculated in place (records upserted by employee);
    only a new period counts against the plan's yearly run limit.
    """
    year, month = _check_period(year, month)
    subs.ensure_feature(access, "payroll")
    run = get_run(db, company.id, year, month)
    if run is not None and run.status == FINALIZED:
        raise Conflict("payroll period is finalized", code="period_finalized")
    if run is None:
        subs.ensure_payroll_capacity(access, runs_in_year(db, company.id, year))

    employees = employees_for_period(hr_db, company.id, year, month, employee_ids)
    if not employees:
        raise ValidationFailed("no employees employed in this period", code="no_employees")

    inputs = {int(k): v or {} for k, v in (inputs or {}).items()}
    results: list[tuple[Employee, calculation.PayrollResult]] = []
    for emp in employees:
        extra = inputs.get(emp.id, {})
        results.append(
            (
                emp,
                calculation.calculate_period(
                    emp,
                    year,
                    month,
                    hours_worked=extra.get("hours_worked"),
                    overtime_hours=extra.get("overtime_hours"),
                    bonus=extra.get("bonus"),
                    awf_rate_class=company.awf_rate_class or "low",
                    aof_rate_class=company.aof_rate_class or "low",
                    method=method,
                ),
            )
        )

    if run is None:
        run = PayrollRun(company_id=company.id, year=year, month=month, status=DRAFT, created_by=actor_id)
        db.add(run)
        db.flush()
        created = True
    else:
        created = False

    existing = {
        r.employee_id: r
        for r in db.query(PayrollRecord).filter(
            PayrollRecord.company_id == company.id,
            PayrollRecord.year == year,
            PayrollRecord.month == month,
            PayrollRecord.employee_id.in_([emp.id for emp, _ in results]),
        )
    }
    records: list[PayrollRecord] = []
    for emp, result in results:
        record = existing.get(emp.id)
        if record is None:
            record = PayrollRecord(run_id=run.id, company_id=company.id, employee_id=emp.id, year=year, month=month)
            db.add(record)
        _apply_result(record, emp, result)
        records.append(record)
    refresh_totals(db, run)
    db.commit()

    warnings = [
        {"employee_id": r.employee_id, "code": "below_minimum_wage", "minimum_wage_monthly": str(r.minimum_wage_monthly)}
        for r in records
        if r.below_minimum_wage
    ]
    count_event("payroll_run", result="created" if created else "recalculated")
    logger.info(
        "payroll run %s %s (%d employees)",
        run.period,
        "created" if created else "recalculated",
        len(records),
        extra={"event": "payroll_run", "company_id": company.id},
    )
    return {
        "run": run_to_dict(run),
        "records": [record_to_dict(r) for r in records],
        "warnings": warnings,
        "created": created,
    }


def preview(employee: Employee, company: Company, year: int, month: int, **inputs: Any) -> dict[str, Any]:
    """Calculation without storing anything."""
    year, month = _check_period(year, month)
    result = calculation.calculate_period(
        employee,
        year,
        month,
        awf_rate_class=company.awf_rate_class or "low",
        aof_rate_class=company.aof_rate_class or "low",
        **inputs,
    )
    return result.to_dict()


def finalize_run(db: Session, company_id: int, year: int, month: int, *, actor_id: Optional[int] = None) -> PayrollRun:
    run = require_run(db, company_id, *_check_period(year, month))
    if run.status == FINALIZED:
        raise Conflict("payroll period is already finalized", code="period_finalized")
    run.status = FINALIZED
    run.finalized_by = actor_id
    run.finalized_at = utc_now()
    for record in run.records:
        record.status = FINALIZED
    db.commit()
    logger.info("payroll run finalized", extra={"event": "payroll_finalized", "company_id": company_id})
    return run


def reopen_run(db: Session, company_id: int, year: int, month: int) -> PayrollRun:
    run = require_run(db, company_id, *_check_period(year, month))
    if run.status != FINALIZED:
        raise Conflict("payroll period is not finalized", code="period_not_finalized")
    run.status = DRAFT
    run.finalized_by = None
    run.finalized_at = None
    for record in run.records:
        record.status = "processed"
    db.commit()
    return run


def list_records(
    db: Session,
    company_id: int,
    *,
    year: Optional[int] = None,
    month: Optional[int] = None,
    employee_id: Optional[int] = None,
) -> list[PayrollRecord]:
    q = db.query(PayrollRecord).filter(PayrollRecord.company_id == company_id)
    if year is not None:
        q = q.filter(PayrollRecord.year == int(year))
    if month is not None:
        q = q.filter(PayrollRecord.month == int(month))
    if employee_id is not None:
        q = q.filter(PayrollRecord.employee_id == int(employee_id))
    return q.order_by(PayrollRecord.year.desc(), PayrollRecord.month.desc(), PayrollRecord.employee_number).all()


def list_runs(db: Session, company_id: int, *, year: Optional[int] = None) -> list[PayrollRun]:
    q = db.query(PayrollRun).filter(PayrollRun.company_id == company_id)
    if year is not None:
        q = q.filter(PayrollRun.year == int(year))
    return q.order_by(PayrollRun.year.desc(), PayrollRun.month.desc()).all()


def period_summary(db: Session, company_id: int, year: int, month: int) -> dict[str, Any]:
    year, month = _check_period(year, month)
    columns = [func.coalesce(func.sum(getattr(PayrollRecord, f)), 0) for f in _SUM_FIELDS]
    row = (
        db.query(func.count(PayrollRecord.id), *columns)
        .filter(PayrollRecord.company_id == company_id, PayrollRecord.year == year, PayrollRecord.month == month)
        .one()
    )
    run = get_run(db, company_id, year, month)
    summary: dict[str, Any] = {
        "period": f"{year:04d}-{month:02d}",
        "status": run.status if run else None,
        "employee_count": int(row[0] or 0),
    }
    for field, value in zip(_SUM_FIELDS, row[1:]):
        summary[field] = str(calculation.money(Decimal(str(value))))
    return summary


def cumulative_totals(db: Session, company_id: int, employee_id: int, year: int, month: int) -> dict[str, Any]:
    """Year-to-date sums for one employee, January through ``month`` inclusive.

    Months without a record simply contribute nothing; a year without any record
    yields zeros.
    """
    year, month = _check_period(year, month)
    columns = [func.coalesce(func.sum(getattr(PayrollRecord, f)), 0) for f in _CUMULATIVE_FIELDS]
    row = (
        db.query(func.count(PayrollRecord.id), *columns)
        .filter(
            PayrollRecord.company_id == company_id,
            PayrollRecord.employee_id == int(employee_id),
            PayrollRecord.year == year,
            PayrollRecord.month <= month,
        )
        .one()
    )
    totals: dict[str, Any] = {
        "employee_id": int(employee_id),
        "year": year,
        "through_month": month,
        "months": int(row[0] or 0),
    }
    for field, value in zip(_CUMULATIVE_FIELDS, row[1:]):
        totals[field] = str(calculation.money(Decimal(str(value))))
    return totals


def export_period(db: Session, company: Company, year: int, month: int) -> BytesIO:
    year, month = _check_period(year, month)
    run = require_run(db, company.id, year, month)
    records = list_records(db, company.id, year=year, month=month)
    return build_loonjournaal_workbook(
        company_name=company.name, year=year, month=month, records=records, status=run.status
    )


def _dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def run_to_dict(run: PayrollRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "period": run.period,
        "year": run.year,
        "month": run.month,
        "status": run.status,
        "employee_count": run.employee_count,
        "total_gross": _dec(run.total_gross),
        "total_employee_contributions": _dec(run.total_employee_contributions),
        "total_employer_contributions": _dec(run.total_employer_contributions),
        "total_holiday_allowance": _dec(run.total_holiday_allowance),
        "finalized_at": run.finalized_at.isoformat() if run.finalized_at else None,
    }


def record_to_dict(record: PayrollRecord) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": record.id,
        "employee_id": record.employee_id,
        "employee_number": record.employee_number,
        "employee_name": record.employee_name,
        "period": record.period,
        "year": record.year,
        "month": record.month,
        "salary_type": record.salary_type,
        "status": record.status,
        "below_minimum_wage": bool(record.below_minimum_wage),
    }
    for field in (
        "hours_worked",
        "overtime_hours",
        "pro_rata_factor",
        "base_pay",
        "overtime_pay",
        "bonus",
        "gross_salary",
        "aow_contribution",
        "wlz_contribution",
        "ww_contribution",
        "wia_contribution",
        "total_employee_contributions",
        "employer_aow",
        "employer_wlz",
        "employer_ww",
        "employer_wia",
        "employer_awf",
        "employer_aof",
        "employer_zvw",
        "total_employer_contributions",
        "holiday_allowance",
        "gross_after_contributions",
        "minimum_wage_monthly",
    ):
        out[field] = _dec(getattr(record, field))
    return out
