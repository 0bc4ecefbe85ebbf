from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.orm import Session

from core.errors import NotFound, PermissionDenied
from core.services import employees as employee_service
from core.services import payroll as payroll_service
from core.services import permissions as perms
from core.services import subscriptions as subs
from core.services.audit import audit_request
from core.services.idempotency import compute_body_hash, maybe_idempotent_json

from ..database import get_auth_db, get_hr_db, get_payroll_db
from ..deps import CurrentUser, company_access, company_member, require_perm
from ..schemas import PayrollPreviewRequest, PayrollRunRequest

router = APIRouter(prefix="/payroll", tags=["payroll"])

XLSX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@router.post("/run")
def run_payroll(
    payload: PayrollRunRequest,
    request: Request,
    cu: CurrentUser = Depends(require_perm("payroll.create")),
    access: subs.AccessInfo = Depends(company_access),
    db: Session = Depends(get_auth_db),
    hr_db: Session = Depends(get_hr_db),
    payroll_db: Session = Depends(get_payroll_db),
):
    inputs = {emp_id: item.model_dump(exclude_none=True) for emp_id, item in payload.inputs.items()}

    def _produce():
        result = payroll_service.run_payroll(
            payroll_db,
            hr_db,
            company=cu.company,
            year=payload.year,
            month=payload.month,
            access=access,
            actor_id=cu.user.id,
            employee_ids=payload.employee_ids,
            inputs=inputs,
            method=payload.method,
        )
        audit_request(
            db,
            request,
            actor=cu.actor,
            action="payroll_run",
            company_id=cu.company_id,
            meta={"period": result["run"]["period"], "employees": len(result["records"]), "created": result["created"]},
        )
        return {"ok": True, **result}, 201 if result["created"] else 200

    content, status = maybe_idempotent_json(
        db,
        request,
        company_id=cu.company_id,
        user_id=cu.user.id,
        body_hash=compute_body_hash(payload.model_dump()),
        produce=_produce,
    )
    return JSONResponse(content, status_code=status)


@router.post("/preview")
def preview(
    payload: PayrollPreviewRequest,
    cu: CurrentUser = Depends(require_perm("payroll.create")),
    access: subs.AccessInfo = Depends(company_access),
    hr_db: Session = Depends(get_hr_db),
):
    subs.ensure_feature(access, "payroll")
    emp = employee_service.get_employee(hr_db, cu.company_id, payload.employee_id)
    inputs = payload.model_dump(include={"hours_worked", "overtime_hours", "bonus"}, exclude_none=True)
    result = payroll_service.preview(emp, cu.company, payload.year, payload.month, method=payload.method, **inputs)
    return {"ok": True, "result": result}


@router.get("/records")
def list_records(
    year: Optional[int] = Query(None),
    month: Optional[int] = Query(None, ge=1, le=12),
    employee_id: Optional[int] = Query(None),
    cu: CurrentUser = Depends(company_member),
    hr_db: Session = Depends(get_hr_db),
    payroll_db: Session = Depends(get_payroll_db),
):
    if not perms.has_permission(cu.role, "payroll.view"):
        if not perms.has_permission(cu.role, "payroll.view_own"):
            raise PermissionDenied(f"role '{cu.role}' lacks payroll.view", details={"permission": "payroll.view"})
        own = employee_service.find_for_user(hr_db, cu.company_id, cu.user.id)
        if own is None:
            return {"ok": True, "items": []}
        employee_id = own.id
    rows = payroll_service.list_records(payroll_db, cu.company_id, year=year, month=month, employee_id=employee_id)
    return {"ok": True, "items": [payroll_service.record_to_dict(r) for r in rows]}


@router.get("/ytd/{employee_id}/{year}/{month}")
def year_to_date(
    employee_id: int,
    year: int,
    month: int,
    cu: CurrentUser = Depends(company_member),
    hr_db: Session = Depends(get_hr_db),
    payroll_db: Session = Depends(get_payroll_db),
):
    emp = employee_service.get_employee(hr_db, cu.company_id, employee_id)
    if not perms.has_permission(cu.role, "payroll.view"):
        if not perms.has_permission(cu.role, "payroll.view_own"):
            raise PermissionDenied(f"role '{cu.role}' lacks payroll.view", details={"permission": "payroll.view"})
        if emp.user_id != cu.user.id:
            raise NotFound("employee not found")
    totals = payroll_service.cumulative_totals(payroll_db, cu.company_id, emp.id, year, month)
    return {"ok": True, "employee_number": emp.employee_number, "cumulative": totals}


@router.get("/runs")
def list_runs(
    year: Optional[int] = Query(None),
    cu: CurrentUser = Depends(require_perm("payroll.view")),
    payroll_db: Session = Depends(get_payroll_db),
):
    runs = payroll_service.list_runs(payroll_db, cu.company_id, year=year)
    return {"ok": True, "items": [payroll_service.run_to_dict(r) for r in runs]}


@router.get("/summary/{year}/{month}")
def summary(
    year: int,
    month: int,
    cu: CurrentUser = Depends(require_perm("payroll.view")),
    payroll_db: Session = Depends(get_payroll_db),
):
    return {"ok": True, "summary": payroll_service.period_summary(payroll_db, cu.company_id, year, month)}


@router.post("/runs/{year}/{month}/finalize")
def finalize(
    year: int,
    month: int,
    request: Request,
    cu: CurrentUser = Depends(require_perm("payroll.manage")),
    db: Session = Depends(get_auth_db),
    payroll_db: Session = Depends(get_payroll_db),
):
    run = payroll_service.finalize_run(payroll_db, cu.company_id, year, month, actor_id=cu.user.id)
    audit_request(db, request, actor=cu.actor, action="payroll_finalize", company_id=cu.company_id, meta={"period": run.period})
    return {"ok": True, "run": payroll_service.run_to_dict(run)}


@router.post("/runs/{year}/{month}/reopen")
def reopen(
    year: int,
    month: int,
    request: Request,
    cu: CurrentUser = Depends(require_perm("payroll.manage")),
    db: Session = Depends(get_auth_db),
    payroll_db: Session = Depends(get_payroll_db),
):
    run = payroll_service.reopen_run(payroll_db, cu.company_id, year, month)
    audit_request(db, request, actor=cu.actor, action="payroll_reopen", company_id=cu.company_id, meta={"period": run.period})
    return {"ok": True, "run": payroll_service.run_to_dict(run)}


@router.get("/export/{year}/{month}")
def export(
    year: int,
    month: int,
    request: Request,
    cu: CurrentUser = Depends(require_perm("reports.view")),
    access: subs.AccessInfo = Depends(company_access),
    db: Session = Depends(get_auth_db),
    payroll_db: Session = Depends(get_payroll_db),
):
    subs.ensure_feature(access, "reporting")
    bio = payroll_service.export_period(payroll_db, cu.company, year, month)
    filename = f"loonjournaal_{year:04d}-{month:02d}.xlsx"
    audit_request(
        db, request, actor=cu.actor, action="payroll_export", company_id=cu.company_id, meta={"period": f"{year:04d}-{month:02d}"}
    )
    headers = {
        "Content-Disposition": f"attachment; filename={filename}; filename*=UTF-8''{quote(filename)}",
        "Cache-Control": "no-store",
    }
    return StreamingResponse(bio, media_type=XLSX_MEDIA_TYPE, headers=headers)
