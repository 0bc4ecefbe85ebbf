from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.errors import NotFound, ValidationFailed
from core.services import companies as company_service
from core.services import employees as employee_service
from core.services import permissions as perms
from core.services import subscriptions as subs
from core.services.audit import audit_request
from core.services.idempotency import compute_body_hash, maybe_idempotent_json

from ..database import get_auth_db, get_hr_db
from ..deps import CurrentUser, company_access, company_member, require_perm
from ..schemas import EmployeeCreateRequest, EmployeeUpdateRequest

router = APIRouter(prefix="/employees", tags=["employees"])


def _sees_everyone(cu: CurrentUser) -> bool:
    return perms.has_permission(cu.role, "employees.view")


@router.get("")
def list_employees(
    active: Optional[bool] = Query(None),
    cu: CurrentUser = Depends(company_member),
    hr_db: Session = Depends(get_hr_db),
):
    if _sees_everyone(cu):
        rows = employee_service.list_employees(hr_db, cu.company_id, active=active)
    else:
        own = employee_service.find_for_user(hr_db, cu.company_id, cu.user.id)
        rows = [own] if own is not None and (active is None or own.is_active == active) else []
    return {"ok": True, "items": [employee_service.employee_to_dict(e) for e in rows]}


@router.get("/page")
def page_employees(
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = Query(None),
    active: Optional[bool] = Query(None),
    cu: CurrentUser = Depends(require_perm("employees.view")),
    hr_db: Session = Depends(get_hr_db),
):
    page = employee_service.page_employees(hr_db, cu.company_id, limit=limit, cursor=cursor, active=active)
    return {"ok": True, **page}


@router.post("", status_code=201)
def create_employee(
    payload: EmployeeCreateRequest,
    request: Request,
    cu: CurrentUser = Depends(require_perm("employees.create")),
    access: subs.AccessInfo = Depends(company_access),
    db: Session = Depends(get_auth_db),
    hr_db: Session = Depends(get_hr_db),
):
    data = payload.model_dump(exclude_none=True)

    def _produce():
        emp = employee_service.create_employee(hr_db, cu.company_id, data, access=access)
        audit_request(
            db, request, actor=cu.actor, action="employee_create", company_id=cu.company_id, meta={"employee_id": emp.id}
        )
        return {"ok": True, "employee": employee_service.employee_to_dict(emp)}, 201

    content, status = maybe_idempotent_json(
        db, request, company_id=cu.company_id, user_id=cu.user.id, body_hash=compute_body_hash(data), produce=_produce
    )
    return JSONResponse(content, status_code=status)


@router.get("/{employee_id}")
def get_employee(
    employee_id: int,
    cu: CurrentUser = Depends(company_member),
    hr_db: Session = Depends(get_hr_db),
):
    emp = employee_service.get_employee(hr_db, cu.company_id, employee_id)
    if not perms.can_view_employee(cu.role, own_user_id=cu.user.id, employee_user_id=emp.user_id):
        # Same answer as a missing record
        raise NotFound("employee not found")
    return {"ok": True, "employee": employee_service.employee_to_dict(emp)}


@router.patch("/{employee_id}")
def update_employee(
    employee_id: int,
    payload: EmployeeUpdateRequest,
    request: Request,
    cu: CurrentUser = Depends(require_perm("employees.manage")),
    db: Session = Depends(get_auth_db),
    hr_db: Session = Depends(get_hr_db),
):
    emp = employee_service.get_employee(hr_db, cu.company_id, employee_id)
    data = payload.model_dump(exclude_unset=True)
    link_requested = "user_id" in data
    user_id = data.pop("user_id", None)
    if data:
        employee_service.update_employee(hr_db, emp, data)
    if link_requested:
        if user_id is not None and company_service.get_membership(db, user_id, cu.company_id) is None:
            raise ValidationFailed("user is not a member of this company", details={"field": "user_id"})
        employee_service.link_user(hr_db, emp, user_id)
    audit_request(
        db,
        request,
        actor=cu.actor,
        action="employee_update",
        company_id=cu.company_id,
        meta={"employee_id": emp.id, "fields": sorted(payload.model_dump(exclude_unset=True))},
    )
    return {"ok": True, "employee": employee_service.employee_to_dict(emp)}


@router.post("/{employee_id}/toggle-status")
def toggle_status(
    employee_id: int,
    request: Request,
    cu: CurrentUser = Depends(require_perm("employees.manage")),
    access: subs.AccessInfo = Depends(company_access),
    db: Session = Depends(get_auth_db),
    hr_db: Session = Depends(get_hr_db),
):
    emp = employee_service.get_employee(hr_db, cu.company_id, employee_id)
    employee_service.toggle_status(hr_db, emp, access=access)
    audit_request(
        db,
        request,
        actor=cu.actor,
        action="employee_activate" if emp.is_active else "employee_deactivate",
        company_id=cu.company_id,
        meta={"employee_id": emp.id},
    )
    return {"ok": True, "employee": employee_service.employee_to_dict(emp)}
