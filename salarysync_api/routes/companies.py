from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.services import companies as company_service
from core.services import subscriptions as subs
from core.services.audit import audit_request
from core.services.idempotency import compute_body_hash, maybe_idempotent_json

from ..database import get_auth_db
from ..deps import CurrentUser, company_member, current_user, require_perm
from ..schemas import CompanyCreateRequest, CompanyFields, MemberAddRequest, SimpleOkResponse, SwitchCompanyRequest

router = APIRouter(tags=["companies"])


@router.get("/companies")
def list_companies(cu: CurrentUser = Depends(current_user), db: Session = Depends(get_auth_db)):
    items = [
        company_service.membership_to_dict(m, active_company_id=cu.company_id)
        for m in company_service.list_memberships(db, cu.user)
    ]
    return {"ok": True, "items": items, "active_company_id": cu.company_id}


@router.post("/companies", status_code=201)
def create_company(
    payload: CompanyCreateRequest,
    request: Request,
    cu: CurrentUser = Depends(current_user),
    db: Session = Depends(get_auth_db),
):
    data = payload.model_dump(exclude_none=True)
    # A second tenant needs the multi-company feature on the current one
    if cu.membership is not None:
        subs.ensure_feature(subs.resolve_access(db, cu.company_id), "multi_company")

    def _produce():
        company = company_service.create_company(db, cu.user, data)
        audit_request(db, request, actor=cu.actor, action="company_create", company_id=company.id)
        return {"ok": True, "company": company_service.company_to_dict(company)}, 201

    # Creating a tenant belongs to the user, not to whichever company is active
    content, status = maybe_idempotent_json(
        db, request, company_id=None, user_id=cu.user.id, body_hash=compute_body_hash(data), produce=_produce
    )
    return JSONResponse(content, status_code=status)


@router.post("/companies/switch")
def switch_company(
    payload: SwitchCompanyRequest,
    request: Request,
    cu: CurrentUser = Depends(current_user),
    db: Session = Depends(get_auth_db),
):
    membership = company_service.switch_company(db, cu.user, payload.company_id)
    audit_request(db, request, actor=cu.actor, action="company_switch", company_id=payload.company_id)
    return {
        "ok": True,
        "company": company_service.company_to_dict(membership.company),
        "role": membership.role,
    }


@router.get("/company")
def get_company(cu: CurrentUser = Depends(company_member), db: Session = Depends(get_auth_db)):
    sub = subs.get_subscription(db, cu.company_id)
    return {
        "ok": True,
        "company": company_service.company_to_dict(cu.company),
        "role": cu.role,
        "subscription": subs.subscription_to_dict(sub),
    }


@router.patch("/company")
def update_company(
    payload: CompanyFields,
    request: Request,
    cu: CurrentUser = Depends(require_perm("settings.manage")),
    db: Session = Depends(get_auth_db),
):
    data = payload.model_dump(exclude_unset=True)
    company = company_service.update_company(db, cu.company, data)
    audit_request(db, request, actor=cu.actor, action="company_update", company_id=company.id, meta={"fields": sorted(data)})
    return {"ok": True, "company": company_service.company_to_dict(company)}


@router.post("/company/members", status_code=201)
def add_member(
    payload: MemberAddRequest,
    request: Request,
    cu: CurrentUser = Depends(require_perm("users.manage")),
    db: Session = Depends(get_auth_db),
):
    membership, invite_token = company_service.add_member(
        db, cu.company, actor_role=cu.role, email=payload.email, role=payload.role, name=payload.name
    )
    audit_request(
        db,
        request,
        actor=cu.actor,
        action="member_add",
        company_id=cu.company_id,
        meta={"user_id": membership.user_id, "role": membership.role, "invited": invite_token is not None},
    )
    return JSONResponse(
        {
            "ok": True,
            "member": {"user_id": membership.user_id, "email": membership.user.email, "role": membership.role},
            "invited": invite_token is not None,
        },
        status_code=201,
    )


@router.delete("/company/members/{user_id}", response_model=SimpleOkResponse)
def remove_member(
    user_id: int,
    request: Request,
    cu: CurrentUser = Depends(require_perm("users.manage")),
    db: Session = Depends(get_auth_db),
):
    company_service.deactivate_member(db, cu.company, actor=cu.user, actor_role=cu.role, user_id=user_id)
    audit_request(db, request, actor=cu.actor, action="member_remove", company_id=cu.company_id, meta={"user_id": user_id})
    return SimpleOkResponse()
