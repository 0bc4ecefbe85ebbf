from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.orm import Session

from core.cache import get_cache
from core.db import database_statistics
from core.errors import Unauthorized, ValidationFailed
from core.models import AuditEvent, Subscription
from core.services import integrity
from core.services import plans as plan_service
from core.services import subscriptions as subs
from core.services.audit import audit_request, client_ip
from core.services.auth import clear_login_attempts, guard_login_attempt, issue_admin_token, verify_admin_password
from core.settings import get_settings
from core.utils.cursor import decode_cursor, encode_cursor, split_page

from ..database import get_auth_db, get_hr_db, get_payroll_db
from ..deps import ADMIN_COOKIE_NAME, require_admin
from ..schemas import AdminLoginRequest, TrialExtendRequest

router = APIRouter(prefix="/admin", tags=["admin"])


@router.post("/login")
def admin_login(payload: AdminLoginRequest, request: Request, db: Session = Depends(get_auth_db)):
    key = f"admin:{client_ip(request)}"
    if not verify_admin_password(payload.password):
        guard_login_attempt(key)
        audit_request(db, request, actor="anonymous", action="admin_login", result="denied")
        raise Unauthorized("invalid password", code="invalid_credentials")
    clear_login_attempts(key)
    settings = get_settings()
    ttl = settings.admin_token_ttl_seconds
    tok = issue_admin_token(ttl_seconds=ttl)
    audit_request(db, request, actor="admin", action="admin_login")
    response = JSONResponse({"ok": True, "token": tok, "ttl": ttl})
    response.set_cookie(
        key=ADMIN_COOKIE_NAME,
        value=tok,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        max_age=ttl,
    )
    return response


@router.post("/plans/seed")
def seed_plans(request: Request, _: str = Depends(require_admin), db: Session = Depends(get_auth_db)):
    results = plan_service.seed_plans(db)
    audit_request(db, request, actor="admin", action="plans_seed", meta={"results": results})
    return {"ok": True, "results": results}


@router.post("/trials/{company_id}/extend")
def extend_trial(
    company_id: int,
    payload: TrialExtendRequest,
    request: Request,
    _: str = Depends(require_admin),
    db: Session = Depends(get_auth_db),
):
    sub = subs.extend_trial(db, company_id, days=payload.days)
    db.commit()
    audit_request(db, request, actor="admin", action="trial_extend", company_id=company_id, meta={"days": payload.days})
    return {"ok": True, "trial": subs.trial_status(sub)}


@router.get("/integrity")
def integrity_check(
    _: str = Depends(require_admin),
    db: Session = Depends(get_auth_db),
    hr_db: Session = Depends(get_hr_db),
    payroll_db: Session = Depends(get_payroll_db),
):
    return integrity.check(db, hr_db, payroll_db)


@router.post("/integrity/repair")
def integrity_repair(
    request: Request,
    _: str = Depends(require_admin),
    db: Session = Depends(get_auth_db),
    hr_db: Session = Depends(get_hr_db),
    payroll_db: Session = Depends(get_payroll_db),
):
    outcome = integrity.repair(db, hr_db, payroll_db)
    audit_request(db, request, actor="admin", action="integrity_repair", meta={"repaired": outcome["repaired"]})
    return {"ok": True, **outcome}


@router.get("/stats")
def stats(_: str = Depends(require_admin), db: Session = Depends(get_auth_db)):
    by_status = {status: 0 for status in subs.STATUSES}
    for status, count in db.query(Subscription.status, func.count(Subscription.id)).group_by(Subscription.status):
        by_status[status] = int(count)
    return {
        "ok": True,
        "databases": database_statistics(),
        "subscriptions": by_status,
        "cache": get_cache().stats(),
    }


@router.get("/audit")
def audit_list(
    limit: int = Query(50, ge=1, le=200),
    cursor: Optional[str] = Query(None),
    company_id: Optional[int] = Query(None),
    actor: Optional[str] = Query(None),
    action: Optional[str] = Query(None),
    _: str = Depends(require_admin),
    db: Session = Depends(get_auth_db),
):
    q = db.query(AuditEvent)
    if company_id is not None:
        q = q.filter(AuditEvent.company_id == company_id)
    if actor:
        q = q.filter(AuditEvent.actor == actor)
    if action:
        q = q.filter(AuditEvent.action == action)
    if cursor:
        try:
            before = int(decode_cursor(cursor)["id"])
        except (ValueError, KeyError, TypeError):
            raise ValidationFailed("invalid cursor", details={"field": "cursor"})
        q = q.filter(AuditEvent.id < before)
    rows, has_more = split_page(q.order_by(AuditEvent.id.desc()).limit(limit + 1).all(), limit)
    items = []
    for r in rows:
        try:
            meta = json.loads(r.meta_json or "{}")
        except ValueError:
            meta = {}
        items.append(
            {
                "id": r.id,
                "ts": r.ts.isoformat() if r.ts else "",
                "actor": r.actor,
                "company_id": r.company_id,
                "action": r.action,
                "resource": r.resource or "",
                "ip": r.ip or "",
                "result": r.result or "",
                "meta": meta if isinstance(meta, dict) else {},
            }
        )
    next_cursor = encode_cursor({"id": rows[-1].id}) if has_more and rows else None
    return {"ok": True, "items": items, "next_cursor": next_cursor, "has_more": has_more}
