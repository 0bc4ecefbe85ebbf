from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from core.models import as_utc
from core.services import subscriptions as subs
from core.services.audit import audit_request

from ..database import get_auth_db
from ..deps import CurrentUser, company_member, require_cron, require_perm

router = APIRouter(prefix="/trial", tags=["trial"])

logger = logging.getLogger("salarysync.subscriptions")


@router.get("/status")
def trial_status(cu: CurrentUser = Depends(company_member), db: Session = Depends(get_auth_db)):
    sub = subs.get_subscription(db, cu.company_id)
    return {"ok": True, "trial": subs.trial_status(sub), "has_subscription": sub is not None}


@router.post("/start")
def start_trial(
    request: Request,
    cu: CurrentUser = Depends(require_perm("billing.manage")),
    db: Session = Depends(get_auth_db),
):
    sub = subs.start_trial(db, cu.company)
    db.commit()
    audit_request(db, request, actor=cu.actor, action="trial_start", company_id=cu.company_id)
    return {"ok": True, "trial": subs.trial_status(sub)}


@router.post("/cleanup")
def cleanup(request: Request, _: str = Depends(require_cron), db: Session = Depends(get_auth_db)):
    expired = subs.expire_trials(db)
    db.commit()
    logger.info("expired %d trials", expired, extra={"event": "trial_cleanup"})
    audit_request(db, request, actor="cron", action="trial_cleanup", meta={"expired": expired})
    return {"ok": True, "expired": expired}


@router.get("/expiring")
def expiring(
    days: int = Query(3, ge=0, le=30),
    _: str = Depends(require_cron),
    db: Session = Depends(get_auth_db),
):
    items = [
        {"company_id": sub.company_id, "trial_end": as_utc(sub.trial_end).isoformat()}
        for sub in subs.expiring_trials(db, within_days=days)
    ]
    return {"ok": True, "items": items}
