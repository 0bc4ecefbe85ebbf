from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.services import payments
from core.services import plans as plan_service
from core.services import subscriptions as subs
from core.services.audit import audit_request
from core.services.idempotency import compute_body_hash, maybe_idempotent_json
from core.services.payments import PaymentGateway

from ..database import get_auth_db
from ..deps import CurrentUser, company_member, get_payment_gateway, optional_payment_gateway, require_perm
from ..schemas import CheckoutRequest

router = APIRouter(tags=["billing"])

logger = logging.getLogger("salarysync.billing")


@router.get("/plans")
def list_plans(db: Session = Depends(get_auth_db)):
    return {"ok": True, "items": [plan_service.plan_to_dict(p) for p in plan_service.list_active_plans(db)]}


@router.get("/subscription/status")
def subscription_status(cu: CurrentUser = Depends(company_member), db: Session = Depends(get_auth_db)):
    sub = subs.get_subscription(db, cu.company_id)
    access = subs.resolve_access(db, cu.company_id)
    return {
        "ok": True,
        "subscription": subs.subscription_to_dict(sub),
        "access": access.to_dict(),
        "trial": subs.trial_status(sub),
    }


@router.post("/subscription/checkout")
def checkout(
    payload: CheckoutRequest,
    request: Request,
    cu: CurrentUser = Depends(require_perm("billing.manage")),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: Session = Depends(get_auth_db),
):
    def _produce():
        result = payments.start_checkout(db, gateway, company=cu.company, user=cu.user, plan_id=payload.plan_id)
        audit_request(
            db, request, actor=cu.actor, action="checkout_start", company_id=cu.company_id, meta={"plan": result["plan"]}
        )
        return {"ok": True, **result}, 200

    content, status = maybe_idempotent_json(
        db,
        request,
        company_id=cu.company_id,
        user_id=cu.user.id,
        body_hash=compute_body_hash(payload.model_dump()),
        produce=_produce,
    )
    return JSONResponse(content, status_code=status)


@router.post("/subscription/cancel")
def cancel_subscription(
    request: Request,
    cu: CurrentUser = Depends(require_perm("billing.manage")),
    gateway: Optional[PaymentGateway] = Depends(optional_payment_gateway),
    db: Session = Depends(get_auth_db),
):
    sub = subs.cancel(db, cu.company_id, gateway=gateway)
    db.commit()
    audit_request(db, request, actor=cu.actor, action="subscription_cancel", company_id=cu.company_id)
    return {"ok": True, "subscription": subs.subscription_to_dict(sub)}


@router.post("/subscription/reactivate")
def reactivate_subscription(
    request: Request,
    cu: CurrentUser = Depends(require_perm("billing.manage")),
    gateway: Optional[PaymentGateway] = Depends(optional_payment_gateway),
    db: Session = Depends(get_auth_db),
):
    sub = subs.reactivate(db, cu.company_id, gateway=gateway)
    db.commit()
    audit_request(db, request, actor=cu.actor, action="subscription_reactivate", company_id=cu.company_id)
    return {"ok": True, "subscription": subs.subscription_to_dict(sub)}


@router.post("/webhooks/payments")
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None),
    db: Session = Depends(get_auth_db),
    gateway: Optional[PaymentGateway] = Depends(optional_payment_gateway),
):
    body = await request.body()
    event = payments.verify_webhook_signature(body, stripe_signature)
    outcome = payments.handle_event(db, event, gateway=gateway)
    logger.info(
        "processor event %s: %s",
        outcome["type"],
        outcome["result"],
        extra={"event": "processor_event", "company_id": outcome["company_id"]},
    )
    if outcome["result"] not in ("duplicate", "ignored"):
        audit_request(
            db,
            request,
            actor="processor",
            action=f"webhook:{outcome['type']}",
            company_id=outcome["company_id"],
            result=outcome["result"],
            meta={"event_id": outcome["event_id"]},
        )
    return {"ok": True, **outcome}
