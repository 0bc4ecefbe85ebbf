from __future__ import annotations

import datetime as dt
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import InvalidTransition, PaymentProcessorError, Unauthorized, ValidationFailed
from core.metrics import count_event
from core.models import Company, ProcessorEvent, Subscription, User
from core.settings import get_settings

from . import plans as plan_service
from . import subscriptions as subs

logger = logging.getLogger("salarysync.billing")

# Processor subscription status -> local status (None: ignore the update)
STATUS_MAP: dict[str, Optional[str]] = {
    "active": subs.ACTIVE,
    "trialing": subs.ACTIVE,
    "past_due": subs.PAST_DUE,
    "unpaid": subs.PAST_DUE,
    "canceled": subs.CANCELED,
    "incomplete_expired": subs.CANCELED,
    "incomplete": None,
    "paused": None,
}


def _from_timestamp(value: Any) -> Optional[dt.datetime]:
    if value in (None, ""):
        return None
    try:
        return dt.datetime.fromtimestamp(int(value), tz=dt.timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


class PaymentGateway:
    """Thin client for a Stripe-compatible REST API (form-encoded, basic auth with the secret key)."""

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = "https://api.stripe.com/v1",
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        if not api_key:
            raise PaymentProcessorError("payment processor is not configured", code="processor_not_configured")
        self._client = httpx.Client(
            base_url=base_url.rstrip("/") + "/",
            auth=(api_key, ""),
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> PaymentGateway:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _request(self, method: str, path: str, data: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        try:
            response = self._client.request(method, path.lstrip("/"), data=data)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            message = ""
            try:
                message = exc.response.json().get("error", {}).get("message", "")
            except ValueError:
                pass
            logger.warning("processor rejected %s %s: %s", method, path, exc.response.status_code)
            count_event("processor_call", result="rejected")
            raise PaymentProcessorError(message or "payment processor rejected the request") from exc
        except httpx.RequestError as exc:
            logger.warning("processor unreachable: %s", exc.__class__.__name__)
            count_event("processor_call", result="error")
            raise PaymentProcessorError("payment processor unreachable") from exc
        count_event("processor_call")
        return response.json()

    def create_customer(self, *, email: str, name: str, company_id: int) -> str:
        body = self._request(
            "POST",
            "customers",
            {"email": email, "name": name, "metadata[company_id]": str(company_id)},
        )
        return str(body["id"])

    def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        company_id: int,
        success_url: str,
        cancel_url: str,
    ) -> dict[str, Any]:
        return self._request(
            "POST",
            "checkout/sessions",
            {
                "mode": "subscription",
                "customer": customer_id,
                "line_items[0][price]": price_id,
                "line_items[0][quantity]": "1",
                "success_url": success_url,
                "cancel_url": cancel_url,
                "client_reference_id": str(company_id),
                "metadata[company_id]": str(company_id),
                "subscription_data[metadata][company_id]": str(company_id),
            },
        )

    def set_cancel_at_period_end(self, subscription_id: str, value: bool) -> dict[str, Any]:
        return self._request(
            "POST",
            f"subscriptions/{subscription_id}",
            {"cancel_at_period_end": "true" if value else "false"},
        )

    def retrieve_subscription(self, subscription_id: str) -> dict[str, Any]:
        return self._request("GET", f"subscriptions/{subscription_id}")


def get_gateway(transport: Optional[httpx.BaseTransport] = None) -> PaymentGateway:
    settings = get_settings()
    return PaymentGateway(settings.payment_api_key, base_url=settings.payment_api_base, transport=transport)


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a signature header the way the processor does (used by tests and tooling)."""
    ts = int(timestamp if timestamp is not None else time.time())
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def verify_webhook_signature(
    payload: bytes,
    header: Optional[str],
    secret: Optional[str] = None,
    *,
    tolerance: Optional[int] = None,
    now: Optional[float] = None,
) -> dict[str, Any]:
    """Check ``t=<ts>,v1=<hex>`` against the body and return the decoded event."""
    settings = get_settings()
    secret = secret if secret is not None else settings.payment_webhook_secret
    tolerance = settings.payment_webhook_tolerance if tolerance is None else int(tolerance)
    if not secret:
        raise Unauthorized("webhook secret not configured", code="webhook_not_configured")
    if not header:
        raise Unauthorized("missing signature", code="bad_signature")
    timestamp = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    try:
        ts = int(timestamp or "")
    except ValueError:
        raise Unauthorized("malformed signature header", code="bad_signature")
    expected = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise Unauthorized("signature mismatch", code="bad_signature")
    current = time.time() if now is None else now
    if tolerance and abs(current - ts) > tolerance:
        raise Unauthorized("signature timestamp outside tolerance", code="bad_signature")
    try:
        event = json.loads(payload.decode("utf-8"))
    except ValueError:
        raise ValidationFailed("webhook body is not JSON")
    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise ValidationFailed("webhook body is not an event")
    return event


# ------------------------------
# Checkout
# ------------------------------


def start_checkout(db: Session, gateway: PaymentGateway, *, company: Company, user: User, plan_id: int) -> dict[str, Any]:
    plan = plan_service.get_plan(db, plan_id)
    if plan.is_trial or not plan.processor_price_id:
        raise ValidationFailed("plan cannot be purchased", code="plan_not_purchasable")
    sub, _ = subs.ensure_subscription(db, company)
    if subs.effective_status(sub) == subs.ACTIVE and sub.plan_id == plan.id and not sub.cancel_at_period_end:
        raise InvalidTransition("company already subscribes to this plan", code="already_subscribed")
    if not sub.processor_customer_id:
        sub.processor_customer_id = gateway.create_customer(email=user.email, name=company.name, company_id=company.id)
        db.flush()
    base = get_settings().app_base_url
    session = gateway.create_checkout_session(
        customer_id=sub.processor_customer_id,
        price_id=plan.processor_price_id,
        company_id=company.id,
        success_url=f"{base}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base}/billing/cancel",
    )
    db.commit()
    logger.info("checkout started", extra={"event": "checkout_started", "company_id": company.id})
    return {"checkout_url": session.get("url"), "session_id": session.get("id"), "plan": plan.name}


# ------------------------------
# Webhook events
# ------------------------------


def _company_id_of(obj: dict[str, Any]) -> Optional[int]:
    meta = obj.get("metadata") or {}
    raw = meta.get("company_id") or obj.get("client_reference_id")
    try:
        return int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None


def _find_subscription(db: Session, obj: dict[str, Any], processor_sub_id: Optional[str]) -> Optional[Subscription]:
    if processor_sub_id:
        found = db.query(Subscription).filter(Subscription.processor_subscription_id == processor_sub_id).first()
        if found:
            return found
    company_id = _company_id_of(obj)
    if company_id is not None:
        found = subs.get_subscription(db, company_id)
        if found:
            return found
    customer = obj.get("customer")
    if customer:
        return db.query(Subscription).filter(Subscription.processor_customer_id == str(customer)).first()
    return None


def _price_id(obj: dict[str, Any]) -> Optional[str]:
    items = ((obj.get("items") or {}).get("data")) or []
    for item in items:
        price = item.get("price") or {}
        if price.get("id"):
            return str(price["id"])
    plan = obj.get("plan") or {}
    return str(plan["id"]) if plan.get("id") else None


def _apply_processor_subscription(db: Session, sub: Subscription, obj: dict[str, Any]) -> str:
    target = STATUS_MAP.get(str(obj.get("status") or ""))
    if target is None:
        return "ignored"
    plan = plan_service.find_by_price_id(db, _price_id(obj))
    period_start = _from_timestamp(obj.get("current_period_start"))
    period_end = _from_timestamp(obj.get("current_period_end"))
    if target == subs.ACTIVE:
        subs.activate_paid(
            db,
            sub,
            plan=plan,
            customer_id=obj.get("customer"),
            subscription_id=obj.get("id"),
            period_start=period_start,
            period_end=period_end,
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
        )
    elif target == subs.PAST_DUE:
        subs.mark_past_due(db, sub)
    else:
        subs.mark_canceled(db, sub)
    return "applied"


def _handle_checkout_completed(db: Session, obj: dict[str, Any], gateway: Optional[PaymentGateway]) -> tuple[str, Optional[int]]:
    company_id = _company_id_of(obj)
    sub = _find_subscription(db, obj, obj.get("subscription"))
    if sub is None:
        return "unknown_company", company_id
    processor_sub_id = obj.get("subscription")
    if processor_sub_id and gateway is not None:
        # The session only carries ids; the subscription object has plan and period
        remote = gateway.retrieve_subscription(str(processor_sub_id))
        return _apply_processor_subscription(db, sub, remote), sub.company_id
    subs.activate_paid(db, sub, customer_id=obj.get("customer"), subscription_id=processor_sub_id)
    return "applied", sub.company_id


def _handle_subscription_event(db: Session, obj: dict[str, Any]) -> tuple[str, Optional[int]]:
    sub = _find_subscription(db, obj, obj.get("id"))
    if sub is None:
        return "unknown_company", _company_id_of(obj)
    return _apply_processor_subscription(db, sub, obj), sub.company_id


def _handle_subscription_deleted(db: Session, obj: dict[str, Any]) -> tuple[str, Optional[int]]:
    sub = _find_subscription(db, obj, obj.get("id"))
    if sub is None:
        return "unknown_company", _company_id_of(obj)
    subs.mark_canceled(db, sub)
    return "applied", sub.company_id


def _handle_invoice(db: Session, obj: dict[str, Any], succeeded: bool) -> tuple[str, Optional[int]]:
    sub = _find_subscription(db, obj, obj.get("subscription"))
    if sub is None:
        return "unknown_company", _company_id_of(obj)
    if succeeded:
        lines = ((obj.get("lines") or {}).get("data")) or []
        period = (lines[0].get("period") if lines else None) or {}
        subs.activate_paid(
            db,
            sub,
            customer_id=obj.get("customer"),
            period_start=_from_timestamp(period.get("start")),
            period_end=_from_timestamp(period.get("end")),
        )
    else:
        subs.mark_past_due(db, sub)
    return "applied", sub.company_id


def handle_event(db: Session, event: dict[str, Any], gateway: Optional[PaymentGateway] = None) -> dict[str, Any]:
    """Apply a verified processor event once.

    Returns ``{"event_id", "type", "result", "company_id"}``; a replayed event id
    returns ``result="duplicate"`` without touching any state.
    """
    event_id = str(event.get("id"))
    event_type = str(event.get("type"))
    if db.query(ProcessorEvent).filter(ProcessorEvent.event_id == event_id).first():
        return {"event_id": event_id, "type": event_type, "result": "duplicate", "company_id": None}
    obj = ((event.get("data") or {}).get("object")) or {}
    company_id: Optional[int] = None
    try:
        if event_type == "checkout.session.completed":
            result, company_id = _handle_checkout_completed(db, obj, gateway)
        elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
            result, company_id = _handle_subscription_event(db, obj)
        elif event_type == "customer.subscription.deleted":
            result, company_id = _handle_subscription_deleted(db, obj)
        elif event_type in ("invoice.payment_succeeded", "invoice.paid"):
            result, company_id = _handle_invoice(db, obj, succeeded=True)
        elif event_type == "invoice.payment_failed":
            result, company_id = _handle_invoice(db, obj, succeeded=False)
        elif event_type == "customer.subscription.trial_will_end":
            company_id = _company_id_of(obj)
            logger.info("processor trial ending soon", extra={"event": event_type, "company_id": company_id})
            result = "logged"
        else:
            result = "ignored"
    except InvalidTransition as exc:
        db.rollback()
        logger.warning("processor event rejected: %s", exc.message, extra={"event": event_type})
        result = "rejected"
    db.add(ProcessorEvent(event_id=event_id, event_type=event_type, company_id=company_id, result=result))
    try:
        db.commit()
    except IntegrityError:
        # Concurrent delivery of the same event; the other worker applied it
        db.rollback()
        return {"event_id": event_id, "type": event_type, "result": "duplicate", "company_id": company_id}
    count_event("processor_event", result=result)
    return {"event_id": event_id, "type": event_type, "result": result, "company_id": company_id}
