from __future__ import annotations

import json
import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from core.models import AuditEvent

logger = logging.getLogger("salarysync.audit")


def record_event(
    db: Session,
    *,
    actor: str,
    action: str,
    resource: str = "",
    company_id: Optional[int] = None,
    ip: str = "",
    ua: str = "",
    result: str = "ok",
    meta: Optional[dict[str, Any]] = None,
) -> None:
    """Persist an audit event with best-effort durability.

    Written through an independent short-lived auth-database session and committed
    immediately, so the trail survives when the caller's transaction rolls back.
    Falls back to the caller's session, then to the application log.
    """
    payload = {
        "actor": str(actor or "unknown")[:120],
        "action": str(action or "event")[:80],
        "resource": str(resource or "")[:255],
        "company_id": company_id,
        "ip": str(ip or "")[:64],
        "ua": str(ua or "")[:255],
        "result": str(result or "ok")[:40],
        "meta_json": json.dumps(meta or {}, ensure_ascii=False, default=str),
    }
    try:
        try:
            from core.db import get_sessionmaker  # lazy import to avoid cycles

            s = get_sessionmaker("auth")()
            try:
                s.add(AuditEvent(**payload))
                s.commit()
            except Exception:
                s.rollback()
                raise
            finally:
                s.close()
        except Exception:
            db.add(AuditEvent(**payload))
            db.flush()
    except Exception:
        logger.warning(
            "audit_fallback",
            extra={
                "event": payload["action"],
                "company_id": payload["company_id"],
                "actor": payload["actor"],
                "resource": payload["resource"],
                "result": payload["result"],
            },
        )


def client_ip(request) -> str:
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    host = getattr(getattr(request, "client", None), "host", None)
    return forwarded or host or "unknown"


def audit_request(db: Session, request, *, actor: str, action: str, company_id: Optional[int] = None, result: str = "ok", meta: Optional[dict[str, Any]] = None) -> None:
    """record_event with ip/ua/path taken from a Starlette request."""
    record_event(
        db,
        actor=actor,
        action=action,
        resource=str(request.url.path),
        company_id=company_id,
        ip=client_ip(request),
        ua=request.headers.get("user-agent", ""),
        result=result,
        meta=meta,
    )
