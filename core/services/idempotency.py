from __future__ import annotations

import datetime as dt
import hashlib
import json
from typing import Callable, Optional, Tuple

from fastapi import Request
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import Conflict
from core.models import IdempotencyRecord, utc_now


def compute_body_hash(obj) -> str:
    """Stable SHA256 hex hash of a payload-like object (canonical JSON for dicts/lists)."""
    if obj is None:
        data = b"null"
    elif isinstance(obj, (bytes, bytearray)):
        data = bytes(obj)
    elif isinstance(obj, str):
        data = obj.encode("utf-8")
    else:
        data = json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def _find(db: Session, key: str, method: str, path: str, company_id: int, user_id: int) -> Optional[IdempotencyRecord]:
    return (
        db.query(IdempotencyRecord)
        .filter(
            IdempotencyRecord.company_id == company_id,
            IdempotencyRecord.user_id == user_id,
            IdempotencyRecord.key == key,
            IdempotencyRecord.method == method,
            IdempotencyRecord.path == path,
        )
        .first()
    )


def _replay(record: IdempotencyRecord) -> Tuple[dict, int]:
    try:
        content = json.loads(record.response_json or "{}")
    except ValueError:
        content = {"ok": True}
    return content, int(record.status_code or 200)


def maybe_idempotent_json(
    db: Session,
    request: Request,
    *,
    company_id: Optional[int],
    user_id: Optional[int],
    body_hash: str,
    produce: Callable[[], Tuple[dict, int]],
) -> Tuple[dict, int]:
    """At-most-once execution for requests carrying an Idempotency-Key header.

    - First request: run the producer, store its response, return it.
    - Replay with the same key and a different body: Conflict (409).
    - Replay with the same key and the same body: the stored response.

    Keys are scoped to the (company, user) pair; 0 stands in for "none".

    ``db`` must be an auth-database session (where the records live).
    """
    key = request.headers.get("Idempotency-Key") or request.headers.get("IdempotencyKey")
    if not key:
        return produce()
    method = (request.method or "").upper()
    path = request.url.path
    company_scope = int(company_id or 0)
    user_scope = int(user_id or 0)

    existing = _find(db, key, method, path, company_scope, user_scope)
    if existing:
        if existing.body_hash != body_hash:
            raise Conflict("idempotency key conflict", code="idempotency_conflict")
        return _replay(existing)

    content, status = produce()
    db.add(
        IdempotencyRecord(
            key=key,
            method=method,
            path=path,
            body_hash=body_hash,
            company_id=company_scope,
            user_id=user_scope,
            status_code=int(status or 200),
            response_json=json.dumps(content, ensure_ascii=False, default=str),
        )
    )
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        again = _find(db, key, method, path, company_scope, user_scope)
        if again and again.body_hash == body_hash:
            return _replay(again)
        raise Conflict("idempotency key conflict", code="idempotency_conflict")
    return content, status


def prune_idempotency_records(db: Session, *, older_than_days: int = 7, now: Optional[dt.datetime] = None) -> int:
    cutoff = (now or utc_now()) - dt.timedelta(days=int(older_than_days))
    n = (
        db.query(IdempotencyRecord)
        .filter(IdempotencyRecord.created_at < cutoff)
        .delete(synchronize_session=False)
    )
    db.commit()
    return int(n or 0)
