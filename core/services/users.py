from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.auth import hash_opaque_token, new_opaque_token
from core.errors import Conflict, PermissionDenied, Unauthorized, ValidationFailed
from core.metrics import count_event
from core.models import User, as_utc, utc_now
from core.settings import get_settings
from core.utils.dutch import ensure_password_policy, is_valid_email, normalize_email

from . import companies as company_service
from . import mail
from .auth import check_password, hash_password

logger = logging.getLogger("salarysync.users")

RESET_TOKEN_TTL = dt.timedelta(hours=1)


def user_to_dict(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name or "",
        "email_verified": user.email_verified_at is not None,
        "active_company_id": user.active_company_id,
    }


def find_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == normalize_email(email)).first()


def register(
    db: Session,
    *,
    email: str,
    password: str,
    name: str,
    company: dict[str, Any],
    now: Optional[dt.datetime] = None,
) -> tuple[User, str]:
    """Create the account, its first company (owner role) and the trial.

    Returns the user and the raw e-mail verification token.
    """
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationFailed("invalid e-mail address", details={"field": "email"})
    ensure_password_policy(password)
    if not (name or "").strip():
        raise ValidationFailed("name is required", details={"field": "name"})
    company_service.clean_company_fields(company)
    if find_by_email(db, email) is not None:
        raise Conflict("an account with this e-mail address already exists", code="email_taken")

    raw, hashed = new_opaque_token()
    user = User(
        email=email,
        name=name.strip(),
        password_hash=hash_password(password),
        verification_token_hash=hashed,
    )
    db.add(user)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        raise Conflict("an account with this e-mail address already exists", code="email_taken")
    company_service.create_company(db, user, company, now=now)
    mail.send_verification(email, raw)
    count_event("user_registered")
    logger.info("user registered", extra={"event": "user_registered", "user_id": user.id})
    return user, raw


def authenticate(db: Session, email: str, password: str) -> User:
    user = find_by_email(db, email)
    if user is None or not check_password(user, password):
        raise Unauthorized("invalid e-mail or password", code="invalid_credentials")
    if not user.is_active:
        raise Unauthorized("account is disabled", code="account_disabled")
    if get_settings().require_email_verification and user.email_verified_at is None:
        raise PermissionDenied("e-mail address not verified", code="email_not_verified")
    user.last_login_at = utc_now()
    db.commit()
    return user


def verify_email(db: Session, token: str) -> User:
    if not token:
        raise ValidationFailed("token is required")
    user = db.query(User).filter(User.verification_token_hash == hash_opaque_token(token)).first()
    if user is None:
        raise ValidationFailed("invalid or used verification token", code="invalid_token")
    user.email_verified_at = utc_now()
    user.verification_token_hash = None
    db.commit()
    return user


def resend_verification(db: Session, email: str) -> Optional[str]:
    """New verification token for an unverified account; None (silently) otherwise."""
    user = find_by_email(db, email)
    if user is None or user.email_verified_at is not None:
        return None
    raw, hashed = new_opaque_token()
    user.verification_token_hash = hashed
    db.commit()
    mail.send_verification(user.email, raw)
    return raw


def request_password_reset(db: Session, email: str, now: Optional[dt.datetime] = None) -> Optional[str]:
    """Issue a reset token. Callers answer identically whether or not the account exists."""
    user = find_by_email(db, email)
    if user is None or not user.is_active:
        return None
    raw, hashed = new_opaque_token()
    user.reset_token_hash = hashed
    user.reset_token_expires_at = (as_utc(now) if now else utc_now()) + RESET_TOKEN_TTL
    db.commit()
    mail.send_password_reset(user.email, raw)
    return raw


def reset_password(db: Session, token: str, new_password: str, now: Optional[dt.datetime] = None) -> User:
    if not token:
        raise ValidationFailed("token is required")
    user = db.query(User).filter(User.reset_token_hash == hash_opaque_token(token)).first()
    moment = as_utc(now) if now else utc_now()
    expires = as_utc(user.reset_token_expires_at) if user else None
    if user is None or expires is None or expires < moment:
        raise ValidationFailed("invalid or expired reset token", code="invalid_token")
    ensure_password_policy(new_password)
    user.password_hash = hash_password(new_password)
    user.reset_token_hash = None
    user.reset_token_expires_at = None
    # Invitation links double as proof of the address
    if user.email_verified_at is None:
        user.email_verified_at = moment
    user.session_version = int(user.session_version or 1) + 1
    db.commit()
    logger.info("password reset", extra={"event": "password_reset", "user_id": user.id})
    return user


def logout_all(db: Session, user: User) -> None:
    user.session_version = int(user.session_version or 1) + 1
    db.commit()


def create_user(db: Session, *, email: str, password: str, name: str = "", verified: bool = True) -> User:
    """Account without a company (CLI and seeding)."""
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationFailed("invalid e-mail address", details={"field": "email"})
    ensure_password_policy(password)
    if find_by_email(db, email) is not None:
        raise Conflict("an account with this e-mail address already exists", code="email_taken")
    user = User(
        email=email,
        name=(name or "").strip(),
        password_hash=hash_password(password),
        email_verified_at=utc_now() if verified else None,
    )
    db.add(user)
    db.commit()
    return user


def set_password(db: Session, user: User, new_password: str) -> User:
    ensure_password_policy(new_password)
    user.password_hash = hash_password(new_password)
    user.session_version = int(user.session_version or 1) + 1
    db.commit()
    return user
