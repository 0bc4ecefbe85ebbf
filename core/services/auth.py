from __future__ import annotations

import logging
import secrets
from typing import Optional

from sqlalchemy.orm import Session
from werkzeug.security import check_password_hash, generate_password_hash

from core.auth import make_admin_token, make_user_token, verify_admin_token, verify_user_token
from core.errors import RateLimited
from core.models import User
from core.rate_limit import get_rate_limiter
from core.settings import get_settings

logger = logging.getLogger("salarysync.auth")


def extract_token(
    authorization: str | None,
    header_token: str | None,
    cookie_token: str | None = None,
) -> str | None:
    """Normalize token retrieval across cookie, custom header and bearer auth."""

    for candidate in (cookie_token, header_token):
        if candidate:
            token = str(candidate).strip()
            if token:
                return token
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip()
        if token:
            return token
    return None


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def check_password(user: User, password: str) -> bool:
    if not user.password_hash or not password:
        return False
    try:
        return check_password_hash(user.password_hash, password)
    except ValueError:
        return False


def issue_user_token(user: User, *, ttl_seconds: int | None = None) -> str:
    settings = get_settings()
    ttl = ttl_seconds if ttl_seconds is not None else settings.session_ttl_seconds
    return make_user_token(settings.secret_key, user.id, user.session_version or 1, ttl_seconds=ttl)


def authenticate_user(session: Session, token: str) -> User | None:
    payload = verify_user_token(get_settings().secret_key, token)
    if not payload:
        return None
    user = session.get(User, int(payload["uid"]))
    if user is None or not user.is_active:
        return None
    # Password reset / logout-all bump the version and revoke older tokens
    if int(payload.get("sv", 0)) != int(user.session_version or 1):
        return None
    return user


def verify_admin_password(password: str) -> bool:
    """ADMIN_PASSWORD may be a werkzeug hash or a plain value."""
    candidate = (password or "").strip()
    expected = (get_settings().admin_password or "").strip()
    if not expected or not candidate:
        return False
    if expected.startswith(("scrypt:", "pbkdf2:")) and expected.count("$") >= 2:
        return check_password_hash(expected, candidate)
    return secrets.compare_digest(candidate, expected)


def issue_admin_token(*, ttl_seconds: int | None = None) -> str:
    settings = get_settings()
    ttl = ttl_seconds if ttl_seconds is not None else settings.admin_token_ttl_seconds
    return make_admin_token(settings.secret_key, ttl_seconds=ttl)


def authenticate_admin(token: str) -> bool:
    return verify_admin_token(get_settings().secret_key, token) is not None


def verify_cron_secret(authorization: Optional[str]) -> bool:
    expected = get_settings().cron_secret
    if not expected or not authorization or not authorization.lower().startswith("bearer "):
        return False
    return secrets.compare_digest(authorization.split(" ", 1)[1].strip(), expected)


def guard_login_attempt(key: str) -> None:
    """Count a failed login attempt; raise once the window is exhausted."""
    settings = get_settings()
    limiter = get_rate_limiter()
    if limiter.too_many_attempts(key, settings.login_rate_limit_window, settings.login_rate_limit_max):
        logger.warning("login rate limit exceeded", extra={"event": "login_rate_limited"})
        raise RateLimited("too many attempts")


def clear_login_attempts(key: str) -> None:
    get_rate_limiter().reset(key)
