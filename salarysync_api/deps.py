from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterator, Optional

from fastapi import Cookie, Depends, Header
from sqlalchemy.orm import Session

from core.errors import PermissionDenied, Unauthorized
from core.models import Company, User, UserCompany
from core.services import companies as company_service
from core.services import permissions as perms
from core.services import subscriptions as subs
from core.services.auth import authenticate_admin, authenticate_user, extract_token, verify_cron_secret
from core.services.payments import PaymentGateway, get_gateway
from core.settings import get_settings

from .database import get_auth_db

SESSION_COOKIE_NAME = "salarysync_session"
ADMIN_COOKIE_NAME = "salarysync_admin"


@dataclass
class CurrentUser:
    user: User
    membership: Optional[UserCompany]

    @property
    def company_id(self) -> Optional[int]:
        return self.membership.company_id if self.membership else None

    @property
    def company(self) -> Optional[Company]:
        return self.membership.company if self.membership else None

    @property
    def role(self) -> str:
        return self.membership.role if self.membership else ""

    @property
    def actor(self) -> str:
        return f"user:{self.user.id}"


def current_user(
    authorization: Optional[str] = Header(None),
    x_session_token: Optional[str] = Header(None),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
    db: Session = Depends(get_auth_db),
) -> CurrentUser:
    token = extract_token(authorization, x_session_token, session_cookie)
    if not token:
        raise Unauthorized("authentication required")
    user = authenticate_user(db, token)
    if user is None:
        raise Unauthorized("invalid or expired session", code="invalid_session")
    # Active company comes from the database, never from the token
    membership = company_service.resolve_active_membership(db, user)
    return CurrentUser(user=user, membership=membership)


def company_member(cu: CurrentUser = Depends(current_user)) -> CurrentUser:
    if cu.membership is None:
        raise PermissionDenied("no active company", code="no_active_company")
    return cu


def require_perm(permission: str) -> Callable[..., CurrentUser]:
    def _dep(cu: CurrentUser = Depends(company_member)) -> CurrentUser:
        perms.require_permission(cu.role, permission)
        return cu

    return _dep


def company_access(
    cu: CurrentUser = Depends(company_member),
    db: Session = Depends(get_auth_db),
) -> subs.AccessInfo:
    return subs.resolve_access(db, cu.company_id)


def require_admin(
    authorization: Optional[str] = Header(None),
    x_admin_token: Optional[str] = Header(None),
    admin_cookie: Optional[str] = Cookie(None, alias=ADMIN_COOKIE_NAME),
) -> str:
    token = extract_token(authorization, x_admin_token, admin_cookie)
    if not token or not authenticate_admin(token):
        raise PermissionDenied("admin token required", code="admin_required")
    return "admin"


def require_cron(authorization: Optional[str] = Header(None)) -> str:
    if not verify_cron_secret(authorization):
        raise Unauthorized("cron secret required", code="cron_unauthorized")
    return "cron"


def get_payment_gateway() -> Iterator[PaymentGateway]:
    """Per-request gateway, closed with the request. Overridden in tests."""
    with get_gateway() as gateway:
        yield gateway


def optional_payment_gateway() -> Iterator[Optional[PaymentGateway]]:
    """Gateway when the processor is configured, else None (trials never need it)."""
    if not get_settings().payment_api_key:
        yield None
        return
    with get_gateway() as gateway:
        yield gateway
