from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from core.errors import Unauthorized
from core.services import companies as company_service
from core.services import permissions as perms
from core.services import subscriptions as subs
from core.services import users as user_service
from core.services.audit import audit_request, client_ip
from core.services.auth import clear_login_attempts, guard_login_attempt, issue_user_token
from core.settings import get_settings

from ..database import get_auth_db
from ..deps import SESSION_COOKIE_NAME, CurrentUser, current_user
from ..schemas import (
    EmailRequest,
    LoginRequest,
    MeResponse,
    PasswordResetConfirm,
    RegisterRequest,
    SessionResponse,
    SimpleOkResponse,
    TokenRequest,
)

router = APIRouter(prefix="/auth", tags=["auth"])


def _session_response(user, status_code: int = 200, **extra) -> JSONResponse:
    settings = get_settings()
    token = issue_user_token(user)
    content = {"ok": True, "token": token, "user": user_service.user_to_dict(user), **extra}
    response = JSONResponse(content, status_code=status_code)
    response.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.cookie_secure,
        max_age=settings.session_ttl_seconds,
    )
    return response


@router.post("/register", response_model=SessionResponse, status_code=201)
def register(payload: RegisterRequest, request: Request, db: Session = Depends(get_auth_db)):
    user, _ = user_service.register(
        db,
        email=payload.email,
        password=payload.password,
        name=payload.name,
        company=payload.company.model_dump(exclude_none=True),
    )
    audit_request(db, request, actor=f"user:{user.id}", action="register", company_id=user.active_company_id)
    return _session_response(user, status_code=201, company_id=user.active_company_id)


@router.post("/login", response_model=SessionResponse)
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_auth_db)):
    key = f"login:{client_ip(request)}:{payload.email.strip().lower()}"
    try:
        user = user_service.authenticate(db, payload.email, payload.password)
    except Unauthorized:
        # Raises RateLimited once the window is exhausted
        guard_login_attempt(key)
        audit_request(db, request, actor="anonymous", action="login", result="denied", meta={"email": payload.email})
        raise
    clear_login_attempts(key)
    audit_request(db, request, actor=f"user:{user.id}", action="login", company_id=user.active_company_id)
    return _session_response(user)


@router.post("/logout", response_model=SimpleOkResponse)
def logout():
    response = JSONResponse({"ok": True})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


@router.post("/logout-all", response_model=SimpleOkResponse)
def logout_all(request: Request, cu: CurrentUser = Depends(current_user), db: Session = Depends(get_auth_db)):
    user_service.logout_all(db, cu.user)
    audit_request(db, request, actor=cu.actor, action="logout_all", company_id=cu.company_id)
    response = JSONResponse({"ok": True})
    response.delete_cookie(SESSION_COOKIE_NAME)
    return response


@router.get("/me", response_model=MeResponse)
def me(cu: CurrentUser = Depends(current_user), db: Session = Depends(get_auth_db)):
    out = {
        "ok": True,
        "user": user_service.user_to_dict(cu.user),
        "memberships": [
            company_service.membership_to_dict(m, active_company_id=cu.company_id)
            for m in company_service.list_memberships(db, cu.user)
        ],
    }
    if cu.membership is not None:
        out["company"] = company_service.company_to_dict(cu.company)
        out["role"] = cu.role
        out["permissions"] = perms.permissions_for(cu.role)
        out["access"] = subs.resolve_access(db, cu.company_id).to_dict()
    return out


@router.post("/verify-email", response_model=SimpleOkResponse)
def verify_email(payload: TokenRequest, request: Request, db: Session = Depends(get_auth_db)):
    user = user_service.verify_email(db, payload.token)
    audit_request(db, request, actor=f"user:{user.id}", action="verify_email")
    return SimpleOkResponse()


@router.post("/resend-verification", response_model=SimpleOkResponse)
def resend_verification(payload: EmailRequest, db: Session = Depends(get_auth_db)):
    # Same answer for unknown, verified and unverified addresses
    user_service.resend_verification(db, payload.email)
    return SimpleOkResponse()


@router.post("/password-reset/request", response_model=SimpleOkResponse)
def password_reset_request(payload: EmailRequest, request: Request, db: Session = Depends(get_auth_db)):
    user_service.request_password_reset(db, payload.email)
    audit_request(db, request, actor="anonymous", action="password_reset_request")
    return SimpleOkResponse()


@router.post("/password-reset/confirm", response_model=SimpleOkResponse)
def password_reset_confirm(payload: PasswordResetConfirm, request: Request, db: Session = Depends(get_auth_db)):
    user = user_service.reset_password(db, payload.token, payload.password)
    audit_request(db, request, actor=f"user:{user.id}", action="password_reset")
    return SimpleOkResponse()
