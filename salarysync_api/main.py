from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from http import HTTPStatus
from typing import Optional

from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from core.cache import get_cache
from core.db import check_connections, init_databases, session_scope
from core.errors import DomainError
from core.logging_utils import get_request_id
from core.services import plans as plan_service
from core.settings import get_settings

from .routes.admin import router as admin_router
from .routes.auth import router as auth_router
from .routes.billing import router as billing_router
from .routes.companies import router as companies_router
from .routes.employees import router as employees_router
from .routes.payroll import router as payroll_router
from .routes.trial import router as trial_router
from .schemas import HealthResponse, SimpleOkResponse

load_dotenv()  # .env for local development

logger = logging.getLogger("salarysync.api")


@asynccontextmanager
async def lifespan(_: FastAPI):
    settings = get_settings()
    init_databases()
    if settings.auto_apply_ddl:
        with session_scope("auth") as db:
            plan_service.get_trial_plan(db)
    else:
        logger.info("SALARYSYNC_AUTO_APPLY_DDL=0: skipping automatic DDL. Ensure Alembic migrations have been applied.")
    cache = get_cache()
    cache.start_sweeper(settings.cache_sweep_interval)
    try:
        yield
    finally:
        cache.stop_sweeper()


router = APIRouter()


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id") or get_request_id() or ""


def _format_error_payload(detail: object, code: Optional[str] = None) -> dict:
    if isinstance(detail, dict):
        message = detail.get("error") or detail.get("detail") or str(detail)
        code = code or detail.get("code")
    else:
        message = str(detail or "")
    payload = {"ok": False, "error": message or "error"}
    if code:
        payload["code"] = str(code)
    return payload


def register_exception_handlers(target) -> None:
    def _wants_problem_json(request: Request) -> bool:
        accept = (request.headers.get("accept") or "").lower()
        return "application/problem+json" in accept

    def _problem_payload(request: Request, status: int, detail: str | dict | None = None, code: Optional[str] = None):
        try:
            title = HTTPStatus(status).phrase
        except ValueError:
            title = "Error"
        if isinstance(detail, dict):
            det = detail.get("detail") or detail.get("error") or detail
        else:
            det = detail or ""
        payload = {
            "type": "about:blank",
            "title": title,
            "status": status,
            "detail": det,
            "instance": str(request.url.path),
            "request_id": _request_id(request),
        }
        if code:
            payload["code"] = code
        return payload

    async def domain_error_handler(request: Request, exc: DomainError):
        status = int(exc.status_code)
        if status >= 500:
            logger.error("%s: %s", exc.code, exc.message, extra={"event": exc.code})
        if _wants_problem_json(request):
            content = _problem_payload(request, status, exc.message, exc.code)
            return JSONResponse(status_code=status, content=content, media_type="application/problem+json")
        payload = _format_error_payload(exc.message, exc.code)
        if exc.details:
            payload["details"] = exc.details
        payload["request_id"] = _request_id(request)
        return JSONResponse(status_code=status, content=payload)

    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if _wants_problem_json(request):
            content = _problem_payload(request, exc.status_code, exc.detail)
            return JSONResponse(status_code=exc.status_code, content=content, media_type="application/problem+json")
        payload = _format_error_payload(exc.detail)
        payload["request_id"] = _request_id(request)
        return JSONResponse(status_code=exc.status_code, content=payload)

    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {"loc": list(err.get("loc", ())), "msg": str(err.get("msg", "")), "type": str(err.get("type", ""))}
            for err in exc.errors()
        ]
        if _wants_problem_json(request):
            content = _problem_payload(request, 422, {"detail": errors}, "validation_error")
            return JSONResponse(status_code=422, content=content, media_type="application/problem+json")
        payload = {
            "ok": False,
            "error": "validation_error",
            "code": "validation_error",
            "details": errors,
            "request_id": _request_id(request),
        }
        return JSONResponse(status_code=422, content=payload)

    async def sa_integrity_error_handler(request: Request, exc: IntegrityError):
        logger.warning("constraint violation on %s", request.url.path, extra={"event": "constraint_violation"})
        if _wants_problem_json(request):
            content = _problem_payload(request, 400, {"detail": "constraint_violation"}, "constraint_violation")
            return JSONResponse(status_code=400, content=content, media_type="application/problem+json")
        payload = {
            "ok": False,
            "error": "constraint_violation",
            "code": "constraint_violation",
            "request_id": _request_id(request),
        }
        return JSONResponse(status_code=400, content=payload)

    target.add_exception_handler(DomainError, domain_error_handler)
    target.add_exception_handler(StarletteHTTPException, http_exception_handler)
    target.add_exception_handler(RequestValidationError, validation_exception_handler)
    target.add_exception_handler(IntegrityError, sa_integrity_error_handler)


@router.get("/healthz", response_model=HealthResponse)
def healthz():
    databases = check_connections()
    if not all(item["connected"] for item in databases.values()):
        raise HTTPException(status_code=503, detail={"error": "database unavailable", "code": "db_unavailable"})
    return {"ok": True, "status": "healthy", "databases": databases}


@router.get("/livez", response_model=SimpleOkResponse)
def livez():
    return SimpleOkResponse()


@router.get("/readyz", response_model=HealthResponse)
def readyz():
    databases = check_connections()
    if not all(item["connected"] for item in databases.values()):
        raise HTTPException(status_code=503, detail={"error": "not ready", "code": "db_unavailable"})
    return {"ok": True}


@router.get("/meta")
def meta():
    settings = get_settings()
    return {"app_version": settings.app_version, "git_sha": settings.git_sha, "build_ts": settings.build_ts}


router.include_router(auth_router)
router.include_router(companies_router)
router.include_router(employees_router)
router.include_router(billing_router)
router.include_router(trial_router)
router.include_router(payroll_router)
router.include_router(admin_router)
