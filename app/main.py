from __future__ import annotations

import os
import time
import uuid
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse, PlainTextResponse

from core.logging_utils import maybe_enable_json_logging, set_request_id
from core.metrics import export_prometheus, observe_request
from core.observability import init_sentry
from core.settings import get_settings
from salarysync_api.deps import ADMIN_COOKIE_NAME, SESSION_COOKIE_NAME
from salarysync_api.main import lifespan as api_lifespan, router as api_router
from salarysync_api.main import register_exception_handlers as register_api_exception_handlers


def _resolve_cors_origins() -> list[str]:
    origins_env = (os.environ.get("API_CORS_ORIGINS") or "").strip()
    if origins_env:
        return [o.strip() for o in origins_env.split(",") if o.strip()]
    return [
        get_settings().app_base_url,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8000",
        "http://127.0.0.1:8000",
    ]


def _origin_mismatch(request: Request) -> bool:
    """Cookie-authenticated writes must come from our own origin (when the browser says)."""
    expected_scheme = request.url.scheme
    expected_netloc = request.url.netloc
    origin = (request.headers.get("origin") or "").strip()
    if origin:
        parsed = urlparse(origin)
        return (parsed.scheme, parsed.netloc) != (expected_scheme, expected_netloc)
    referer = (request.headers.get("referer") or "").strip()
    if referer:
        parsed = urlparse(referer)
        return (parsed.scheme, parsed.netloc) != (expected_scheme, expected_netloc)
    return False


def create_app() -> FastAPI:
    # Optional observability wiring (no-op if not configured)
    maybe_enable_json_logging()
    init_sentry()
    settings = get_settings()
    application = FastAPI(title="SalarySync", version=settings.app_version, lifespan=api_lifespan)

    application.add_middleware(
        CORSMiddleware,
        allow_origins=_resolve_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(api_router, prefix="/api")
    register_api_exception_handlers(application)
    # Versioned namespace next to the unversioned /api paths
    application.include_router(api_router, prefix="/api/v1")

    @application.middleware("http")
    async def csrf_origin_guard(request: Request, call_next):
        unsafe = request.method.upper() in {"POST", "PUT", "PATCH", "DELETE"}
        has_cookie = bool(request.cookies.get(SESSION_COOKIE_NAME) or request.cookies.get(ADMIN_COOKIE_NAME))
        if unsafe and has_cookie and request.url.path.startswith("/api") and _origin_mismatch(request):
            return JSONResponse(
                {"ok": False, "error": "invalid origin", "code": "invalid_origin"},
                status_code=403,
            )
        return await call_next(request)

    @application.middleware("http")
    async def security_headers(request: Request, call_next):
        resp = await call_next(request)
        resp.headers["X-Frame-Options"] = "DENY"
        resp.headers["X-Content-Type-Options"] = "nosniff"
        resp.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        resp.headers["Cross-Origin-Resource-Policy"] = "same-site"
        resp.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
        resp.headers.setdefault(
            "Permissions-Policy",
            "geolocation=(), microphone=(), camera=(), usb=(), payment=()",
        )
        if "Content-Security-Policy" not in resp.headers:
            resp.headers["Content-Security-Policy"] = "default-src 'self'; frame-ancestors 'none'"
        # HSTS only when the request is over HTTPS (direct or via proxy header)
        xf_proto = request.headers.get("x-forwarded-proto", "").split(",")[0].strip().lower()
        scheme = (request.url.scheme or "").lower()
        if (scheme == "https" or xf_proto == "https") and "strict-transport-security" not in resp.headers:
            resp.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return resp

    @application.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        t0 = time.perf_counter()
        status = 500
        try:
            response = await call_next(request)
            status = getattr(response, "status_code", 200) or 200
        finally:
            dur = max(0.0, time.perf_counter() - t0)
            # prefer named route; fallback to path
            handler = getattr(request.scope.get("route"), "name", None) or request.url.path
            observe_request(str(handler), str(request.method), int(status), float(dur))
        return response

    @application.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        set_request_id(rid)
        resp = await call_next(request)
        resp.headers["X-Request-ID"] = rid
        return resp

    @application.get("/metrics", include_in_schema=False)
    async def metrics():
        return PlainTextResponse(export_prometheus(), media_type="text/plain; version=0.0.4; charset=utf-8")

    # Idempotency-Key header and problem+json responses on every mutation
    def custom_openapi():
        if application.openapi_schema:
            return application.openapi_schema
        openapi_schema = get_openapi(
            title=application.title,
            version=application.version,
            description="SalarySync payroll API",
            routes=application.routes,
        )
        comps = openapi_schema.setdefault("components", {})
        params = comps.setdefault("parameters", {})
        params.setdefault(
            "IdempotencyKey",
            {
                "name": "Idempotency-Key",
                "in": "header",
                "required": False,
                "schema": {"type": "string"},
                "description": "Provide to make mutation requests idempotent.",
            },
        )
        schemas = comps.setdefault("schemas", {})
        schemas.setdefault(
            "ProblemDetails",
            {
                "type": "object",
                "properties": {
                    "type": {"type": "string"},
                    "title": {"type": "string"},
                    "status": {"type": "integer"},
                    "detail": {"type": "string"},
                    "instance": {"type": "string"},
                    "code": {"type": "string"},
                    "request_id": {"type": "string"},
                },
            },
        )
        for ops in openapi_schema.get("paths", {}).values():
            for method, op in ops.items():
                if method.lower() not in {"post", "put", "patch", "delete"}:
                    continue
                params_list = op.setdefault("parameters", [])
                if not any(p.get("name") == "Idempotency-Key" or p.get("$ref", "").endswith("/IdempotencyKey") for p in params_list):
                    params_list.append({"$ref": "#/components/parameters/IdempotencyKey"})
                responses = op.setdefault("responses", {})
                for code in ("400", "401", "402", "403", "404", "409"):
                    responses.setdefault(
                        code,
                        {
                            "description": "Error",
                            "content": {
                                "application/problem+json": {"schema": {"$ref": "#/components/schemas/ProblemDetails"}}
                            },
                        },
                    )
        application.openapi_schema = openapi_schema
        return application.openapi_schema

    application.openapi = custom_openapi

    return application


app = create_app()
