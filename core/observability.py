from __future__ import annotations

import os
from typing import Any, Optional

_REDACTED_HEADERS = {
    "authorization",
    "cookie",
    "set-cookie",
    "x-session-token",
    "x-admin-token",
    "x-cron-secret",
    "payment-signature",
    "stripe-signature",
}


def init_sentry() -> Optional[object]:
    """Initialize Sentry if SENTRY_DSN is set and sentry_sdk is installed.

    Returns the sentry SDK module when initialized, otherwise None.
    """
    dsn = (os.environ.get("SENTRY_DSN") or "").strip()
    if not dsn:
        return None
    try:
        import sentry_sdk  # type: ignore
        from sentry_sdk.integrations.starlette import StarletteIntegration  # type: ignore
    except ImportError:
        return None

    def _before_send(event: dict[str, Any], hint: dict[str, Any] | None) -> dict[str, Any] | None:
        req = event.get("request") or {}
        hdrs = req.get("headers") or {}
        for k in list(hdrs.keys()):
            if str(k).lower() in _REDACTED_HEADERS:
                hdrs[k] = "[redacted]"
        req["headers"] = hdrs
        # Request bodies may carry BSN/IBAN
        if "data" in req:
            req["data"] = "[redacted]"
        event["request"] = req
        return event

    sentry_sdk.init(
        dsn=dsn,
        traces_sample_rate=float(os.environ.get("SENTRY_TRACES_SAMPLE_RATE", "0.0") or 0.0),
        environment=os.environ.get("SENTRY_ENV") or os.environ.get("ENV") or "dev",
        integrations=[StarletteIntegration()],
        before_send=_before_send,
        send_default_pii=False,
    )
    return sentry_sdk
