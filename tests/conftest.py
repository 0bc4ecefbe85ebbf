from __future__ import annotations

import datetime as dt
import sys
import time
from decimal import Decimal
from pathlib import Path

import httpx
import pytest

# Ensure project root is importable as a module path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.cache import reset_cache
from core.db import get_sessionmaker, init_databases, reset_engines
from core.rate_limit import reset_rate_limiter
from core.settings import reset_settings_cache

ADMIN_PASSWORD = "admin-pass"
CRON_SECRET = "cron-secret"
WEBHOOK_SECRET = "whsec_test"
PASSWORD = "Geheim-wachtwoord1"


def _reset_singletons() -> None:
    reset_settings_cache()
    reset_engines()
    reset_cache()
    reset_rate_limiter()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Fresh in-memory databases and singletons for every test."""
    monkeypatch.setenv("DATABASE_URL", "sqlite:///:memory:")
    for name in ("AUTH_DATABASE_URL", "HR_DATABASE_URL", "PAYROLL_DATABASE_URL", "PAYMENT_API_KEY", "PII_ENC_KEY", "PII_ENC_KEYS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("SALARYSYNC_AUTO_APPLY_DDL", "1")
    monkeypatch.setenv("SECRET_KEY", "test-secret")
    monkeypatch.setenv("ADMIN_PASSWORD", ADMIN_PASSWORD)
    monkeypatch.setenv("CRON_SECRET", CRON_SECRET)
    monkeypatch.setenv("PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("REQUIRE_EMAIL_VERIFICATION", "0")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    _reset_singletons()
    init_databases()
    yield
    _reset_singletons()


def _session(purpose: str):
    s = get_sessionmaker(purpose)()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture()
def auth_db():
    yield from _session("auth")


@pytest.fixture()
def hr_db():
    yield from _session("hr")


@pytest.fixture()
def payroll_db():
    yield from _session("payroll")


@pytest.fixture()
def owner(auth_db):
    """A registered owner with one company on a fresh trial."""
    from core.models import Company
    from core.services import users as user_service

    user, _ = user_service.register(
        auth_db,
        email="eigenaar@example.nl",
        password=PASSWORD,
        name="Eva Eigenaar",
        company={"name": "Bakkerij Jansen B.V.", "kvk_number": "12345678"},
    )
    return user, auth_db.get(Company, user.active_company_id)


def make_employee(hr_db, company_id: int, access, **overrides):
    from core.services import employees as employee_service

    data = {
        "first_name": "Jan",
        "last_name": "de Boer",
        "start_date": dt.date(2024, 1, 1),
        "salary_type": "monthly",
        "monthly_salary": Decimal("3000.00"),
        "working_hours_per_week": Decimal("40"),
    }
    data.update(overrides)
    return employee_service.create_employee(hr_db, company_id, data, access=access)


# ------------------------------
# Payment processor double
# ------------------------------


class FakeProcessor:
    """Records calls and answers like the processor's REST API."""

    def __init__(self) -> None:
        now = int(time.time())
        self.calls: list[tuple[str, str, str]] = []
        self.subscription = {
            "id": "sub_123",
            "object": "subscription",
            "status": "active",
            "customer": "cus_123",
            "cancel_at_period_end": False,
            "current_period_start": now - 86400,
            "current_period_end": now + 30 * 86400,
            "items": {"data": [{"price": {"id": "price_starter"}}]},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = request.content.decode()
        self.calls.append((request.method, request.url.path, body))
        path = request.url.path
        if path.endswith("/customers"):
            return httpx.Response(200, json={"id": "cus_123"})
        if path.endswith("/checkout/sessions"):
            return httpx.Response(200, json={"id": "cs_123", "url": "https://checkout.example/cs_123"})
        if "/subscriptions/" in path:
            if request.method == "POST":
                self.subscription["cancel_at_period_end"] = "cancel_at_period_end=true" in body
            return httpx.Response(200, json=self.subscription)
        return httpx.Response(404, json={"error": {"message": "no such resource"}})

    def gateway(self):
        from core.services.payments import PaymentGateway

        return PaymentGateway("sk_test", transport=httpx.MockTransport(self.handler))


@pytest.fixture()
def processor():
    return FakeProcessor()


@pytest.fixture()
def app(processor):
    from app.main import create_app
    from salarysync_api.deps import get_payment_gateway, optional_payment_gateway

    application = create_app()
    application.dependency_overrides[get_payment_gateway] = processor.gateway
    application.dependency_overrides[optional_payment_gateway] = processor.gateway
    return application


@pytest.fixture()
def client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)


def register(client, email: str, company: str = "Acme B.V.", password: str = PASSWORD) -> dict:
    """Register through the API; returns bearer headers (cookies cleared so headers decide)."""
    r = client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "name": email.split("@")[0], "company": {"name": company}},
    )
    assert r.status_code == 201, r.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}


def login(client, email: str, password: str = PASSWORD) -> dict:
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}
