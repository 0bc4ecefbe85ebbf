from __future__ import annotations

import json
import time

from conftest import ADMIN_PASSWORD, CRON_SECRET, WEBHOOK_SECRET, register


def _admin_headers(client) -> dict:
    r = client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})
    assert r.status_code == 200, r.text
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}


def _seed_plans(client, monkeypatch) -> dict:
    monkeypatch.setenv("PAYMENT_PRICE_STARTER", "price_starter")
    r = client.post("/api/admin/plans/seed", headers=_admin_headers(client))
    assert r.status_code == 200
    return {p["name"]: p for p in client.get("/api/plans").json()["items"]}


def _post_event(client, event: dict, secret: str = WEBHOOK_SECRET):
    from core.services.payments import sign_payload

    body = json.dumps(event).encode()
    return client.post(
        "/api/webhooks/payments",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, secret), "Content-Type": "application/json"},
    )


def _subscription_event(event_id: str, company_id: int, **extra) -> dict:
    now = int(time.time())
    obj = {
        "id": "sub_123",
        "customer": "cus_123",
        "status": "active",
        "cancel_at_period_end": False,
        "current_period_start": now,
        "current_period_end": now + 30 * 86400,
        "metadata": {"company_id": str(company_id)},
        "items": {"data": [{"price": {"id": "price_starter"}}]},
    }
    obj.update(extra)
    return {"id": event_id, "type": "customer.subscription.updated", "data": {"object": obj}}


def test_plan_catalogue(client, monkeypatch):
    plans = _seed_plans(client, monkeypatch)
    assert list(plans) == ["Starter", "Professional", "Enterprise"]
    assert plans["Starter"]["purchasable"] is True
    assert plans["Professional"]["purchasable"] is False
    assert plans["Starter"]["price_cents"] == 2900


def test_status_of_new_company(client):
    owner = register(client, "status@example.nl")
    body = client.get("/api/subscription/status", headers=owner).json()
    assert body["subscription"]["status"] == "trialing"
    assert body["trial"]["days_remaining"] == 14
    assert body["access"]["limits"]["max_employees"] is None


def test_checkout_webhook_and_cancellation(client, monkeypatch, processor):
    plans = _seed_plans(client, monkeypatch)
    owner = register(client, "betaler@example.nl")
    company_id = client.get("/api/company", headers=owner).json()["company"]["id"]

    r = client.post("/api/subscription/checkout", headers=owner, json={"plan_id": plans["Starter"]["id"]})
    assert r.status_code == 200, r.text
    assert r.json()["checkout_url"] == "https://checkout.example/cs_123"

    r = _post_event(client, _subscription_event("evt_1", company_id))
    assert r.status_code == 200
    assert r.json()["result"] == "applied" and r.json()["company_id"] == company_id
    assert _post_event(client, _subscription_event("evt_1", company_id)).json()["result"] == "duplicate"

    status = client.get("/api/subscription/status", headers=owner).json()
    assert status["subscription"]["status"] == "active"
    assert status["subscription"]["plan"] == "Starter"
    assert status["trial"] is None
    assert status["access"]["limits"]["max_employees"] == 10

    again = client.post("/api/subscription/checkout", headers=owner, json={"plan_id": plans["Starter"]["id"]})
    assert again.status_code == 409 and again.json()["code"] == "already_subscribed"

    r = client.post("/api/subscription/cancel", headers=owner)
    assert r.status_code == 200
    assert r.json()["subscription"]["cancel_at_period_end"] is True
    assert processor.calls[-1][:2] == ("POST", "/v1/subscriptions/sub_123")
    assert "cancel_at_period_end=true" in processor.calls[-1][2]

    r = client.post("/api/subscription/reactivate", headers=owner)
    assert r.status_code == 200
    assert r.json()["subscription"]["cancel_at_period_end"] is False
    assert "cancel_at_period_end=false" in processor.calls[-1][2]
    assert client.post("/api/subscription/reactivate", headers=owner).status_code == 409


def test_webhook_rejects_bad_signature(client):
    event = {"id": "evt_x", "type": "customer.subscription.updated", "data": {"object": {}}}
    r = _post_event(client, event, secret="whsec_fake")
    assert r.status_code == 401 and r.json()["code"] == "bad_signature"
    unsigned = client.post("/api/webhooks/payments", content=json.dumps(event))
    assert unsigned.status_code == 401


def test_payment_failure_restricts_access(client, monkeypatch):
    _seed_plans(client, monkeypatch)
    owner = register(client, "wanbetaler@example.nl")
    company_id = client.get("/api/company", headers=owner).json()["company"]["id"]
    _post_event(client, _subscription_event("evt_1", company_id))

    failed = {"id": "evt_2", "type": "invoice.payment_failed", "data": {"object": {"subscription": "sub_123"}}}
    assert _post_event(client, failed).json()["result"] == "applied"
    status = client.get("/api/subscription/status", headers=owner).json()
    assert status["subscription"]["status"] == "past_due"
    run = client.post("/api/payroll/run", headers=owner, json={"year": 2025, "month": 3})
    assert run.status_code == 402


def test_cancel_trial_immediately(client):
    owner = register(client, "stopper@example.nl")
    r = client.post("/api/subscription/cancel", headers=owner)
    assert r.status_code == 200
    assert r.json()["subscription"]["status"] == "canceled"
    assert client.get("/api/trial/status", headers=owner).json()["trial"] is None


def test_trial_endpoints(client):
    owner = register(client, "proef@example.nl")
    status = client.get("/api/trial/status", headers=owner).json()
    assert status["has_subscription"] is True
    assert status["trial"]["is_active"] is True and status["trial"]["can_extend"] is True
    # Starting again while trialing is a no-op
    assert client.post("/api/trial/start", headers=owner).json()["trial"]["trial_end"] == status["trial"]["trial_end"]

    cron = {"Authorization": f"Bearer {CRON_SECRET}"}
    assert client.post("/api/trial/cleanup").status_code == 401
    assert client.post("/api/trial/cleanup", headers={"Authorization": "Bearer fout"}).status_code == 401
    assert client.post("/api/trial/cleanup", headers=cron).json() == {"ok": True, "expired": 0}

    assert client.get("/api/trial/expiring", headers=cron).json()["items"] == []
    soon = client.get("/api/trial/expiring", headers=cron, params={"days": 14}).json()["items"]
    assert len(soon) == 1
