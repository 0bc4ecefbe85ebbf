from __future__ import annotations

from conftest import ADMIN_PASSWORD, register


def _admin(client) -> dict:
    r = client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})
    assert r.status_code == 200
    assert r.json()["ttl"] > 0
    assert "salarysync_admin" in r.cookies
    client.cookies.clear()
    return {"Authorization": f"Bearer {r.json()['token']}"}


def test_admin_login_and_guard(client):
    r = client.post("/api/admin/login", json={"password": "fout"})
    assert r.status_code == 401 and r.json()["code"] == "invalid_credentials"

    assert client.get("/api/admin/stats").status_code == 403
    assert client.get("/api/admin/stats", headers={"Authorization": "Bearer nope"}).json()["code"] == "admin_required"

    owner = register(client, "geen-admin@example.nl")
    assert client.get("/api/admin/stats", headers=owner).status_code == 403

    headers = _admin(client)
    assert client.get("/api/admin/stats", headers=headers).status_code == 200
    token = headers["Authorization"].split()[1]
    assert client.get("/api/admin/stats", headers={"X-Admin-Token": token}).status_code == 200


def test_admin_cookie_is_accepted(client):
    r = client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})
    assert r.status_code == 200
    assert client.get("/api/admin/integrity").status_code == 200


def test_seed_plans_is_repeatable(client):
    headers = _admin(client)
    first = client.post("/api/admin/plans/seed", headers=headers).json()["results"]
    assert [item["plan"] for item in first] == ["Trial", "Starter", "Professional", "Enterprise"]
    assert {item["action"] for item in first} == {"created"}
    second = client.post("/api/admin/plans/seed", headers=headers).json()["results"]
    assert {item["action"] for item in second} == {"exists"}


def test_extend_trial(client):
    owner = register(client, "verlenging@example.nl")
    company_id = client.get("/api/company", headers=owner).json()["company"]["id"]
    before = client.get("/api/trial/status", headers=owner).json()["trial"]

    headers = _admin(client)
    r = client.post(f"/api/admin/trials/{company_id}/extend", headers=headers, json={})
    assert r.status_code == 200
    trial = r.json()["trial"]
    assert trial["extensions"] == 1 and trial["days_remaining"] == before["days_remaining"] + 7

    r = client.post(f"/api/admin/trials/{company_id}/extend", headers=headers, json={"days": 3})
    assert r.json()["trial"]["can_extend"] is False
    r = client.post(f"/api/admin/trials/{company_id}/extend", headers=headers, json={})
    assert r.status_code == 409 and r.json()["code"] == "trial_extension_limit"

    assert client.post(f"/api/admin/trials/{company_id}/extend", headers=headers, json={"days": 0}).status_code == 422
    assert client.post("/api/admin/trials/9999/extend", headers=headers, json={}).status_code == 404


def test_integrity_check_and_repair(client):
    from core.db import session_scope
    from core.models import Company, UserCompany

    owner = register(client, "integriteit@example.nl")
    user_id = client.get("/api/auth/me", headers=owner).json()["user"]["id"]
    headers = _admin(client)

    report = client.get("/api/admin/integrity", headers=headers).json()
    assert report["ok"] is True

    with session_scope("auth") as session:
        bare = Company(name="Los Zand B.V.")
        session.add(bare)
        session.flush()
        session.add(UserCompany(user_id=user_id, company_id=bare.id, role="owner", is_active=True))

    report = client.get("/api/admin/integrity", headers=headers).json()
    assert report["counts"]["companies_without_subscription"] == 1

    r = client.post("/api/admin/integrity/repair", headers=headers)
    assert r.status_code == 200
    body = r.json()
    assert body["repaired"]["companies_without_subscription"] == 1
    assert body["before"]["companies_without_subscription"] == 1
    assert body["remaining"]["ok"] is True


def test_stats_and_audit_trail(client):
    register(client, "audit@example.nl")
    headers = _admin(client)

    stats = client.get("/api/admin/stats", headers=headers).json()
    assert stats["subscriptions"]["trialing"] == 1
    assert stats["subscriptions"]["active"] == 0
    assert stats["databases"]["auth"]["users"] == 1
    assert "hits" in stats["cache"]

    page = client.get("/api/admin/audit", headers=headers, params={"limit": 1}).json()
    assert len(page["items"]) == 1 and page["has_more"] is True
    newest = page["items"][0]
    assert newest["action"] == "admin_login" and newest["actor"] == "admin"

    following = client.get("/api/admin/audit", headers=headers, params={"limit": 1, "cursor": page["next_cursor"]}).json()
    assert following["items"][0]["id"] < newest["id"]

    registered = client.get("/api/admin/audit", headers=headers, params={"action": "register"}).json()["items"]
    assert len(registered) == 1 and registered[0]["result"] == "ok"

    bad = client.get("/api/admin/audit", headers=headers, params={"cursor": "@@@"})
    assert bad.status_code == 400


def test_admin_token_ttl_comes_from_settings(client, monkeypatch):
    from core.settings import reset_settings_cache

    monkeypatch.setenv("ADMIN_TOKEN_TTL_SECONDS", "600")
    reset_settings_cache()
    r = client.post("/api/admin/login", json={"password": ADMIN_PASSWORD})
    assert r.status_code == 200
    assert r.json()["ttl"] == 600
