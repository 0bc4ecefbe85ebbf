from __future__ import annotations

from conftest import register

EMPLOYEE = {
    "first_name": "Jan",
    "last_name": "de Boer",
    "start_date": "2024-01-01",
    "monthly_salary": "3000.00",
    "working_hours_per_week": "40",
    "bsn": "111222333",
    "iban": "NL91 ABNA 0417 1643 00",
}


def _create(client, headers, **overrides) -> dict:
    r = client.post("/api/employees", headers=headers, json={**EMPLOYEE, **overrides})
    assert r.status_code == 201, r.text
    return r.json()["employee"]


def test_create_get_update(client):
    owner = register(client, "hr@example.nl")
    emp = _create(client, owner)
    assert emp["employee_number"] == "EMP0001"
    assert emp["bsn"] == "*****2333"
    assert emp["iban"] == "NL91ABNA0417164300"
    assert emp["monthly_salary"] == "3000.00"

    r = client.get(f"/api/employees/{emp['id']}", headers=owner)
    assert r.status_code == 200 and r.json()["employee"]["full_name"] == "Jan de Boer"

    r = client.patch(f"/api/employees/{emp['id']}", headers=owner, json={"position": "Bakker", "department": "Productie"})
    assert r.status_code == 200
    assert r.json()["employee"]["position"] == "Bakker"

    bad = client.patch(f"/api/employees/{emp['id']}", headers=owner, json={"bsn": "123456789"})
    assert bad.status_code == 400 and bad.json()["code"] == "invalid_bsn"
    assert client.get("/api/employees/424242", headers=owner).status_code == 404


def test_create_validation(client):
    owner = register(client, "hr@example.nl")
    r = client.post("/api/employees", headers=owner, json={**EMPLOYEE, "iban": "NL00ABNA0417164300"})
    assert r.status_code == 400
    assert r.json()["details"] == {"field": "iban"}
    missing = client.post("/api/employees", headers=owner, json={"first_name": "Jan"})
    assert missing.status_code == 422


def test_idempotent_create(client):
    owner = register(client, "hr@example.nl")
    headers = {**owner, "Idempotency-Key": "nieuwe-medewerker-1"}
    first = client.post("/api/employees", headers=headers, json=EMPLOYEE)
    second = client.post("/api/employees", headers=headers, json=EMPLOYEE)
    assert first.status_code == second.status_code == 201
    assert first.json() == second.json()
    assert len(client.get("/api/employees", headers=owner).json()["items"]) == 1

    other = client.post("/api/employees", headers=headers, json={**EMPLOYEE, "first_name": "Piet"})
    assert other.status_code == 409 and other.json()["code"] == "idempotency_conflict"


def test_toggle_and_filters(client):
    owner = register(client, "hr@example.nl")
    emp = _create(client, owner)
    _create(client, owner, first_name="Piet")
    r = client.post(f"/api/employees/{emp['id']}/toggle-status", headers=owner)
    assert r.status_code == 200
    assert r.json()["employee"]["is_active"] is False
    assert r.json()["employee"]["end_date"] is not None

    active = client.get("/api/employees", headers=owner, params={"active": "true"}).json()["items"]
    assert [e["first_name"] for e in active] == ["Piet"]
    inactive = client.get("/api/employees", headers=owner, params={"active": "false"}).json()["items"]
    assert [e["first_name"] for e in inactive] == ["Jan"]

    r = client.post(f"/api/employees/{emp['id']}/toggle-status", headers=owner)
    assert r.json()["employee"]["is_active"] is True and r.json()["employee"]["end_date"] is None


def test_paging(client):
    owner = register(client, "hr@example.nl")
    for name in ("A", "B", "C"):
        _create(client, owner, first_name=name)
    page = client.get("/api/employees/page", headers=owner, params={"limit": 2}).json()
    assert [e["first_name"] for e in page["items"]] == ["A", "B"]
    rest = client.get("/api/employees/page", headers=owner, params={"limit": 2, "cursor": page["next_cursor"]}).json()
    assert [e["first_name"] for e in rest["items"]] == ["C"] and rest["next_cursor"] is None
    assert client.get("/api/employees/page", headers=owner, params={"cursor": "@@@"}).status_code == 400


def test_tenants_do_not_see_each_other(client):
    first = register(client, "een@example.nl", company="Een B.V.")
    second = register(client, "twee@example.nl", company="Twee B.V.")
    emp = _create(client, first)
    assert client.get(f"/api/employees/{emp['id']}", headers=second).status_code == 404
    assert client.patch(f"/api/employees/{emp['id']}", headers=second, json={"position": "x"}).status_code == 404
    assert client.get("/api/employees", headers=second).json()["items"] == []
    # Numbering is per company
    assert _create(client, second)["employee_number"] == "EMP0001"


def test_employee_role_sees_only_own_record(client):
    owner = register(client, "baas@example.nl", company="Bakkerij")
    company_id = client.get("/api/company", headers=owner).json()["company"]["id"]
    mine = _create(client, owner)
    theirs = _create(client, owner, first_name="Piet")

    worker = register(client, "jan@example.nl", company="Eigen")
    worker_id = client.get("/api/auth/me", headers=worker).json()["user"]["id"]
    assert client.post("/api/company/members", headers=owner, json={"email": "jan@example.nl", "role": "employee"}).status_code == 201

    # Linking requires membership first, then succeeds once
    r = client.patch(f"/api/employees/{mine['id']}", headers=owner, json={"user_id": worker_id})
    assert r.status_code == 200 and r.json()["employee"]["user_id"] == worker_id
    dup = client.patch(f"/api/employees/{theirs['id']}", headers=owner, json={"user_id": worker_id})
    assert dup.status_code == 409 and dup.json()["code"] == "user_already_linked"
    stranger = client.patch(f"/api/employees/{theirs['id']}", headers=owner, json={"user_id": 9999})
    assert stranger.status_code == 400

    assert client.post("/api/companies/switch", headers=worker, json={"company_id": company_id}).status_code == 200
    items = client.get("/api/employees", headers=worker).json()["items"]
    assert [e["id"] for e in items] == [mine["id"]]
    assert client.get(f"/api/employees/{mine['id']}", headers=worker).status_code == 200
    assert client.get(f"/api/employees/{theirs['id']}", headers=worker).status_code == 404
    assert client.get("/api/employees/page", headers=worker).status_code == 403
    assert client.post("/api/employees", headers=worker, json=EMPLOYEE).status_code == 403
