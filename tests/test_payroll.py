from __future__ import annotations

import datetime as dt
from decimal import Decimal

import pytest

from conftest import make_employee


def _setup(owner, auth_db, hr_db, count: int = 2):
    from core.services import subscriptions as subs

    _, company = owner
    access = subs.resolve_access(auth_db, company.id)
    employees = [make_employee(hr_db, company.id, access, first_name=f"Werknemer{i}") for i in range(count)]
    return company, access, employees


def test_run_creates_records_and_totals(owner, auth_db, hr_db, payroll_db):
    from core.services.payroll import run_payroll

    company, access, employees = _setup(owner, auth_db, hr_db)
    out = run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access, actor_id=owner[0].id)
    assert out["created"] is True
    assert out["warnings"] == []
    run = out["run"]
    assert run["period"] == "2025-03" and run["status"] == "draft"
    assert run["employee_count"] == 2
    assert run["total_gross"] == "6000.00"
    assert run["total_employee_contributions"] == "1705.20"
    assert run["total_employer_contributions"] == "2809.20"
    assert run["total_holiday_allowance"] == "499.80"
    assert [r["employee_number"] for r in out["records"]] == ["EMP0001", "EMP0002"]
    assert out["records"][0]["employee_name"] == "Werknemer0 de Boer"
    assert out["records"][0]["status"] == "processed"


def test_rerun_recalculates_in_place(owner, auth_db, hr_db, payroll_db):
    from core.models import PayrollRecord
    from core.services.payroll import run_payroll

    company, access, employees = _setup(owner, auth_db, hr_db)
    run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access)
    again = run_payroll(
        payroll_db,
        hr_db,
        company=company,
        year=2025,
        month=3,
        access=access,
        inputs={employees[0].id: {"bonus": "100"}},
    )
    assert again["created"] is False
    assert again["run"]["total_gross"] == "6100.00"
    assert payroll_db.query(PayrollRecord).count() == 2


def test_selected_employees(owner, auth_db, hr_db, payroll_db):
    from core.errors import NotFound
    from core.services.payroll import run_payroll

    company, access, employees = _setup(owner, auth_db, hr_db)
    out = run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access, employee_ids=[employees[1].id])
    assert [r["employee_id"] for r in out["records"]] == [employees[1].id]
    with pytest.raises(NotFound) as err:
        run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access, employee_ids=[9999])
    assert err.value.code == "employee_not_found"
    assert err.value.details == {"employee_ids": [9999]}


def test_no_employees_in_period(owner, auth_db, hr_db, payroll_db):
    from core.errors import ValidationFailed
    from core.services.payroll import get_run, run_payroll

    company, access, _ = _setup(owner, auth_db, hr_db)
    with pytest.raises(ValidationFailed) as err:
        run_payroll(payroll_db, hr_db, company=company, year=2023, month=12, access=access)
    assert err.value.code == "no_employees"
    assert get_run(payroll_db, company.id, 2023, 12) is None


def test_invalid_period(owner, auth_db, hr_db, payroll_db):
    from core.errors import ValidationFailed
    from core.services.payroll import run_payroll

    company, access, _ = _setup(owner, auth_db, hr_db, count=1)
    with pytest.raises(ValidationFailed):
        run_payroll(payroll_db, hr_db, company=company, year=2025, month=0, access=access)
    with pytest.raises(ValidationFailed):
        run_payroll(payroll_db, hr_db, company=company, year=1999, month=1, access=access)


def test_leaver_paid_in_final_month_only(owner, auth_db, hr_db, payroll_db):
    from core.services.employees import toggle_status
    from core.services.payroll import run_payroll

    company, access, employees = _setup(owner, auth_db, hr_db)
    toggle_status(hr_db, employees[1], access=access, today=dt.date(2025, 3, 10))

    march = run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access)
    leaver = next(r for r in march["records"] if r["employee_id"] == employees[1].id)
    assert leaver["pro_rata_factor"] == "0.3226"
    assert leaver["base_pay"] == "967.80"

    april = run_payroll(payroll_db, hr_db, company=company, year=2025, month=4, access=access)
    assert [r["employee_id"] for r in april["records"]] == [employees[0].id]


def test_minimum_wage_warning(owner, auth_db, hr_db, payroll_db):
    from core.services import subscriptions as subs
    from core.services.payroll import run_payroll

    _, company = owner
    access = subs.resolve_access(auth_db, company.id)
    emp = make_employee(hr_db, company.id, access, monthly_salary=Decimal("1800"), date_of_birth=dt.date(1990, 1, 1))
    out = run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access)
    assert out["warnings"] == [{"employee_id": emp.id, "code": "below_minimum_wage", "minimum_wage_monthly": "2223.87"}]


def test_finalize_and_reopen(owner, auth_db, hr_db, payroll_db):
    from core.errors import Conflict, NotFound
    from core.services.payroll import finalize_run, reopen_run, run_payroll

    company, access, _ = _setup(owner, auth_db, hr_db)
    with pytest.raises(NotFound):
        finalize_run(payroll_db, company.id, 2025, 3)
    run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access)

    run = finalize_run(payroll_db, company.id, 2025, 3, actor_id=owner[0].id)
    assert run.status == "finalized" and run.finalized_at is not None
    assert {r.status for r in run.records} == {"finalized"}
    with pytest.raises(Conflict) as err:
        finalize_run(payroll_db, company.id, 2025, 3)
    assert err.value.code == "period_finalized"
    with pytest.raises(Conflict) as err:
        run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access)
    assert err.value.code == "period_finalized"

    run = reopen_run(payroll_db, company.id, 2025, 3)
    assert run.status == "draft" and run.finalized_by is None
    assert {r.status for r in run.records} == {"processed"}
    with pytest.raises(Conflict) as err:
        reopen_run(payroll_db, company.id, 2025, 3)
    assert err.value.code == "period_not_finalized"


def test_yearly_run_limit(owner, hr_db, payroll_db):
    from core.errors import LimitExceeded
    from core.services.payroll import run_payroll
    from core.services.subscriptions import ACTIVE, AccessInfo

    _, company = owner
    access = AccessInfo(
        company_id=company.id,
        status=ACTIVE,
        plan_name="Klein",
        is_trial=False,
        has_subscription=True,
        max_employees=None,
        max_payrolls=1,
        features=frozenset({"employees", "payroll"}),
    )
    make_employee(hr_db, company.id, access)
    run_payroll(payroll_db, hr_db, company=company, year=2025, month=1, access=access)
    # Recalculating an existing period does not count
    run_payroll(payroll_db, hr_db, company=company, year=2025, month=1, access=access)
    with pytest.raises(LimitExceeded) as err:
        run_payroll(payroll_db, hr_db, company=company, year=2025, month=2, access=access)
    assert err.value.code == "payroll_limit_reached"
    assert err.value.status_code == 402
    # A new year starts a new count
    run_payroll(payroll_db, hr_db, company=company, year=2026, month=1, access=access)


def test_expired_trial_blocks_payroll(owner, auth_db, hr_db, payroll_db):
    from core.errors import LimitExceeded
    from core.models import utc_now
    from core.services import subscriptions as subs
    from core.services.payroll import run_payroll

    company, _, _ = _setup(owner, auth_db, hr_db, count=1)
    later = subs.resolve_access(auth_db, company.id, now=utc_now() + dt.timedelta(days=30))
    assert later.status == subs.TRIAL_EXPIRED
    with pytest.raises(LimitExceeded) as err:
        run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=later)
    assert err.value.code == "feature_unavailable"


def test_summary_and_listing(owner, auth_db, hr_db, payroll_db):
    from core.services.payroll import list_records, list_runs, period_summary, run_payroll

    company, access, employees = _setup(owner, auth_db, hr_db)
    run_payroll(payroll_db, hr_db, company=company, year=2025, month=2, access=access)
    run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access)

    summary = period_summary(payroll_db, company.id, 2025, 3)
    assert summary == {
        "period": "2025-03",
        "status": "draft",
        "employee_count": 2,
        "gross_salary": "6000.00",
        "total_employee_contributions": "1705.20",
        "total_employer_contributions": "2809.20",
        "holiday_allowance": "499.80",
        "gross_after_contributions": "4294.80",
    }
    empty = period_summary(payroll_db, company.id, 2024, 3)
    assert empty["status"] is None and empty["employee_count"] == 0 and empty["gross_salary"] == "0.00"

    assert [r.period for r in list_runs(payroll_db, company.id)] == ["2025-03", "2025-02"]
    assert len(list_records(payroll_db, company.id, year=2025)) == 4
    mine = list_records(payroll_db, company.id, employee_id=employees[0].id)
    assert [r.month for r in mine] == [3, 2]
    assert list_records(payroll_db, company.id + 1) == []


def test_preview_stores_nothing(owner, auth_db, hr_db, payroll_db):
    from core.models import PayrollRecord
    from core.services.payroll import preview

    company, _, employees = _setup(owner, auth_db, hr_db, count=1)
    data = preview(employees[0], company, 2025, 3, overtime_hours="4")
    assert data["overtime_pay"] == "103.85"
    assert payroll_db.query(PayrollRecord).count() == 0


def test_export_workbook(owner, auth_db, hr_db, payroll_db):
    from openpyxl import load_workbook

    from core.errors import NotFound
    from core.services.payroll import export_period, run_payroll

    company, access, _ = _setup(owner, auth_db, hr_db)
    with pytest.raises(NotFound):
        export_period(payroll_db, company, 2025, 3)
    run_payroll(payroll_db, hr_db, company=company, year=2025, month=3, access=access)

    wb = load_workbook(export_period(payroll_db, company, 2025, 3))
    ws = wb["2025-03"]
    assert ws["A1"].value == "Loonjournaal Bakkerij Jansen B.V."
    assert ws["A2"].value == "Periode 2025-03 (draft)"
    assert ws["A4"].value == "Personeelsnr." and ws["I4"].value == "Brutoloon"
    assert ws["A5"].value == "EMP0001" and ws["B5"].value == "Werknemer0 de Boer"
    assert ws["A7"].value == "Totaal"
    assert ws["I7"].value == pytest.approx(6000.0)
    assert ws["C7"].value is None


def test_cumulative_totals_sum_january_through_month(owner, auth_db, hr_db, payroll_db):
    from core.services.payroll import cumulative_totals, run_payroll

    company, access, employees = _setup(owner, auth_db, hr_db)
    first = employees[0]
    run_payroll(payroll_db, hr_db, company=company, year=2024, month=12, access=access)
    for month in (1, 2, 3):
        inputs = {first.id: {"bonus": "100"}} if month == 2 else None
        run_payroll(payroll_db, hr_db, company=company, year=2025, month=month, access=access, inputs=inputs)

    january = cumulative_totals(payroll_db, company.id, first.id, 2025, 1)
    assert january["months"] == 1
    assert january["gross_salary"] == "3000.00"
    assert january["total_employee_contributions"] == "852.60"
    assert january["holiday_allowance"] == "249.90"
    assert january["bonus"] == "0.00"

    march = cumulative_totals(payroll_db, company.id, first.id, 2025, 3)
    assert march["months"] == 3 and march["through_month"] == 3
    assert march["base_pay"] == "9000.00"
    assert march["bonus"] == "100.00"
    assert march["gross_salary"] == "9100.00"

    # Other employees and other tenants stay out of the sums
    other = cumulative_totals(payroll_db, company.id, employees[1].id, 2025, 3)
    assert other["gross_salary"] == "9000.00"
    assert cumulative_totals(payroll_db, 4242, first.id, 2025, 3)["months"] == 0


def test_cumulative_totals_without_records(owner, payroll_db):
    from core.errors import ValidationFailed
    from core.services.payroll import cumulative_totals

    empty = cumulative_totals(payroll_db, owner[1].id, 1, 2025, 6)
    assert empty["months"] == 0 and empty["gross_salary"] == "0.00"
    with pytest.raises(ValidationFailed):
        cumulative_totals(payroll_db, owner[1].id, 1, 2025, 13)
