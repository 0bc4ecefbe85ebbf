from __future__ import annotations

import datetime as dt
from decimal import Decimal
from types import SimpleNamespace

import pytest


def _employee(**overrides):
    data = dict(
        salary_type="monthly",
        monthly_salary=Decimal("3000.00"),
        hourly_rate=None,
        working_hours_per_week=Decimal("40"),
        start_date=dt.date(2024, 1, 1),
        end_date=None,
        date_of_birth=None,
        holiday_allowance_rate=Decimal("0.08"),
    )
    data.update(overrides)
    return SimpleNamespace(**data)


def test_full_month_monthly_salary():
    from core.services.calculation import calculate_period

    r = calculate_period(_employee(), 2025, 3)
    assert r.period == "2025-03"
    assert not r.pro_rata_applied and r.pro_rata_factor == Decimal(1)
    assert r.base_pay == r.gross_salary == Decimal("3000.00")
    assert r.aow_contribution == Decimal("537.00")
    assert r.wlz_contribution == Decimal("289.50")
    assert r.ww_contribution == Decimal("8.10")
    assert r.wia_contribution == Decimal("18.00")
    assert r.total_employee_contributions == Decimal("852.60")
    assert r.gross_after_contributions == Decimal("2147.40")
    # Allowance never below 8.33%
    assert r.holiday_allowance == Decimal("249.90")


def test_employer_contributions():
    from core.services.calculation import calculate_period

    r = calculate_period(_employee(), 2025, 3)
    assert (r.employer_aow, r.employer_wlz, r.employer_ww, r.employer_wia) == (
        Decimal("537.00"),
        Decimal("289.50"),
        Decimal("81.00"),
        Decimal("18.00"),
    )
    assert (r.employer_awf, r.employer_aof, r.employer_zvw) == (Decimal("82.20"), Decimal("188.40"), Decimal("208.50"))
    assert r.total_employer_contributions == Decimal("1404.60")


def test_high_rate_classes():
    from core.services.calculation import calculate_period

    r = calculate_period(_employee(), 2025, 3, awf_rate_class="high", aof_rate_class="high")
    assert r.employer_awf == Decimal("232.20")
    assert r.employer_aof == Decimal("229.20")


def test_contribution_bases_are_capped():
    from core.services.calculation import calculate_period

    r = calculate_period(_employee(monthly_salary=Decimal("5000")), 2025, 3)
    assert r.aow_contribution == Decimal("596.67")
    assert r.wlz_contribution == Decimal("321.67")
    r = calculate_period(_employee(monthly_salary=Decimal("10000")), 2025, 3)
    assert r.ww_contribution == Decimal("15.53")
    assert r.wia_contribution == Decimal("34.50")
    # Uncapped employer premiums follow the full amount
    assert r.employer_zvw == Decimal("695.00")


def test_pensioner_pays_no_aow():
    from core.services.calculation import calculate_period

    r = calculate_period(_employee(date_of_birth=dt.date(1950, 6, 1)), 2025, 3)
    assert r.aow_contribution == Decimal("0.00")
    assert r.employer_aow == Decimal("0.00")
    assert r.wlz_contribution == Decimal("289.50")


def test_age_is_taken_at_period_end():
    from core.services.calculation import calculate_period

    # Turns 67 on the last day of March
    born = dt.date(1958, 3, 31)
    assert calculate_period(_employee(date_of_birth=born), 2025, 3).aow_contribution == Decimal("0.00")
    assert calculate_period(_employee(date_of_birth=born), 2025, 2).aow_contribution == Decimal("537.00")


def test_pro_rata_calendar_days():
    from core.services.calculation import calculate_period

    r = calculate_period(_employee(start_date=dt.date(2025, 3, 17)), 2025, 3)
    assert r.pro_rata_applied
    assert r.pro_rata_factor == Decimal("0.4839")
    assert r.base_pay == Decimal("1451.70")


def test_pro_rata_working_days():
    from core.services.calculation import pro_rata

    share = pro_rata(dt.date(2025, 3, 17), None, 2025, 3, method="working")
    assert (share.actual_days, share.total_days) == (11, 21)
    assert share.factor == Decimal("0.5238")


def test_pro_rata_for_leaver():
    from core.services.calculation import pro_rata

    share = pro_rata(dt.date(2020, 1, 1), dt.date(2025, 3, 10), 2025, 3)
    assert share.applied and (share.actual_days, share.total_days) == (10, 31)
    full = pro_rata(dt.date(2020, 1, 1), dt.date(2025, 3, 31), 2025, 3)
    assert not full.applied and full.factor == Decimal(1)


def test_pro_rata_rejects_bad_input():
    from core.errors import ValidationFailed
    from core.services.calculation import pro_rata

    with pytest.raises(ValidationFailed):
        pro_rata(dt.date(2025, 3, 1), None, 2025, 3, method="weekly")
    with pytest.raises(ValidationFailed):
        pro_rata(dt.date(2025, 3, 10), dt.date(2025, 3, 1), 2025, 3)


def test_not_employed_in_period():
    from core.errors import ValidationFailed
    from core.services.calculation import calculate_period

    with pytest.raises(ValidationFailed) as err:
        calculate_period(_employee(start_date=dt.date(2025, 4, 1)), 2025, 3)
    assert err.value.code == "not_employed_in_period"


def test_hourly_with_hours_and_overtime():
    from core.services.calculation import calculate_period

    emp = _employee(salary_type="hourly", monthly_salary=None, hourly_rate=Decimal("15"))
    r = calculate_period(emp, 2025, 3, hours_worked=100, overtime_hours=10)
    assert r.base_pay == Decimal("1500.00")
    assert r.overtime_pay == Decimal("225.00")
    assert r.gross_salary == Decimal("1725.00")
    assert r.hours_worked == Decimal("100")


def test_hourly_without_hours_uses_contract():
    from core.services.calculation import calculate_period

    emp = _employee(salary_type="hourly", monthly_salary=None, hourly_rate=Decimal("20"))
    assert calculate_period(emp, 2025, 3).base_pay == Decimal("3466.67")


def test_monthly_overtime_and_bonus():
    from core.services.calculation import calculate_period

    r = calculate_period(_employee(), 2025, 3, overtime_hours="4", bonus="250.5")
    assert r.overtime_pay == Decimal("103.85")
    assert r.bonus == Decimal("250.50")
    assert r.gross_salary == Decimal("3354.35")


@pytest.mark.parametrize(
    "kwargs",
    [
        {"overtime_hours": -1},
        {"bonus": "-10"},
        {"hours_worked": -5},
        {"hours_worked": 740, "overtime_hours": 10},
        {"bonus": "abc"},
    ],
)
def test_invalid_inputs(kwargs):
    from core.errors import ValidationFailed
    from core.services.calculation import calculate_period

    with pytest.raises(ValidationFailed):
        calculate_period(_employee(), 2025, 3, **kwargs)


def test_missing_pay_data():
    from core.errors import ValidationFailed
    from core.services.calculation import calculate_period

    with pytest.raises(ValidationFailed):
        calculate_period(_employee(monthly_salary=None), 2025, 3)
    with pytest.raises(ValidationFailed):
        calculate_period(_employee(salary_type="hourly", hourly_rate=None), 2025, 3)
    with pytest.raises(ValidationFailed):
        calculate_period(_employee(), 2025, 13)


def test_minimum_wage_flags():
    from core.services.calculation import calculate_period

    born_1995 = dt.date(1995, 1, 1)
    low = _employee(salary_type="hourly", monthly_salary=None, hourly_rate=Decimal("12.00"), date_of_birth=born_1995)
    r = calculate_period(low, 2025, 3)
    assert r.below_minimum_wage
    assert r.minimum_wage_monthly == Decimal("2223.87")

    youth = _employee(salary_type="hourly", monthly_salary=None, hourly_rate=Decimal("8.00"), date_of_birth=dt.date(2007, 1, 1))
    assert not calculate_period(youth, 2025, 3).below_minimum_wage

    monthly = _employee(monthly_salary=Decimal("2000"), date_of_birth=born_1995)
    assert calculate_period(monthly, 2025, 3).below_minimum_wage
    # Unknown age: no statutory check
    assert calculate_period(_employee(monthly_salary=Decimal("2000")), 2025, 3).minimum_wage_monthly is None


def test_minimum_wage_table():
    from core.services.calculation import minimum_hourly_wage

    assert minimum_hourly_wage(21, 2025) == Decimal("12.83")
    assert minimum_hourly_wage(18, 2025) == Decimal("7.89")
    assert minimum_hourly_wage(14, 2025) is None
    assert minimum_hourly_wage(None, 2025) is None
    # Later years fall back to the latest known table
    assert minimum_hourly_wage(40, 2031) == Decimal("12.83")


def test_result_serializes_amounts_as_strings():
    from core.services.calculation import calculate_period

    data = calculate_period(_employee(), 2025, 3).to_dict()
    assert data["period"] == "2025-03"
    assert data["gross_salary"] == "3000.00"
    assert data["below_minimum_wage"] is False
    assert data["hours_worked"] is None
