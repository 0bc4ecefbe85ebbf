from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from core.errors import ValidationFailed
from core.utils.dates import age_on, count_calendar_days, count_working_days, month_bounds

CENT = Decimal("0.01")
FACTOR_STEP = Decimal("0.0001")
MONTHS = Decimal(12)
WEEKS_PER_YEAR = Decimal(52)
OVERTIME_MULTIPLIER = Decimal("1.5")
MIN_HOLIDAY_ALLOWANCE_RATE = Decimal("0.0833")
MAX_HOURS_PER_MONTH = Decimal(744)

# Social security rates and annual contribution bases per tax year
CONTRIBUTION_CONFIG: dict[int, dict[str, Any]] = {
    2025: {
        "pension_age": 67,
        "employee": {
            "aow": Decimal("0.1790"),
            "wlz": Decimal("0.0965"),
            "ww": Decimal("0.0027"),
            "wia": Decimal("0.0060"),
        },
        "employer": {
            "aow": Decimal("0.1790"),
            "wlz": Decimal("0.0965"),
            "ww": Decimal("0.0270"),
            "wia": Decimal("0.0060"),
            "awf": {"low": Decimal("0.0274"), "high": Decimal("0.0774")},
            "aof": {"low": Decimal("0.0628"), "high": Decimal("0.0764")},
            "zvw": Decimal("0.0695"),
        },
        "caps": {
            "aow": Decimal("40000"),
            "wlz": Decimal("40000"),
            "ww": Decimal("69000"),
            "wia": Decimal("69000"),
        },
    },
}

# Statutory hourly minimum wage; youth rates by age, none below 15
MINIMUM_WAGE_CONFIG: dict[int, dict[str, Any]] = {
    2025: {
        "adult_age": 21,
        "adult_hourly": Decimal("12.83"),
        "youth_hourly": {
            20: Decimal("10.91"),
            19: Decimal("9.30"),
            18: Decimal("7.89"),
            17: Decimal("6.74"),
            16: Decimal("5.84"),
            15: Decimal("5.07"),
        },
    },
}


def _for_year(table: dict[int, dict[str, Any]], year: int) -> dict[str, Any]:
    """Config of the latest year not after ``year`` (earliest known year as floor)."""
    known = sorted(table)
    chosen = known[0]
    for y in known:
        if y <= year:
            chosen = y
    return table[chosen]


def config_for(year: int) -> dict[str, Any]:
    return _for_year(CONTRIBUTION_CONFIG, year)


def money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any, field: str = "value") -> Decimal:
    if value is None or value == "":
        return Decimal(0)
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValidationFailed(f"{field} must be a number", details={"field": field})


@dataclass(frozen=True)
class ProRata:
    applied: bool
    method: str
    factor: Decimal
    actual_days: int
    total_days: int


def pro_rata(
    start_date: dt.date,
    end_date: Optional[dt.date],
    year: int,
    month: int,
    method: str = "calendar",
) -> ProRata:
    """Share of the month an employee was employed.

    ``method`` is ``calendar`` (every day counts) or ``working`` (weekdays that are
    not Dutch public holidays). A full month gives factor 1 without counting.
    """
    if method not in ("calendar", "working"):
        raise ValidationFailed("pro-rata method must be calendar or working", details={"field": "method"})
    if end_date is not None and end_date < start_date:
        raise ValidationFailed("end date precedes start date", details={"field": "end_date"})
    first, last = month_bounds(year, month)
    counter = count_working_days if method == "working" else count_calendar_days
    if start_date <= first and (end_date is None or end_date >= last):
        total = counter(first, last)
        return ProRata(False, method, Decimal(1), total, total)
    effective_start = max(start_date, first)
    effective_end = min(end_date, last) if end_date is not None else last
    total = counter(first, last)
    actual = counter(effective_start, effective_end)
    factor = (Decimal(actual) / Decimal(total)).quantize(FACTOR_STEP, rounding=ROUND_HALF_UP) if total else Decimal(0)
    return ProRata(True, method, factor, actual, total)


def minimum_hourly_wage(age: Optional[int], year: int) -> Optional[Decimal]:
    """None when no statutory minimum applies (under 15) or the age is unknown."""
    if age is None:
        return None
    cfg = _for_year(MINIMUM_WAGE_CONFIG, year)
    if age >= cfg["adult_age"]:
        return cfg["adult_hourly"]
    return cfg["youth_hourly"].get(age)


def monthly_from_hourly(hourly: Decimal, weekly_hours: Decimal) -> Decimal:
    return money(hourly * weekly_hours * WEEKS_PER_YEAR / MONTHS)


def hourly_from_monthly(monthly: Decimal, weekly_hours: Decimal) -> Decimal:
    """Hourly equivalent of a monthly salary (three months per thirteen weeks)."""
    if weekly_hours <= 0:
        return Decimal(0)
    return monthly * 3 / 13 / weekly_hours


def _capped(annual: Decimal, cap: Decimal) -> Decimal:
    return min(annual, cap)


def contributions(
    gross_monthly: Decimal,
    *,
    age: Optional[int],
    year: int,
    awf_rate_class: str = "low",
    aof_rate_class: str = "low",
) -> dict[str, Decimal]:
    """Monthly employee and employer contributions for a monthly gross amount.

    Capped bases apply to the annualized amount (gross x 12); each monthly
    contribution is the annual amount divided by 12, rounded to cents.
    """
    cfg = config_for(year)
    annual = gross_monthly * MONTHS
    pension = age is not None and age >= cfg["pension_age"]
    emp = cfg["employee"]
    er = cfg["employer"]
    caps = cfg["caps"]

    def monthly(base: Decimal, rate: Decimal) -> Decimal:
        return money(base * rate / MONTHS)

    out = {
        "aow_contribution": Decimal("0.00") if pension else monthly(_capped(annual, caps["aow"]), emp["aow"]),
        "wlz_contribution": monthly(_capped(annual, caps["wlz"]), emp["wlz"]),
        "ww_contribution": monthly(_capped(annual, caps["ww"]), emp["ww"]),
        "wia_contribution": monthly(_capped(annual, caps["wia"]), emp["wia"]),
        "employer_aow": Decimal("0.00") if pension else monthly(_capped(annual, caps["aow"]), er["aow"]),
        "employer_wlz": monthly(_capped(annual, caps["wlz"]), er["wlz"]),
        "employer_ww": monthly(_capped(annual, caps["ww"]), er["ww"]),
        "employer_wia": monthly(_capped(annual, caps["wia"]), er["wia"]),
        "employer_awf": monthly(annual, er["awf"]["high" if awf_rate_class == "high" else "low"]),
        "employer_aof": monthly(annual, er["aof"]["high" if aof_rate_class == "high" else "low"]),
        "employer_zvw": monthly(annual, er["zvw"]),
    }
    out["total_employee_contributions"] = sum(
        (out[k] for k in ("aow_contribution", "wlz_contribution", "ww_contribution", "wia_contribution")), Decimal("0.00")
    )
    out["total_employer_contributions"] = sum((v for k, v in out.items() if k.startswith("employer_")), Decimal("0.00"))
    return out


@dataclass(frozen=True)
class PayrollResult:
    year: int
    month: int
    salary_type: str
    hours_worked: Optional[Decimal]
    overtime_hours: Decimal
    pro_rata_applied: bool
    pro_rata_factor: Decimal
    base_pay: Decimal
    overtime_pay: Decimal
    bonus: Decimal
    gross_salary: Decimal
    aow_contribution: Decimal
    wlz_contribution: Decimal
    ww_contribution: Decimal
    wia_contribution: Decimal
    total_employee_contributions: Decimal
    employer_aow: Decimal
    employer_wlz: Decimal
    employer_ww: Decimal
    employer_wia: Decimal
    employer_awf: Decimal
    employer_aof: Decimal
    employer_zvw: Decimal
    total_employer_contributions: Decimal
    holiday_allowance: Decimal
    gross_after_contributions: Decimal
    minimum_wage_monthly: Optional[Decimal]
    below_minimum_wage: bool

    @property
    def period(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["period"] = self.period
        return {k: (str(v) if isinstance(v, Decimal) else v) for k, v in data.items()}


def calculate_period(
    employee,
    year: int,
    month: int,
    *,
    hours_worked: Any = None,
    overtime_hours: Any = None,
    bonus: Any = None,
    awf_rate_class: str = "low",
    aof_rate_class: str = "low",
    method: str = "calendar",
) -> PayrollResult:
    """Gross-to-contributions calculation for one employee and one month.

    Monthly salaries are scaled by the pro-rata factor. Hourly staff are paid for
    ``hours_worked`` when given, otherwise for their contracted hours scaled the
    same way. Overtime is paid at 150% of the (equivalent) hourly rate.
    """
    if not 1 <= int(month) <= 12:
        raise ValidationFailed("month must be 1..12", details={"field": "month"})
    weekly = to_decimal(employee.working_hours_per_week, "working_hours_per_week")
    overtime = to_decimal(overtime_hours, "overtime_hours")
    extra = to_decimal(bonus, "bonus")
    hours = None if hours_worked in (None, "") else to_decimal(hours_worked, "hours_worked")
    for name, value in (("overtime_hours", overtime), ("bonus", extra), ("hours_worked", hours)):
        if value is not None and value < 0:
            raise ValidationFailed(f"{name} cannot be negative", details={"field": name})
    if hours is not None and hours + overtime > MAX_HOURS_PER_MONTH:
        raise ValidationFailed("more hours than the month has", details={"field": "hours_worked"})

    share = pro_rata(employee.start_date, employee.end_date, year, month, method)
    if share.factor <= 0:
        raise ValidationFailed("employee was not employed in this period", code="not_employed_in_period")

    if employee.salary_type == "hourly":
        rate = to_decimal(employee.hourly_rate, "hourly_rate")
        if rate <= 0:
            raise ValidationFailed("hourly employees need an hourly rate", details={"field": "hourly_rate"})
        if hours is None:
            base = money(rate * weekly * WEEKS_PER_YEAR / MONTHS * share.factor)
        else:
            base = money(rate * hours)
        hourly_rate = rate
    else:
        salary = to_decimal(employee.monthly_salary, "monthly_salary")
        if salary <= 0:
            raise ValidationFailed("monthly employees need a monthly salary", details={"field": "monthly_salary"})
        base = money(salary * share.factor)
        hourly_rate = hourly_from_monthly(salary, weekly)

    overtime_pay = money(hourly_rate * overtime * OVERTIME_MULTIPLIER)
    gross = money(base + overtime_pay + extra)

    _, period_end = month_bounds(year, month)
    age = age_on(employee.date_of_birth, period_end) if employee.date_of_birth else None
    parts = contributions(gross, age=age, year=year, awf_rate_class=awf_rate_class, aof_rate_class=aof_rate_class)

    allowance_rate = max(to_decimal(employee.holiday_allowance_rate, "holiday_allowance_rate"), MIN_HOLIDAY_ALLOWANCE_RATE)
    holiday = money(gross * allowance_rate)

    min_hourly = minimum_hourly_wage(age, year)
    min_monthly = monthly_from_hourly(min_hourly, weekly) if min_hourly is not None else None
    below = min_hourly is not None and weekly > 0 and hourly_rate < min_hourly

    return PayrollResult(
        year=int(year),
        month=int(month),
        salary_type=employee.salary_type,
        hours_worked=hours,
        overtime_hours=overtime,
        pro_rata_applied=share.applied,
        pro_rata_factor=share.factor,
        base_pay=base,
        overtime_pay=overtime_pay,
        bonus=money(extra),
        gross_salary=gross,
        gross_after_contributions=money(gross - parts["total_employee_contributions"]),
        holiday_allowance=holiday,
        minimum_wage_monthly=min_monthly,
        below_minimum_wage=below,
        **parts,
    )
