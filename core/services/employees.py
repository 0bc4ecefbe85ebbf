from __future__ import annotations

import datetime as dt
import logging
import re
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.errors import Conflict, NotFound, ValidationFailed
from core.models import Employee
from core.utils.cursor import decode_cursor, encode_cursor, split_page
from core.utils.dates import parse_date_flex
from core.utils.dutch import is_valid_bsn, is_valid_email, is_valid_iban, normalize_email, normalize_iban
from core.utils.pii import display_bsn, encrypt_bsn

from . import subscriptions as subs

logger = logging.getLogger("salarysync.employees")

NUMBER_RE = re.compile(r"^EMP(\d+)$")
EMPLOYMENT_TYPES = ("fulltime", "parttime", "flex")
CONTRACT_TYPES = ("permanent", "temporary", "zero_hours")
SALARY_TYPES = ("monthly", "hourly")
TAX_TABLES = ("wit", "groen")

_TEXT_FIELDS = ("first_name", "last_name", "phone", "position", "department")


def next_employee_number(db: Session, company_id: int) -> str:
    """First free ``EMP0001``-style number for the company (gaps are reused)."""
    taken: set[int] = set()
    for (number,) in db.query(Employee.employee_number).filter(Employee.company_id == company_id):
        m = NUMBER_RE.match(number or "")
        if m:
            taken.add(int(m.group(1)))
    n = 1
    while n in taken:
        n += 1
    return f"EMP{n:04d}"


def _decimal(data: dict[str, Any], key: str) -> Optional[Decimal]:
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except ArithmeticError:
        raise ValidationFailed(f"{key} must be a number", details={"field": key})


def _choice(value: Any, allowed: tuple[str, ...], field: str) -> str:
    s = str(value or "").strip().lower()
    if s not in allowed:
        raise ValidationFailed(f"{field} must be one of {', '.join(allowed)}", details={"field": field})
    return s


def clean_employee_fields(data: dict[str, Any], *, current: Optional[Employee] = None) -> dict[str, Any]:
    """Validate create/update input. With ``current`` the input is a partial update
    and cross-field checks run against the merged result."""
    partial = current is not None
    out: dict[str, Any] = {}

    for key in _TEXT_FIELDS:
        if key in data and data[key] is not None:
            out[key] = str(data[key]).strip()
    for key in ("first_name", "last_name"):
        if (not partial or key in out) and not out.get(key):
            raise ValidationFailed(f"{key} is required", details={"field": key})

    if data.get("email") not in (None, ""):
        email = normalize_email(data["email"])
        if not is_valid_email(email):
            raise ValidationFailed("invalid e-mail address", details={"field": "email"})
        out["email"] = email
    elif "email" in data:
        out["email"] = ""

    if data.get("bsn") not in (None, ""):
        bsn = re.sub(r"\D", "", str(data["bsn"]))
        if not is_valid_bsn(bsn):
            raise ValidationFailed("BSN fails the eleven check", code="invalid_bsn", details={"field": "bsn"})
        out["bsn"] = encrypt_bsn(bsn.zfill(9))

    if data.get("iban") not in (None, ""):
        iban = normalize_iban(data["iban"])
        if not is_valid_iban(iban):
            raise ValidationFailed("invalid IBAN", details={"field": "iban"})
        out["iban"] = iban

    for key in ("date_of_birth", "start_date", "end_date"):
        if key in data:
            if data[key] in (None, ""):
                out[key] = None
                continue
            parsed = parse_date_flex(data[key])
            if parsed is None:
                raise ValidationFailed(f"{key} is not a date", details={"field": key})
            out[key] = parsed
    if not partial and not out.get("start_date"):
        raise ValidationFailed("start_date is required", details={"field": "start_date"})
    if partial and "start_date" in out and out["start_date"] is None:
        raise ValidationFailed("start_date cannot be cleared", details={"field": "start_date"})

    if "employment_type" in data and data["employment_type"] is not None:
        out["employment_type"] = _choice(data["employment_type"], EMPLOYMENT_TYPES, "employment_type")
    if "contract_type" in data and data["contract_type"] is not None:
        out["contract_type"] = _choice(data["contract_type"], CONTRACT_TYPES, "contract_type")
    if "salary_type" in data and data["salary_type"] is not None:
        out["salary_type"] = _choice(data["salary_type"], SALARY_TYPES, "salary_type")
    if "tax_table" in data and data["tax_table"] is not None:
        out["tax_table"] = _choice(data["tax_table"], TAX_TABLES, "tax_table")
    for key in ("tax_credit", "is_dga"):
        if key in data and data[key] is not None:
            out[key] = bool(data[key])

    for key in ("monthly_salary", "hourly_rate", "working_hours_per_week", "holiday_allowance_rate"):
        if key in data:
            out[key] = _decimal(data, key)

    def merged(key: str, default: Any = None) -> Any:
        if key in out:
            return out[key]
        return getattr(current, key) if current is not None else default

    hours = merged("working_hours_per_week", Decimal("40"))
    if hours is None or hours < 0 or hours > 60:
        raise ValidationFailed("working_hours_per_week must be between 0 and 60", details={"field": "working_hours_per_week"})
    if not partial:
        out["working_hours_per_week"] = hours

    salary_type = merged("salary_type", "monthly")
    if salary_type == "monthly":
        amount = merged("monthly_salary")
        if amount is None or amount <= 0:
            raise ValidationFailed("monthly_salary must be positive", details={"field": "monthly_salary"})
    else:
        amount = merged("hourly_rate")
        if amount is None or amount <= 0:
            raise ValidationFailed("hourly_rate must be positive", details={"field": "hourly_rate"})

    rate = merged("holiday_allowance_rate", Decimal("0.0833"))
    if rate is None:
        out["holiday_allowance_rate"] = Decimal("0.0833")
    elif rate < 0 or rate > 1:
        raise ValidationFailed("holiday_allowance_rate must be a fraction", details={"field": "holiday_allowance_rate"})

    start, end = merged("start_date"), merged("end_date")
    if start and end and end < start:
        raise ValidationFailed("end_date precedes start_date", details={"field": "end_date"})
    return out


def employee_to_dict(emp: Employee) -> dict[str, Any]:
    def dec(v: Optional[Decimal]) -> Optional[str]:
        return None if v is None else str(v)

    return {
        "id": emp.id,
        "company_id": emp.company_id,
        "user_id": emp.user_id,
        "employee_number": emp.employee_number,
        "first_name": emp.first_name,
        "last_name": emp.last_name,
        "full_name": emp.full_name,
        "email": emp.email or "",
        "phone": emp.phone or "",
        "bsn": display_bsn(emp.bsn),
        "iban": emp.iban or "",
        "date_of_birth": emp.date_of_birth.isoformat() if emp.date_of_birth else None,
        "start_date": emp.start_date.isoformat() if emp.start_date else None,
        "end_date": emp.end_date.isoformat() if emp.end_date else None,
        "position": emp.position or "",
        "department": emp.department or "",
        "employment_type": emp.employment_type,
        "contract_type": emp.contract_type,
        "working_hours_per_week": dec(emp.working_hours_per_week),
        "salary_type": emp.salary_type,
        "monthly_salary": dec(emp.monthly_salary),
        "hourly_rate": dec(emp.hourly_rate),
        "holiday_allowance_rate": dec(emp.holiday_allowance_rate),
        "tax_table": emp.tax_table,
        "tax_credit": bool(emp.tax_credit),
        "is_dga": bool(emp.is_dga),
        "is_active": bool(emp.is_active),
    }


def count_active(db: Session, company_id: int) -> int:
    return db.query(Employee).filter(Employee.company_id == company_id, Employee.is_active.is_(True)).count()


def create_employee(db: Session, company_id: int, data: dict[str, Any], *, access: subs.AccessInfo) -> Employee:
    subs.ensure_feature(access, "employees")
    subs.ensure_employee_capacity(access, count_active(db, company_id))
    fields = clean_employee_fields(data)
    number = str(data.get("employee_number") or "").strip().upper() or next_employee_number(db, company_id)
    emp = Employee(company_id=company_id, employee_number=number, is_active=True, **fields)
    db.add(emp)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise Conflict(f"employee number {number} is already used", code="employee_number_taken")
    logger.info("employee created", extra={"event": "employee_created", "company_id": company_id})
    return emp


def get_employee(db: Session, company_id: int, employee_id: int) -> Employee:
    emp = db.get(Employee, employee_id)
    # Another tenant's employee is reported as missing, not forbidden
    if emp is None or emp.company_id != company_id:
        raise NotFound("employee not found")
    return emp


def find_for_user(db: Session, company_id: int, user_id: int) -> Optional[Employee]:
    return (
        db.query(Employee)
        .filter(Employee.company_id == company_id, Employee.user_id == user_id)
        .order_by(Employee.id)
        .first()
    )


def update_employee(db: Session, emp: Employee, data: dict[str, Any]) -> Employee:
    fields = clean_employee_fields(data, current=emp)
    for key, value in fields.items():
        setattr(emp, key, value)
    db.commit()
    return emp


def toggle_status(db: Session, emp: Employee, *, access: subs.AccessInfo, today: Optional[dt.date] = None) -> Employee:
    """Deactivating sets ``end_date`` (today unless already earlier); re-activating clears
    it and counts against the plan's employee limit."""
    today = today or dt.date.today()
    if emp.is_active:
        emp.is_active = False
        if emp.end_date is None or emp.end_date > today:
            emp.end_date = max(today, emp.start_date)
    else:
        subs.ensure_employee_capacity(access, count_active(db, emp.company_id))
        emp.is_active = True
        emp.end_date = None
    db.commit()
    return emp


def link_user(db: Session, emp: Employee, user_id: Optional[int]) -> Employee:
    if user_id is not None:
        other = find_for_user(db, emp.company_id, user_id)
        if other is not None and other.id != emp.id:
            raise Conflict("user is already linked to another employee", code="user_already_linked")
    emp.user_id = user_id
    db.commit()
    return emp


def list_employees(db: Session, company_id: int, *, active: Optional[bool] = None) -> list[Employee]:
    q = db.query(Employee).filter(Employee.company_id == company_id)
    if active is not None:
        q = q.filter(Employee.is_active.is_(bool(active)))
    return q.order_by(Employee.employee_number, Employee.id).all()


def page_employees(
    db: Session,
    company_id: int,
    *,
    limit: int = 50,
    cursor: Optional[str] = None,
    active: Optional[bool] = None,
) -> dict[str, Any]:
    """Keyset page ordered by id; ``next_cursor`` is None on the last page."""
    limit = max(1, min(int(limit), 200))
    q = db.query(Employee).filter(Employee.company_id == company_id)
    if active is not None:
        q = q.filter(Employee.is_active.is_(bool(active)))
    if cursor:
        try:
            after = int(decode_cursor(cursor)["id"])
        except (ValueError, KeyError, TypeError):
            raise ValidationFailed("invalid cursor", details={"field": "cursor"})
        q = q.filter(Employee.id > after)
    rows = q.order_by(Employee.id).limit(limit + 1).all()
    page, has_more = split_page(rows, limit)
    return {
        "items": [employee_to_dict(e) for e in page],
        "next_cursor": encode_cursor({"id": page[-1].id}) if has_more and page else None,
    }
