from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy.orm import Session

from core.db import init_databases, session_scope
from core.models import Company
from core.services import employees as employee_service
from core.services import plans as plan_service
from core.services import subscriptions as subs
from core.services import users as user_service

DEMO_EMAIL = "demo@salarysync.local"
DEMO_PASSWORD = "Demo-wachtwoord-1"

DEMO_EMPLOYEES = (
    {"first_name": "Sanne", "last_name": "de Vries", "salary_type": "monthly", "monthly_salary": Decimal("3850.00")},
    {"first_name": "Daan", "last_name": "Jansen", "salary_type": "monthly", "monthly_salary": Decimal("2900.00"),
     "working_hours_per_week": Decimal("32")},
    {"first_name": "Noor", "last_name": "Bakker", "salary_type": "hourly", "hourly_rate": Decimal("16.50"),
     "employment_type": "parttime", "working_hours_per_week": Decimal("24")},
)


def main() -> None:
    init_databases(auto_apply_ddl=True)
    with session_scope("auth") as auth_db, session_scope("hr") as hr_db:
        plan_service.seed_plans(auth_db)
        company = _seed_account(auth_db)
        if company is not None:
            _seed_employees(auth_db, hr_db, company)


def _seed_account(auth_db: Session) -> Company | None:
    existing = user_service.find_by_email(auth_db, DEMO_EMAIL)
    if existing:
        print(f"Demo user already exists: {existing.email} (id={existing.id})")
        return None
    user, token = user_service.register(
        auth_db,
        email=DEMO_EMAIL,
        password=DEMO_PASSWORD,
        name="Demo Eigenaar",
        company={"name": "Demo B.V.", "kvk_number": "12345678", "city": "Utrecht"},
    )
    user_service.verify_email(auth_db, token)
    company = auth_db.get(Company, user.active_company_id)
    print(f"Created user: {user.email} / {DEMO_PASSWORD}")
    print(f"Created company: {company.name} (id={company.id}) on a trial")
    return company


def _seed_employees(auth_db: Session, hr_db: Session, company: Company) -> None:
    access = subs.resolve_access(auth_db, company.id)
    start = dt.date.today().replace(day=1) - dt.timedelta(days=365)
    for data in DEMO_EMPLOYEES:
        emp = employee_service.create_employee(hr_db, company.id, {"start_date": start, **data}, access=access)
        print(f"Created employee {emp.employee_number}: {emp.first_name} {emp.last_name}")


if __name__ == "__main__":
    main()
