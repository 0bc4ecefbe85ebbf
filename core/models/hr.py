from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, Date, DateTime, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .base import HRBase, utc_now


class Employee(HRBase):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # Lives in the auth database; no cross-database foreign key
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    employee_number: Mapped[str] = mapped_column(String(20), nullable=False)
    first_name: Mapped[str] = mapped_column(String(120), nullable=False)
    last_name: Mapped[str] = mapped_column(String(120), nullable=False)
    email: Mapped[str] = mapped_column(String(255), default="")
    phone: Mapped[str] = mapped_column(String(40), default="")
    bsn: Mapped[str] = mapped_column(String(255), default="")  # 'enc:<fernet>' or masked
    iban: Mapped[str] = mapped_column(String(34), default="")
    date_of_birth: Mapped[Optional[dt.date]] = mapped_column(Date)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    position: Mapped[str] = mapped_column(String(120), default="")
    department: Mapped[str] = mapped_column(String(120), default="")
    employment_type: Mapped[str] = mapped_column(String(20), default="fulltime")  # fulltime/parttime/flex
    contract_type: Mapped[str] = mapped_column(String(20), default="permanent")  # permanent/temporary/zero_hours
    working_hours_per_week: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("40"))
    salary_type: Mapped[str] = mapped_column(String(10), default="monthly")  # monthly/hourly
    monthly_salary: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    holiday_allowance_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), default=Decimal("0.0833"))
    tax_table: Mapped[str] = mapped_column(String(10), default="wit")  # wit/groen
    tax_credit: Mapped[bool] = mapped_column(Boolean, default=True)  # loonheffingskorting
    is_dga: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint("company_id", "employee_number", name="uq_employee_company_number"),
        Index("ix_employees_company_active", "company_id", "is_active"),
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()
