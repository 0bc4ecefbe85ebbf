from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, Numeric, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import PayrollBase, utc_now

_MONEY = Numeric(12, 2)


class PayrollRun(PayrollBase):
    __tablename__ = "payroll_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="draft")  # draft/finalized
    employee_count: Mapped[int] = mapped_column(Integer, default=0)
    total_gross: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    total_employee_contributions: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    total_employer_contributions: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    total_holiday_allowance: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    created_by: Mapped[Optional[int]] = mapped_column(Integer)
    finalized_by: Mapped[Optional[int]] = mapped_column(Integer)
    finalized_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    records: Mapped[list["PayrollRecord"]] = relationship(back_populates="run")

    __table_args__ = (
        UniqueConstraint("company_id", "year", "month", name="uq_payroll_run_company_period"),
    )

    @property
    def period(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


class PayrollRecord(PayrollBase):
    __tablename__ = "payroll_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("payroll_runs.id"), nullable=False, index=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    employee_number: Mapped[str] = mapped_column(String(20), default="")
    employee_name: Mapped[str] = mapped_column(String(240), default="")
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)  # YYYY-MM
    salary_type: Mapped[str] = mapped_column(String(10), default="monthly")
    hours_worked: Mapped[Optional[Decimal]] = mapped_column(Numeric(7, 2))
    overtime_hours: Mapped[Optional[Decimal]] = mapped_column(Numeric(7, 2))
    pro_rata_factor: Mapped[Decimal] = mapped_column(Numeric(6, 4), default=Decimal("1"))
    base_pay: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    overtime_pay: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    bonus: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    gross_salary: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    aow_contribution: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    wlz_contribution: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    ww_contribution: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    wia_contribution: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    total_employee_contributions: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    employer_aow: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    employer_wlz: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    employer_ww: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    employer_wia: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    employer_awf: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    employer_aof: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    employer_zvw: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    total_employer_contributions: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    holiday_allowance: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    gross_after_contributions: Mapped[Decimal] = mapped_column(_MONEY, default=Decimal("0"))
    minimum_wage_monthly: Mapped[Optional[Decimal]] = mapped_column(_MONEY)
    below_minimum_wage: Mapped[bool] = mapped_column(Boolean, default=False)
    status: Mapped[str] = mapped_column(String(20), default="processed")  # processed/finalized
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    run: Mapped[PayrollRun] = relationship(back_populates="records")

    __table_args__ = (
        UniqueConstraint("company_id", "employee_id", "year", "month", name="uq_payroll_record_employee_period"),
        Index("ix_payroll_records_company_period", "company_id", "year", "month"),
    )
