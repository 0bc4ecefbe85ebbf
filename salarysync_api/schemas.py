from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool
    status: Optional[str] = None
    databases: dict[str, Any] = Field(default_factory=dict)


class SimpleOkResponse(BaseModel):
    ok: bool = True


class ErrorResponse(BaseModel):
    ok: bool = False
    error: str
    code: Optional[str] = None
    request_id: Optional[str] = None


# ------------------------------
# Auth
# ------------------------------


class CompanyFields(BaseModel):
    name: Optional[str] = None
    kvk_number: Optional[str] = None
    loonheffingennummer: Optional[str] = None
    industry: Optional[str] = None
    address: Optional[str] = None
    postal_code: Optional[str] = None
    city: Optional[str] = None
    awf_rate_class: Optional[Literal["low", "high"]] = None
    aof_rate_class: Optional[Literal["low", "high"]] = None


class CompanyCreateRequest(CompanyFields):
    name: str = Field(..., min_length=1, max_length=200)


class RegisterRequest(BaseModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=200)
    name: str = Field(..., max_length=200)
    company: CompanyCreateRequest


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenRequest(BaseModel):
    token: str


class EmailRequest(BaseModel):
    email: str


class PasswordResetConfirm(BaseModel):
    token: str
    password: str


class SessionResponse(BaseModel):
    ok: bool = True
    token: str
    user: dict[str, Any]


class MeResponse(BaseModel):
    ok: bool = True
    user: dict[str, Any]
    company: Optional[dict[str, Any]] = None
    role: Optional[str] = None
    permissions: list[str] = Field(default_factory=list)
    access: Optional[dict[str, Any]] = None
    memberships: list[dict[str, Any]] = Field(default_factory=list)


# ------------------------------
# Companies
# ------------------------------


class SwitchCompanyRequest(BaseModel):
    company_id: int


class MemberAddRequest(BaseModel):
    email: str
    role: Literal["owner", "admin", "manager", "employee", "viewer"] = "employee"
    name: str = ""


# ------------------------------
# Employees
# ------------------------------


class EmployeeFields(BaseModel):
    first_name: Optional[str] = Field(None, max_length=120)
    last_name: Optional[str] = Field(None, max_length=120)
    email: Optional[str] = None
    phone: Optional[str] = None
    bsn: Optional[str] = None
    iban: Optional[str] = None
    date_of_birth: Optional[dt.date] = None
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None
    position: Optional[str] = None
    department: Optional[str] = None
    employment_type: Optional[str] = None
    contract_type: Optional[str] = None
    working_hours_per_week: Optional[Decimal] = None
    salary_type: Optional[str] = None
    monthly_salary: Optional[Decimal] = None
    hourly_rate: Optional[Decimal] = None
    holiday_allowance_rate: Optional[Decimal] = None
    tax_table: Optional[str] = None
    tax_credit: Optional[bool] = None
    is_dga: Optional[bool] = None


class EmployeeCreateRequest(EmployeeFields):
    first_name: str = Field(..., min_length=1, max_length=120)
    last_name: str = Field(..., min_length=1, max_length=120)
    start_date: dt.date
    employee_number: Optional[str] = Field(None, max_length=20)


class EmployeeUpdateRequest(EmployeeFields):
    user_id: Optional[int] = None


# ------------------------------
# Billing / trial
# ------------------------------


class CheckoutRequest(BaseModel):
    plan_id: int


class TrialExtendRequest(BaseModel):
    days: Optional[int] = Field(None, ge=1, le=90)


# ------------------------------
# Payroll
# ------------------------------


class PayrollInput(BaseModel):
    hours_worked: Optional[Decimal] = Field(None, ge=0)
    overtime_hours: Optional[Decimal] = Field(None, ge=0)
    bonus: Optional[Decimal] = Field(None, ge=0)


class PayrollRunRequest(BaseModel):
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    employee_ids: Optional[list[int]] = None
    inputs: dict[int, PayrollInput] = Field(default_factory=dict)
    method: Literal["calendar", "working"] = "calendar"


class PayrollPreviewRequest(PayrollInput):
    employee_id: int
    year: int = Field(..., ge=2000, le=2100)
    month: int = Field(..., ge=1, le=12)
    method: Literal["calendar", "working"] = "calendar"


# ------------------------------
# Admin
# ------------------------------


class AdminLoginRequest(BaseModel):
    password: str
