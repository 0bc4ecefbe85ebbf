from __future__ import annotations

from .base import AuthBase, HRBase, PayrollBase, as_utc, utc_now
from .auth import AuditEvent, Company, IdempotencyRecord, Plan, ProcessorEvent, Subscription, User, UserCompany
from .hr import Employee
from .payroll import PayrollRecord, PayrollRun

# Declarative base per database purpose
BASES = {
    "auth": AuthBase,
    "hr": HRBase,
    "payroll": PayrollBase,
}

__all__ = [
    "AuthBase",
    "HRBase",
    "PayrollBase",
    "BASES",
    "utc_now",
    "as_utc",
    "User",
    "Company",
    "UserCompany",
    "Plan",
    "Subscription",
    "ProcessorEvent",
    "IdempotencyRecord",
    "AuditEvent",
    "Employee",
    "PayrollRun",
    "PayrollRecord",
]
