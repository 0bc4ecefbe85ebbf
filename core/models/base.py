from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy.orm import DeclarativeBase


class AuthBase(DeclarativeBase):
    """Accounts, tenants, memberships and billing state."""


class HRBase(DeclarativeBase):
    """Employee master data."""


class PayrollBase(DeclarativeBase):
    """Payroll runs and per-employee records."""


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def as_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    """Normalize datetimes read back from backends that drop tzinfo (SQLite)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc)
