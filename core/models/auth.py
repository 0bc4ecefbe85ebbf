from __future__ import annotations

import datetime as dt
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import AuthBase, utc_now


class User(AuthBase):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)  # stored lowercase
    name: Mapped[str] = mapped_column(String(200), default="")
    password_hash: Mapped[str] = mapped_column(String(255), default="")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    email_verified_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    verification_token_hash: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    reset_token_hash: Mapped[Optional[str]] = mapped_column(String(64), index=True)
    reset_token_expires_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    # Preferred tenant; only honoured while a matching active membership exists
    active_company_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    # Bumped to revoke every outstanding session token
    session_version: Mapped[int] = mapped_column(Integer, default=1)
    last_login_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    memberships: Mapped[list["UserCompany"]] = relationship(back_populates="user", cascade="all, delete-orphan")


class Company(AuthBase):
    __tablename__ = "companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    kvk_number: Mapped[Optional[str]] = mapped_column(String(8), index=True)
    loonheffingennummer: Mapped[Optional[str]] = mapped_column(String(20))
    industry: Mapped[str] = mapped_column(String(120), default="")
    address: Mapped[str] = mapped_column(String(255), default="")
    postal_code: Mapped[str] = mapped_column(String(10), default="")
    city: Mapped[str] = mapped_column(String(120), default="")
    country: Mapped[str] = mapped_column(String(2), default="NL")
    awf_rate_class: Mapped[str] = mapped_column(String(10), default="low")  # low/high
    aof_rate_class: Mapped[str] = mapped_column(String(10), default="low")  # low/high
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    memberships: Mapped[list["UserCompany"]] = relationship(back_populates="company", cascade="all, delete-orphan")
    subscription: Mapped[Optional["Subscription"]] = relationship(back_populates="company", uselist=False)


class UserCompany(AuthBase):
    __tablename__ = "user_companies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, index=True)
    role: Mapped[str] = mapped_column(String(20), default="employee")
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    user: Mapped[User] = relationship(back_populates="memberships")
    company: Mapped[Company] = relationship(back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("user_id", "company_id", name="uq_user_company"),
    )


class Plan(AuthBase):
    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(String(255), default="")
    price_cents: Mapped[int] = mapped_column(Integer, default=0)
    currency: Mapped[str] = mapped_column(String(3), default="EUR")
    interval: Mapped[str] = mapped_column(String(10), default="month")
    max_employees: Mapped[Optional[int]] = mapped_column(Integer)  # NULL = unlimited
    max_payrolls: Mapped[Optional[int]] = mapped_column(Integer)  # runs per calendar year, NULL = unlimited
    features_json: Mapped[str] = mapped_column(Text, default="[]")
    processor_price_id: Mapped[Optional[str]] = mapped_column(String(120), index=True)
    is_trial: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class Subscription(AuthBase):
    __tablename__ = "subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id"), nullable=False, unique=True)
    plan_id: Mapped[int] = mapped_column(ForeignKey("plans.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="trialing")
    processor_customer_id: Mapped[Optional[str]] = mapped_column(String(120), index=True)
    processor_subscription_id: Mapped[Optional[str]] = mapped_column(String(120), unique=True)
    current_period_start: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    current_period_end: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    trial_start: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    trial_end: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    trial_extensions: Mapped[int] = mapped_column(Integer, default=0)
    converted_from_trial: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_converted_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    company: Mapped[Company] = relationship(back_populates="subscription")
    plan: Mapped[Plan] = relationship()

    __table_args__ = (
        Index("ix_subscriptions_status_trial_end", "status", "trial_end"),
    )


class ProcessorEvent(AuthBase):
    """Payment processor webhook events already applied (dedupe by event id)."""

    __tablename__ = "processor_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(80), default="")
    company_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    result: Mapped[str] = mapped_column(String(40), default="applied")
    received_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)


class IdempotencyRecord(AuthBase):
    __tablename__ = "idempotency_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(128), nullable=False)
    method: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(255), nullable=False)
    body_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status_code: Mapped[int] = mapped_column(Integer, default=200)
    response_json: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now)

    __table_args__ = (
        UniqueConstraint("company_id", "user_id", "key", "method", "path", name="uq_idem_scope_key"),
        Index("ix_idem_created_at", "created_at"),
    )


class AuditEvent(AuthBase):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=utc_now, index=True)
    actor: Mapped[str] = mapped_column(String(120))  # e.g. "admin", "user:12", "processor"
    company_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(80))
    resource: Mapped[str] = mapped_column(String(255), default="")
    ip: Mapped[str] = mapped_column(String(64), default="")
    ua: Mapped[str] = mapped_column(String(255), default="")
    result: Mapped[str] = mapped_column(String(40), default="ok")  # ok/fail/denied
    meta_json: Mapped[str] = mapped_column(Text, default="")

    __table_args__ = (
        Index("ix_audit_company_ts", "company_id", "ts"),
    )
