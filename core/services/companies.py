from __future__ import annotations

import datetime as dt
import logging
import secrets
from typing import Any, Optional

from sqlalchemy.orm import Session

from core.auth import new_opaque_token
from core.errors import Conflict, NotFound, PermissionDenied, ValidationFailed
from core.models import Company, User, UserCompany, utc_now
from core.utils.dutch import (
    is_valid_email,
    is_valid_kvk,
    is_valid_loonheffingennummer,
    is_valid_postal_code,
    normalize_email,
    normalize_postal_code,
)

from . import mail
from .auth import hash_password
from . import permissions as perms
from . import subscriptions as subs

logger = logging.getLogger("salarysync.companies")

_EDITABLE = ("name", "kvk_number", "loonheffingennummer", "industry", "address", "postal_code", "city", "awf_rate_class", "aof_rate_class")
_RATE_CLASSES = ("low", "high")


def clean_company_fields(data: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    """Validate and normalize company profile fields.

    Unknown keys are dropped. Empty optional identifiers are stored as NULL.
    """
    out: dict[str, Any] = {}
    for key in _EDITABLE:
        if key not in data or data[key] is None:
            continue
        out[key] = str(data[key]).strip()
    if not partial and not out.get("name"):
        raise ValidationFailed("company name is required", details={"field": "name"})
    if "name" in out and not out["name"]:
        raise ValidationFailed("company name cannot be empty", details={"field": "name"})
    if out.get("kvk_number"):
        if not is_valid_kvk(out["kvk_number"]):
            raise ValidationFailed("KvK number must be 8 digits", details={"field": "kvk_number"})
    elif "kvk_number" in out:
        out["kvk_number"] = None
    if out.get("loonheffingennummer"):
        out["loonheffingennummer"] = out["loonheffingennummer"].upper()
        if not is_valid_loonheffingennummer(out["loonheffingennummer"]):
            raise ValidationFailed("invalid loonheffingennummer", details={"field": "loonheffingennummer"})
    elif "loonheffingennummer" in out:
        out["loonheffingennummer"] = None
    if out.get("postal_code"):
        if not is_valid_postal_code(out["postal_code"]):
            raise ValidationFailed("invalid Dutch postal code", details={"field": "postal_code"})
        out["postal_code"] = normalize_postal_code(out["postal_code"])
    for key in ("awf_rate_class", "aof_rate_class"):
        if key in out:
            out[key] = out[key].lower()
            if out[key] not in _RATE_CLASSES:
                raise ValidationFailed(f"{key} must be low or high", details={"field": key})
    return out


def company_to_dict(company: Company) -> dict[str, Any]:
    return {
        "id": company.id,
        "name": company.name,
        "kvk_number": company.kvk_number,
        "loonheffingennummer": company.loonheffingennummer,
        "industry": company.industry or "",
        "address": company.address or "",
        "postal_code": company.postal_code or "",
        "city": company.city or "",
        "country": company.country or "NL",
        "awf_rate_class": company.awf_rate_class or "low",
        "aof_rate_class": company.aof_rate_class or "low",
        "is_active": bool(company.is_active),
    }


def membership_to_dict(m: UserCompany, *, active_company_id: Optional[int] = None) -> dict[str, Any]:
    return {
        "company_id": m.company_id,
        "company_name": m.company.name if m.company else "",
        "role": m.role,
        "is_active_company": active_company_id is not None and m.company_id == active_company_id,
        "permissions": perms.permissions_for(m.role),
    }


def list_memberships(db: Session, user: User) -> list[UserCompany]:
    return (
        db.query(UserCompany)
        .join(Company, Company.id == UserCompany.company_id)
        .filter(
            UserCompany.user_id == user.id,
            UserCompany.is_active.is_(True),
            Company.is_active.is_(True),
        )
        .order_by(UserCompany.id)
        .all()
    )


def get_membership(db: Session, user_id: int, company_id: int) -> Optional[UserCompany]:
    """The active membership of a user in an active company, if any."""
    return (
        db.query(UserCompany)
        .join(Company, Company.id == UserCompany.company_id)
        .filter(
            UserCompany.user_id == user_id,
            UserCompany.company_id == company_id,
            UserCompany.is_active.is_(True),
            Company.is_active.is_(True),
        )
        .first()
    )


def resolve_active_membership(db: Session, user: User) -> Optional[UserCompany]:
    """Membership for the user's active company, repairing a stale pointer.

    When the stored company has no active membership the user moves to their first
    active membership, or to none.
    """
    if user.active_company_id is not None:
        current = get_membership(db, user.id, user.active_company_id)
        if current is not None:
            return current
    memberships = list_memberships(db, user)
    fallback = memberships[0] if memberships else None
    new_id = fallback.company_id if fallback else None
    if user.active_company_id != new_id:
        logger.info(
            "active company repaired",
            extra={"event": "active_company_repaired", "user_id": user.id, "company_id": new_id},
        )
        user.active_company_id = new_id
        db.commit()
    return fallback


def create_company(db: Session, owner: User, data: dict[str, Any], *, now: Optional[dt.datetime] = None) -> Company:
    """New tenant owned by ``owner``: owner membership, trial, and it becomes active."""
    fields = clean_company_fields(data)
    company = Company(**fields)
    db.add(company)
    db.flush()
    db.add(UserCompany(user_id=owner.id, company_id=company.id, role="owner", is_active=True))
    subs.start_trial(db, company, now=now)
    owner.active_company_id = company.id
    db.commit()
    logger.info("company created", extra={"event": "company_created", "company_id": company.id, "user_id": owner.id})
    return company


def switch_company(db: Session, user: User, company_id: int) -> UserCompany:
    membership = get_membership(db, user.id, company_id)
    if membership is None:
        raise PermissionDenied("no active membership for this company", code="not_a_member")
    user.active_company_id = company_id
    db.commit()
    return membership


def update_company(db: Session, company: Company, data: dict[str, Any]) -> Company:
    fields = clean_company_fields(data, partial=True)
    for key, value in fields.items():
        setattr(company, key, value)
    db.commit()
    return company


def add_member(
    db: Session,
    company: Company,
    *,
    actor_role: str,
    email: str,
    role: str,
    name: str = "",
) -> tuple[UserCompany, Optional[str]]:
    """Add (or re-activate) a member by e-mail.

    Unknown addresses get an account without a usable password plus a one-hour
    invitation token that works like a password reset. Returns the membership and
    that token (None for existing users).
    """
    email = normalize_email(email)
    if not is_valid_email(email):
        raise ValidationFailed("invalid e-mail address", details={"field": "email"})
    if not perms.is_valid_role(role):
        raise ValidationFailed(f"unknown role '{role}'", details={"field": "role"})
    if not perms.can_assign_role(actor_role, role):
        raise PermissionDenied(f"role '{actor_role}' cannot grant '{role}'")

    invite_token: Optional[str] = None
    user = db.query(User).filter(User.email == email).first()
    if user is None:
        raw, hashed = new_opaque_token()
        user = User(
            email=email,
            name=(name or "").strip(),
            password_hash=hash_password(secrets.token_urlsafe(24)),
            reset_token_hash=hashed,
            reset_token_expires_at=utc_now() + dt.timedelta(hours=1),
        )
        db.add(user)
        db.flush()
        invite_token = raw

    membership = (
        db.query(UserCompany)
        .filter(UserCompany.user_id == user.id, UserCompany.company_id == company.id)
        .first()
    )
    if membership is not None and membership.is_active:
        raise Conflict("user is already a member of this company", code="already_member")
    if membership is None:
        membership = UserCompany(user_id=user.id, company_id=company.id, role=role, is_active=True)
        db.add(membership)
    else:
        membership.role = role
        membership.is_active = True
    if user.active_company_id is None:
        user.active_company_id = company.id
    db.commit()
    if invite_token:
        mail.send_invitation(email, company.name, invite_token)
    logger.info("member added", extra={"event": "member_added", "company_id": company.id, "user_id": user.id})
    return membership, invite_token


def deactivate_member(db: Session, company: Company, *, actor: User, actor_role: str, user_id: int) -> UserCompany:
    membership = (
        db.query(UserCompany)
        .filter(UserCompany.user_id == user_id, UserCompany.company_id == company.id, UserCompany.is_active.is_(True))
        .first()
    )
    if membership is None:
        raise NotFound("membership not found")
    if user_id != actor.id and not perms.can_assign_role(actor_role, membership.role):
        raise PermissionDenied(f"role '{actor_role}' cannot remove a '{membership.role}'")
    if membership.role == "owner":
        owners = (
            db.query(UserCompany)
            .filter(UserCompany.company_id == company.id, UserCompany.role == "owner", UserCompany.is_active.is_(True))
            .count()
        )
        if owners <= 1:
            raise Conflict("a company must keep at least one owner", code="last_owner")
    membership.is_active = False
    db.commit()
    # The member's active company is repaired on their next request
    logger.info("member removed", extra={"event": "member_removed", "company_id": company.id, "user_id": user_id})
    return membership
