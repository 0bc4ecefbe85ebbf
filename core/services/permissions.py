from __future__ import annotations

from core.errors import PermissionDenied

ROLE_HIERARCHY: dict[str, int] = {
    "owner": 5,
    "admin": 4,
    "manager": 3,
    "employee": 2,
    "viewer": 1,
}

ROLE_PERMISSIONS: dict[str, frozenset[str]] = {
    "owner": frozenset(
        {
            "company.manage",
            "users.manage",
            "employees.manage",
            "payroll.manage",
            "reports.view",
            "settings.manage",
            "billing.manage",
        }
    ),
    "admin": frozenset({"employees.manage", "payroll.manage", "reports.view", "settings.manage"}),
    "manager": frozenset({"employees.view", "employees.create", "payroll.view", "payroll.create", "reports.view"}),
    "employee": frozenset({"payroll.view_own", "profile.manage"}),
    "viewer": frozenset({"reports.view", "employees.view"}),
}


def is_valid_role(role: str) -> bool:
    return role in ROLE_HIERARCHY


def has_permission(role: str, permission: str) -> bool:
    """'<area>.manage' implies every other '<area>.*' permission."""
    granted = ROLE_PERMISSIONS.get(role, frozenset())
    if permission in granted:
        return True
    area = permission.split(".", 1)[0]
    return f"{area}.manage" in granted


def require_permission(role: str, permission: str) -> None:
    if not has_permission(role, permission):
        raise PermissionDenied(f"role '{role}' lacks {permission}", details={"permission": permission})


def role_at_least(role: str, minimum: str) -> bool:
    return ROLE_HIERARCHY.get(role, 0) >= ROLE_HIERARCHY.get(minimum, 99)


def can_assign_role(actor_role: str, target_role: str) -> bool:
    """Owners may grant any role; everyone else only roles strictly below their own."""
    if actor_role == "owner":
        return is_valid_role(target_role)
    return is_valid_role(target_role) and ROLE_HIERARCHY[target_role] < ROLE_HIERARCHY.get(actor_role, 0)


def can_view_employee(role: str, *, own_user_id: int, employee_user_id: int | None) -> bool:
    """Manager and above see every employee; employees only their own record."""
    if role_at_least(role, "manager") or has_permission(role, "employees.view"):
        return True
    return employee_user_id is not None and int(employee_user_id) == int(own_user_id)


def permissions_for(role: str) -> list[str]:
    return sorted(ROLE_PERMISSIONS.get(role, frozenset()))
