from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class UserRole(StrEnum):
    ADMIN = "admin"
    DISPATCHER = "dispatcher"
    DRIVER = "driver"


PERM_WILDCARD = "*"
PERM_ORDERS_READ = "orders.read"
PERM_ORDERS_WRITE = "orders.write"
PERM_QR_SIGN = "qr.sign"
PERM_QR_SCAN = "qr.scan"
PERM_LOAD_ACTIVATE = "load.activate"
PERM_LOCATION_REPORT = "location.report"
PERM_DRIVERS_MANAGE = "drivers.manage"
PERM_IDENTITY_WRITE = "identity.write"

ROLE_PERMISSIONS: dict[UserRole, list[str]] = {
    UserRole.ADMIN: [PERM_WILDCARD],
    UserRole.DISPATCHER: [
        PERM_ORDERS_READ,
        PERM_ORDERS_WRITE,
        PERM_QR_SIGN,
        PERM_QR_SCAN,
        PERM_DRIVERS_MANAGE,
    ],
    UserRole.DRIVER: [
        PERM_ORDERS_READ,
        PERM_QR_SCAN,
        PERM_LOAD_ACTIVATE,
        PERM_LOCATION_REPORT,
    ],
}


def permissions_for_role(role: UserRole | str) -> list[str]:
    return list(ROLE_PERMISSIONS.get(UserRole(role), []))


def has_permission(claims: dict[str, Any], permission: str) -> bool:
    permissions = claims.get("permissions", [])
    if not isinstance(permissions, list):
        return False
    return permission in permissions or PERM_WILDCARD in permissions


@dataclass(frozen=True)
class Principal:
    """The caller of a request, resolved once from the bearer token and the users table."""

    user_id: str
    tenant_id: str
    role: UserRole

    @property
    def permissions(self) -> list[str]:
        return permissions_for_role(self.role)

    def has(self, permission: str) -> bool:
        perms = self.permissions
        return permission in perms or PERM_WILDCARD in perms

    @property
    def is_driver(self) -> bool:
        return self.role == UserRole.DRIVER

    def is_admin_or_dispatcher(self) -> bool:
        return self.role in {UserRole.ADMIN, UserRole.DISPATCHER}

    def can_activate(self) -> bool:
        # Admins hold the wildcard but activation is a driver-only act.
        return self.is_driver and self.has(PERM_LOAD_ACTIVATE)

    def can_scan(self) -> bool:
        return self.has(PERM_QR_SCAN)

    def can_manage_orders(self) -> bool:
        return self.has(PERM_ORDERS_WRITE)

    def can_report_location(self) -> bool:
        return self.is_driver and self.has(PERM_LOCATION_REPORT)

    def same_tenant(self, tenant_id: str) -> bool:
        return self.tenant_id == tenant_id
