from __future__ import annotations

import pytest

from app.domain.permissions import (
    PERM_ORDERS_READ,
    PERM_ORDERS_WRITE,
    Principal,
    UserRole,
    has_permission,
    permissions_for_role,
)


def _principal(role: UserRole, tenant_id: str = "tenant-a") -> Principal:
    return Principal(user_id="user-1", tenant_id=tenant_id, role=role)


def test_admin_holds_wildcard_but_cannot_act_as_driver() -> None:
    admin = _principal(UserRole.ADMIN)
    assert admin.has(PERM_ORDERS_WRITE)
    assert admin.can_manage_orders()
    assert admin.can_scan()
    assert not admin.can_activate()
    assert not admin.can_report_location()


def test_dispatcher_manages_orders_only() -> None:
    dispatcher = _principal(UserRole.DISPATCHER)
    assert dispatcher.is_admin_or_dispatcher()
    assert dispatcher.can_manage_orders()
    assert not dispatcher.can_activate()


def test_driver_capabilities() -> None:
    driver = _principal(UserRole.DRIVER)
    assert driver.is_driver
    assert driver.can_scan()
    assert driver.can_activate()
    assert driver.can_report_location()
    assert not driver.can_manage_orders()
    assert not driver.is_admin_or_dispatcher()


def test_same_tenant() -> None:
    assert _principal(UserRole.DRIVER).same_tenant("tenant-a")
    assert not _principal(UserRole.DRIVER).same_tenant("tenant-b")


@pytest.mark.parametrize(
    ("claims", "expected"),
    [
        ({"permissions": ["*"]}, True),
        ({"permissions": [PERM_ORDERS_READ]}, True),
        ({"permissions": []}, False),
        ({"permissions": "orders.read"}, False),
        ({}, False),
    ],
)
def test_has_permission_from_claims(claims: dict[str, object], expected: bool) -> None:
    assert has_permission(claims, PERM_ORDERS_READ) is expected


def test_permissions_for_unknown_role_fail() -> None:
    assert permissions_for_role("driver") == permissions_for_role(UserRole.DRIVER)
    with pytest.raises(ValueError):
        permissions_for_role("pilot")
