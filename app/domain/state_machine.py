from __future__ import annotations

from enum import StrEnum


class OrderStatus(StrEnum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    ACTIVATED = "activated"
    IN_PROGRESS = "in_progress"
    IN_TRANSIT = "in_transit"
    ARRIVED = "arrived"
    LOADING = "loading"
    LOADED = "loaded"
    UNLOADING = "unloading"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[OrderStatus] = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

ALLOWED_TRANSITIONS: dict[OrderStatus, set[OrderStatus]] = {
    OrderStatus.PENDING: {OrderStatus.ASSIGNED, OrderStatus.CANCELLED},
    OrderStatus.ASSIGNED: {OrderStatus.ACTIVATED, OrderStatus.CANCELLED},
    OrderStatus.ACTIVATED: {OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED},
    OrderStatus.IN_PROGRESS: {OrderStatus.IN_TRANSIT, OrderStatus.CANCELLED},
    OrderStatus.IN_TRANSIT: {OrderStatus.ARRIVED, OrderStatus.CANCELLED},
    OrderStatus.ARRIVED: {OrderStatus.LOADING, OrderStatus.CANCELLED},
    OrderStatus.LOADING: {OrderStatus.LOADED, OrderStatus.CANCELLED},
    OrderStatus.LOADED: {OrderStatus.UNLOADING, OrderStatus.CANCELLED},
    OrderStatus.UNLOADING: {OrderStatus.COMPLETED, OrderStatus.CANCELLED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.CANCELLED: set(),
}

# Statuses a driver reaches only through activation or QR scans.
SCAN_DRIVEN_STATUSES: frozenset[OrderStatus] = frozenset(
    {OrderStatus.ASSIGNED, OrderStatus.ACTIVATED, OrderStatus.IN_PROGRESS}
)


def can_transition(source: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(source, set())


def allowed_transitions(source: OrderStatus) -> list[OrderStatus]:
    return sorted(ALLOWED_TRANSITIONS.get(source, set()), key=list(OrderStatus).index)


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES
