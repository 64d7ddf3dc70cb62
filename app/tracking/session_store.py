"""Durable per-device tracking session.

The foreground tracker and the background worker never share memory. They
coordinate only through the ``trackingOrderId`` entry kept here, because the
background worker may run in another process.
"""

from __future__ import annotations

import logging
from typing import Protocol

from app.infra import redis_state

logger = logging.getLogger(__name__)

TRACKING_ORDER_KEY = "trackingOrderId"


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | bytes | None: ...

    def set(self, key: str, value: str) -> object: ...

    def delete(self, *keys: str) -> object: ...


class TrackingSessionStore:
    """Durable per-device record of the order currently being tracked."""

    def __init__(self, device_id: str, store: KeyValueStore | None = None) -> None:
        if not device_id:
            raise ValueError("device_id is required")
        self.device_id = device_id
        self._store = store if store is not None else redis_state.get_redis()

    @property
    def _key(self) -> str:
        return redis_state.tracking_session_key(self.device_id, TRACKING_ORDER_KEY)

    def get_order_id(self) -> str | None:
        raw = self._store.get(self._key)
        if isinstance(raw, bytes):
            raw = raw.decode()
        return raw or None

    def set_order_id(self, order_id: str) -> None:
        self._store.set(self._key, order_id)
        logger.debug("device %s now tracking order %s", self.device_id, order_id)

    def clear(self) -> None:
        self._store.delete(self._key)
