from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from app.domain.errors import ValidationError
from app.domain.geo import validate_coordinates
from app.domain.models import LocationSample, as_utc
from app.tracking.session_store import TrackingSessionStore
from app.tracking.throttle import LocationThrottle

logger = logging.getLogger(__name__)


class LocationSink(Protocol):
    def post_location(self, order_id: str, sample: LocationSample) -> Any: ...


class ForegroundTracker:
    """Owns the tracking session while the app is in the foreground."""

    def __init__(
        self,
        store: TrackingSessionStore,
        sink: LocationSink,
        throttle: LocationThrottle | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._throttle = throttle or LocationThrottle()

    @property
    def active_order_id(self) -> str | None:
        return self._store.get_order_id()

    def start(self, order_id: str) -> None:
        current = self._store.get_order_id()
        if current == order_id:
            return
        if current is not None:
            logger.info("stopping tracking of order %s before starting %s", current, order_id)
            self.stop()
        self._store.set_order_id(order_id)
        logger.info("tracking started for order %s", order_id)

    def stop(self) -> None:
        self._store.clear()
        self._throttle.reset()

    def capture(self, sample: LocationSample) -> bool:
        """One-shot capture; returns whether the sample was sent."""
        order_id = self._store.get_order_id()
        if order_id is None:
            return False
        validate_coordinates(sample.latitude, sample.longitude)
        if not self._throttle.offer(sample):
            return False
        self._sink.post_location(order_id, sample)
        return True


class BackgroundLocationWorker:
    """Handles batches of OS-delivered samples using only the persisted session."""

    def __init__(
        self,
        store: TrackingSessionStore,
        sink: LocationSink,
        throttle: LocationThrottle | None = None,
    ) -> None:
        self._store = store
        self._sink = sink
        self._throttle = throttle or LocationThrottle()

    def handle(self, samples: Iterable[LocationSample]) -> int:
        order_id = self._store.get_order_id()
        if order_id is None:
            return 0
        sent = 0
        for sample in sorted(samples, key=lambda item: as_utc(item.ts)):
            try:
                validate_coordinates(sample.latitude, sample.longitude)
            except ValidationError:
                logger.warning("dropping out-of-range sample for order %s", order_id)
                continue
            if not self._throttle.offer(sample):
                continue
            try:
                self._sink.post_location(order_id, sample)
            except Exception:
                # Lost samples are acceptable; the next batch carries on.
                logger.exception("failed to send background location for order %s", order_id)
                continue
            sent += 1
        return sent
