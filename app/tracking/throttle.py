from __future__ import annotations

from app.domain.geo import GeoPoint, calculate_distance_km
from app.domain.models import LocationSample, as_utc

DEFAULT_MIN_INTERVAL_SECONDS = 30.0
DEFAULT_MIN_DISTANCE_METERS = 25.0


class LocationThrottle:
    """Accepts a sample once enough time has passed or the device moved far enough."""

    def __init__(
        self,
        *,
        min_interval_seconds: float = DEFAULT_MIN_INTERVAL_SECONDS,
        min_distance_meters: float = DEFAULT_MIN_DISTANCE_METERS,
    ) -> None:
        if min_interval_seconds < 0 or min_distance_meters < 0:
            raise ValueError("throttle thresholds must not be negative")
        self.min_interval_seconds = min_interval_seconds
        self.min_distance_meters = min_distance_meters
        self._last: LocationSample | None = None

    @property
    def last_accepted(self) -> LocationSample | None:
        return self._last

    def reset(self) -> None:
        self._last = None

    def should_accept(self, sample: LocationSample) -> bool:
        if self._last is None:
            return True
        elapsed = (as_utc(sample.ts) - as_utc(self._last.ts)).total_seconds()
        if elapsed < 0:
            return False
        if elapsed >= self.min_interval_seconds:
            return True
        moved_m = 1000.0 * calculate_distance_km(
            GeoPoint(latitude=self._last.latitude, longitude=self._last.longitude),
            GeoPoint(latitude=sample.latitude, longitude=sample.longitude),
        )
        return moved_m >= self.min_distance_meters

    def offer(self, sample: LocationSample) -> bool:
        if not self.should_accept(sample):
            return False
        self._last = sample
        return True
