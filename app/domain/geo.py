"""Geography helpers.

Points are persisted as EWKT text, ``SRID=4326;POINT(lon lat)``. Reads accept the
same text with or without the SRID prefix, a ``{latitude, longitude}`` mapping
and a GeoJSON ``Point``.
"""

from __future__ import annotations

import math
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel

from app.domain.errors import ValidationError

EARTH_RADIUS_KM = 6371.0
SRID = 4326

_POINT_RE = re.compile(r"^POINT\s*\(\s*([-+\d.eE]+)\s+([-+\d.eE]+)\s*\)$", re.IGNORECASE)


class GeoPoint(BaseModel):
    latitude: float
    longitude: float


def is_valid_lat_lng(latitude: float, longitude: float) -> bool:
    return -90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0


def validate_coordinates(latitude: Any, longitude: Any) -> GeoPoint:
    if isinstance(latitude, bool) or isinstance(longitude, bool):
        raise ValidationError("latitude/longitude must be numbers")
    if not isinstance(latitude, int | float) or not isinstance(longitude, int | float):
        raise ValidationError("latitude/longitude must be numbers")
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise ValidationError("latitude/longitude must be finite")
    if not is_valid_lat_lng(latitude, longitude):
        raise ValidationError(
            f"coordinates out of range (lat -90..90, lng -180..180): lat={latitude}, lng={longitude}"
        )
    return GeoPoint(latitude=float(latitude), longitude=float(longitude))


def to_postgis_point(point: GeoPoint) -> str:
    checked = validate_coordinates(point.latitude, point.longitude)
    return f"SRID={SRID};POINT({checked.longitude} {checked.latitude})"


def _strip_srid(value: str) -> str:
    trimmed = value.strip()
    if ";" in trimmed:
        return trimmed.split(";", 1)[1].strip()
    return trimmed


def parse_postgis_point(value: str | GeoPoint | dict[str, Any]) -> GeoPoint:
    if isinstance(value, GeoPoint):
        return validate_coordinates(value.latitude, value.longitude)
    if isinstance(value, dict):
        return validate_coordinates(value.get("latitude"), value.get("longitude"))
    if not isinstance(value, str):
        raise ValidationError(f"unsupported point type: {type(value).__name__}")
    match = _POINT_RE.match(_strip_srid(value))
    if match is None:
        raise ValidationError(f"invalid POINT format: {value}")
    try:
        longitude = float(match.group(1))
        latitude = float(match.group(2))
    except ValueError as exc:
        raise ValidationError(f"invalid numeric coordinates: {value}") from exc
    return validate_coordinates(latitude, longitude)


def parse_location(value: Any) -> GeoPoint:
    if isinstance(value, str | GeoPoint):
        return parse_postgis_point(value)
    if isinstance(value, dict):
        if "latitude" in value and "longitude" in value:
            return validate_coordinates(value["latitude"], value["longitude"])
        if value.get("type") == "Point" and isinstance(value.get("coordinates"), list | tuple):
            coordinates = value["coordinates"]
            if len(coordinates) < 2:
                raise ValidationError("GeoJSON point needs [lng, lat]")
            return validate_coordinates(coordinates[1], coordinates[0])
    raise ValidationError(f"unsupported location format: {value!r}")


def calculate_distance_km(origin: GeoPoint, destination: GeoPoint) -> float:
    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(destination.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(destination.longitude - origin.longitude)
    a = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def calculate_eta(
    current: GeoPoint,
    destination: GeoPoint,
    average_speed_kmh: float = 60.0,
    now: datetime | None = None,
) -> datetime:
    if average_speed_kmh <= 0:
        raise ValidationError("average speed must be positive")
    start = now or datetime.now(UTC)
    hours = calculate_distance_km(current, destination) / average_speed_kmh
    return start + timedelta(hours=hours)
