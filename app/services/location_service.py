from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.errors import AuthorizationError, ConflictError, NotAssignedError, NotFoundError
from app.domain.geo import parse_postgis_point, to_postgis_point, validate_coordinates
from app.domain.models import LatestLocationRead, LocationSample, LocationUpdate, Order, User, as_utc
from app.domain.permissions import Principal
from app.domain.state_machine import is_terminal
from app.infra import redis_state
from app.infra.db import get_engine
from app.infra.events import ORDER_LOCATION_UPDATED, event_bus
from app.services.order_service import ensure_order_visible, get_scoped_order

logger = logging.getLogger(__name__)


def _is_newer(candidate: datetime, current: datetime | None) -> bool:
    return current is None or as_utc(candidate) >= as_utc(current)


class LocationService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _find_existing(self, session: Session, order_id: str, driver_id: str, ts: datetime) -> LocationUpdate | None:
        return session.exec(
            select(LocationUpdate)
            .where(LocationUpdate.order_id == order_id)
            .where(LocationUpdate.driver_id == driver_id)
            .where(LocationUpdate.ts == ts)
        ).first()

    def record_location(self, principal: Principal, order_id: str, sample: LocationSample) -> LocationUpdate:
        if not principal.can_report_location():
            raise AuthorizationError("only drivers can report locations")
        point = validate_coordinates(sample.latitude, sample.longitude)
        ts = as_utc(sample.ts)
        location = to_postgis_point(point)

        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            if order.assigned_driver_id != principal.user_id:
                raise NotAssignedError("order is not assigned to this driver")
            if is_terminal(order.status):
                raise ConflictError(f"order is {order.status}")
            existing = self._find_existing(session, order.id, principal.user_id, ts)
            if existing is not None:
                return existing

            update = LocationUpdate(
                tenant_id=principal.tenant_id,
                order_id=order.id,
                driver_id=principal.user_id,
                ts=ts,
                location=location,
                accuracy_m=sample.accuracy_m,
                speed_mps=sample.speed_mps,
                heading_deg=sample.heading_deg,
                battery_level=sample.battery_level,
            )
            session.add(update)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                existing = self._find_existing(session, order.id, principal.user_id, ts)
                if existing is None:
                    raise
                return existing
            session.refresh(update)

            is_latest = _is_newer(ts, order.last_location_update)
            if is_latest:
                order.last_known_location = location
                order.last_location_update = ts
                session.add(order)
            driver = session.get(User, principal.user_id)
            if driver is not None and _is_newer(ts, driver.last_location_update):
                driver.last_location = location
                driver.last_location_update = ts
                session.add(driver)
            session.commit()

        latest = LatestLocationRead(
            order_id=order.id,
            driver_id=principal.user_id,
            latitude=point.latitude,
            longitude=point.longitude,
            ts=ts,
        )
        if is_latest:
            redis = redis_state.get_redis()
            redis.set(redis_state.latest_location_key(principal.tenant_id, order.id), latest.model_dump_json())
        event_bus.publish_dict(
            ORDER_LOCATION_UPDATED,
            principal.tenant_id,
            latest.model_dump(mode="json"),
            actor_id=principal.user_id,
        )
        return update

    def list_locations(self, principal: Principal, order_id: str, limit: int = 100) -> list[LocationUpdate]:
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            ensure_order_visible(principal, order)
            statement = (
                select(LocationUpdate)
                .where(LocationUpdate.tenant_id == principal.tenant_id)
                .where(LocationUpdate.order_id == order_id)
                .order_by(col(LocationUpdate.ts).desc())
                .limit(limit)
            )
            return list(session.exec(statement).all())

    def get_latest(self, principal: Principal, order_id: str) -> LatestLocationRead:
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            ensure_order_visible(principal, order)
            redis = redis_state.get_redis()
            raw = redis.get(redis_state.latest_location_key(principal.tenant_id, order_id))
            if isinstance(raw, bytes):
                raw = raw.decode()
            if isinstance(raw, str):
                try:
                    return LatestLocationRead.model_validate_json(raw)
                except ValueError:
                    logger.warning("discarding unreadable cached location for order %s", order_id)
            row = session.exec(
                select(LocationUpdate)
                .where(LocationUpdate.tenant_id == principal.tenant_id)
                .where(LocationUpdate.order_id == order_id)
                .order_by(col(LocationUpdate.ts).desc())
            ).first()
            if row is None:
                raise NotFoundError("no location reported for order")
            point = parse_postgis_point(row.location)
            return LatestLocationRead(
                order_id=row.order_id,
                driver_id=row.driver_id,
                latitude=point.latitude,
                longitude=point.longitude,
                ts=row.ts,
            )

