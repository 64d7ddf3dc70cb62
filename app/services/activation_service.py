from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.domain.errors import AuthorizationError, ConflictError, NotAssignedError
from app.domain.geo import parse_location, to_postgis_point
from app.domain.models import ActivateLoadRequest, LoadActivation, Order, now_utc
from app.domain.permissions import Principal
from app.domain.state_machine import OrderStatus
from app.infra.audit import ACTION_LOAD_ACTIVATED, record_audit_event
from app.infra.db import get_engine
from app.infra.events import LOAD_ACTIVATED, event_bus
from app.services.order_service import apply_transition, get_scoped_order, publish_status_change

logger = logging.getLogger(__name__)


class ActivationService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def activate_load(self, principal: Principal, payload: ActivateLoadRequest) -> tuple[LoadActivation, Order]:
        if not principal.can_activate():
            raise AuthorizationError("only drivers can activate loads")
        location = to_postgis_point(parse_location(payload.location)) if payload.location is not None else None

        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, payload.order_id)
            if order.assigned_driver_id != principal.user_id:
                raise NotAssignedError("order is not assigned to this driver")
            existing = session.exec(select(LoadActivation).where(LoadActivation.order_id == order.id)).first()
            if existing is not None:
                raise ConflictError("load already activated")
            if order.status != OrderStatus.ASSIGNED:
                raise ConflictError(f"order must be assigned to activate, current status: {order.status}")

            activation = LoadActivation(
                tenant_id=principal.tenant_id,
                order_id=order.id,
                driver_id=principal.user_id,
                activated_at=now_utc(),
                location=location,
                location_address=payload.location_address,
                device_info=payload.device_info.model_dump(exclude_none=True) if payload.device_info else {},
                notes=payload.notes,
            )
            session.add(activation)
            update = apply_transition(
                session,
                order,
                OrderStatus.ACTIVATED,
                actor_id=principal.user_id,
                notes=payload.notes or "load activated",
                location=location,
            )
            order.load_activated_at = activation.activated_at
            order.load_activated_by = principal.user_id
            try:
                session.commit()
            except IntegrityError as exc:
                # A concurrent activation won the unique constraint.
                session.rollback()
                raise ConflictError("load already activated") from exc
            session.refresh(activation)
            session.refresh(order)
            session.refresh(update)

        logger.info("load activated for order %s by %s", order.id, principal.user_id)
        record_audit_event(
            tenant_id=principal.tenant_id,
            actor_id=principal.user_id,
            action=ACTION_LOAD_ACTIVATED,
            order_id=order.id,
            detail={"activation_id": activation.id, "location": location},
        )
        event_bus.publish_dict(
            LOAD_ACTIVATED,
            principal.tenant_id,
            {"order_id": order.id, "activation_id": activation.id, "driver_id": principal.user_id},
            actor_id=principal.user_id,
        )
        publish_status_change(update)
        return activation, order
