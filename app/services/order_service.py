from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.errors import (
    AuthorizationError,
    ConflictError,
    NotAssignedError,
    NotFoundError,
    ValidationError,
)
from app.domain.geo import parse_location, to_postgis_point
from app.domain.models import (
    DeliveryPointInput,
    Order,
    OrderCreate,
    OrderStatusRequest,
    QRCode,
    StatusUpdate,
    User,
    now_utc,
)
from app.domain.permissions import Principal, UserRole
from app.domain.state_machine import SCAN_DRIVEN_STATUSES, OrderStatus, can_transition
from app.infra import signing
from app.infra.audit import ACTION_ORDER_CREATED, ACTION_ORDER_STATUS_CHANGED, record_audit_event
from app.infra.db import get_engine
from app.infra.events import ORDER_CREATED, ORDER_STATUS_CHANGED, event_bus
from app.infra.qr_image import QRImageRenderer
from app.infra.saga import Saga
from app.services.object_storage_service import ObjectStorageService

logger = logging.getLogger(__name__)

QR_CONTENT_TYPE = "image/png"


@dataclass
class OrderCreation:
    order: Order
    qr_code: QRCode
    qr_code_url: str


def generate_order_number(now: datetime | None = None) -> str:
    stamp = (now or now_utc()).strftime("%Y%m%d")
    return f"ORD-{stamp}-{secrets.token_hex(3).upper()}"


def generate_tracking_code() -> str:
    return f"TRK-{secrets.token_hex(4).upper()}"


def point_columns(prefix: str, point: DeliveryPointInput) -> dict[str, Any]:
    if not point.name.strip() or not point.address.strip():
        raise ValidationError(f"{prefix} name and address are required")
    window = point.time_window
    return {
        f"{prefix}_name": point.name.strip(),
        f"{prefix}_address": point.address.strip(),
        f"{prefix}_location": to_postgis_point(parse_location(point.location)),
        f"{prefix.removesuffix('_point')}_time_window_start": window.start if window else None,
        f"{prefix.removesuffix('_point')}_time_window_end": window.end if window else None,
    }


def waypoint_entries(points: list[DeliveryPointInput]) -> list[dict[str, Any]]:
    entries: list[dict[str, Any]] = []
    for point in points:
        entries.append(
            {
                "name": point.name,
                "address": point.address,
                "location": to_postgis_point(parse_location(point.location)),
                "time_window": point.time_window.model_dump(mode="json") if point.time_window else None,
            }
        )
    return entries


def apply_transition(
    session: Session,
    order: Order,
    target: OrderStatus,
    *,
    actor_id: str | None,
    notes: str | None = None,
    location: str | None = None,
) -> StatusUpdate:
    """Move ``order`` to ``target`` and stage the matching status update row.

    The caller commits; nothing is published here.
    """
    source = order.status
    if not can_transition(source, target):
        raise ConflictError(f"illegal transition: {source} -> {target}")
    if target != OrderStatus.CANCELLED and not order.assigned_driver_id:
        raise ConflictError("order has no assigned driver")
    now = now_utc()
    order.status = target
    order.updated_at = now
    if target == OrderStatus.IN_PROGRESS and order.actual_start_time is None:
        order.actual_start_time = now
    if target == OrderStatus.COMPLETED:
        order.actual_end_time = now
    session.add(order)
    update = StatusUpdate(
        tenant_id=order.tenant_id,
        order_id=order.id,
        actor_id=actor_id,
        from_status=source,
        status=target,
        notes=notes,
        location=location,
    )
    session.add(update)
    return update


def publish_status_change(update: StatusUpdate) -> None:
    event_bus.publish_dict(
        ORDER_STATUS_CHANGED,
        update.tenant_id,
        {
            "order_id": update.order_id,
            "from_status": update.from_status,
            "status": update.status,
        },
        actor_id=update.actor_id,
    )


def get_scoped_order(session: Session, tenant_id: str, order_id: str) -> Order:
    order = session.exec(select(Order).where(Order.tenant_id == tenant_id).where(Order.id == order_id)).first()
    if order is None:
        raise NotFoundError("order not found")
    return order


def ensure_order_visible(principal: Principal, order: Order) -> None:
    if principal.is_driver and order.assigned_driver_id != principal.user_id:
        raise NotFoundError("order not found")


class OrderService:
    def __init__(
        self,
        *,
        storage: ObjectStorageService | None = None,
        renderer: QRImageRenderer | None = None,
    ) -> None:
        self._storage = storage or ObjectStorageService()
        self._renderer = renderer or QRImageRenderer()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_driver(self, session: Session, tenant_id: str, driver_id: str) -> User:
        driver = session.exec(select(User).where(User.tenant_id == tenant_id).where(User.id == driver_id)).first()
        if driver is None:
            raise NotFoundError("driver not found")
        if driver.role != UserRole.DRIVER or not driver.is_active:
            raise ValidationError("assigned user is not an active driver")
        return driver

    # Order creation steps. Each one reads what the previous ones left in ``ctx``.

    def _insert_order(self, ctx: dict[str, Any]) -> Order:
        principal: Principal = ctx["principal"]
        payload: OrderCreate = ctx["payload"]
        columns = {
            **point_columns("loading_point", payload.loading_point),
            **point_columns("unloading_point", payload.unloading_point),
        }
        with self._session() as session:
            driver_id = payload.assigned_driver_id
            if driver_id:
                self._get_driver(session, principal.tenant_id, driver_id)
            order = Order(
                tenant_id=principal.tenant_id,
                order_number=(payload.order_number or generate_order_number()).strip(),
                sku=payload.sku,
                status=OrderStatus.PENDING,
                assigned_driver_id=driver_id,
                qr_code_expires_at=now_utc() + timedelta(hours=signing.QR_CODE_TTL_HOURS),
                waypoints=waypoint_entries(payload.waypoints),
                delivery_instructions=payload.delivery_instructions,
                special_handling_instructions=payload.special_handling_instructions,
                contact_name=payload.contact_name,
                contact_phone=payload.contact_phone,
                estimated_distance_km=payload.estimated_distance_km,
                estimated_duration_minutes=payload.estimated_duration_minutes,
                created_by=principal.user_id,
                **columns,
            )
            session.add(order)
            try:
                session.flush()
                if driver_id:
                    ctx["creation_status_update"] = apply_transition(
                        session,
                        order,
                        OrderStatus.ASSIGNED,
                        actor_id=principal.user_id,
                        notes="assigned at creation",
                    )
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("order number already exists", step="insert_order") from exc
            session.refresh(order)
            return order

    def _delete_order(self, ctx: dict[str, Any]) -> None:
        order: Order = ctx["insert_order"]
        with self._session() as session:
            for update in session.exec(select(StatusUpdate).where(StatusUpdate.order_id == order.id)).all():
                session.delete(update)
            session.flush()
            row = session.get(Order, order.id)
            if row is not None:
                session.delete(row)
            session.commit()

    def _insert_qr_code(self, ctx: dict[str, Any]) -> QRCode:
        order: Order = ctx["insert_order"]
        signed = signing.get_signer().issue(order.id)
        created_at = now_utc()
        tracking_code = generate_tracking_code()
        qr_code = QRCode(
            tenant_id=order.tenant_id,
            order_id=order.id,
            tracking_code=tracking_code,
            payload={
                "order_id": order.id,
                "tracking_code": tracking_code,
                "created_at": created_at.isoformat(),
            },
            qr_code_data=signing.encode_qr_payload(signed),
            signature=signed.signature,
            issued_at_ms=signed.timestamp,
            expires_at=signing.expires_at(signed.timestamp),
            created_at=created_at,
        )
        with self._session() as session:
            session.add(qr_code)
            session.commit()
            session.refresh(qr_code)
            return qr_code

    def _delete_qr_code(self, ctx: dict[str, Any]) -> None:
        qr_code: QRCode = ctx["insert_qr_code"]
        with self._session() as session:
            row = session.get(QRCode, qr_code.id)
            if row is not None:
                session.delete(row)
                session.commit()

    def _render_qr_image(self, ctx: dict[str, Any]) -> bytes:
        qr_code: QRCode = ctx["insert_qr_code"]
        return self._renderer.render_png(qr_code.qr_code_data)

    def _upload_qr_image(self, ctx: dict[str, Any]) -> str:
        qr_code: QRCode = ctx["insert_qr_code"]
        object_key = self._storage.build_qr_object_key(order_id=qr_code.order_id, timestamp_ms=qr_code.issued_at_ms)
        self._storage.upload(
            bucket=self._storage.qr_bucket,
            object_key=object_key,
            content=ctx["render_qr_image"],
            content_type=QR_CONTENT_TYPE,
        )
        return object_key

    def _remove_qr_image(self, ctx: dict[str, Any]) -> None:
        self._storage.remove(bucket=self._storage.qr_bucket, object_key=ctx["upload_qr_image"])

    def _attach_qr_image_url(self, ctx: dict[str, Any]) -> QRCode:
        qr_code: QRCode = ctx["insert_qr_code"]
        object_key: str = ctx["upload_qr_image"]
        with self._session() as session:
            row = session.get(QRCode, qr_code.id)
            if row is None:
                raise NotFoundError("qr code record disappeared")
            row.object_key = object_key
            row.qr_code_image_url = self._storage.public_url(bucket=self._storage.qr_bucket, object_key=object_key)
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def _bind_qr_to_order(self, ctx: dict[str, Any]) -> Order:
        order: Order = ctx["insert_order"]
        qr_code: QRCode = ctx["attach_qr_image_url"]
        with self._session() as session:
            row = session.get(Order, order.id)
            if row is None:
                raise NotFoundError("order record disappeared")
            row.qr_code_id = qr_code.id
            row.qr_code_data = qr_code.qr_code_data
            row.qr_code_signature = qr_code.signature
            row.qr_code_expires_at = qr_code.expires_at
            row.updated_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row

    def creation_saga(self) -> Saga:
        return (
            Saga("order_creation")
            .step("insert_order", self._insert_order, self._delete_order)
            .step("insert_qr_code", self._insert_qr_code, self._delete_qr_code)
            .step("render_qr_image", self._render_qr_image)
            .step("upload_qr_image", self._upload_qr_image, self._remove_qr_image)
            .step("attach_qr_image_url", self._attach_qr_image_url)
            .step("bind_qr_to_order", self._bind_qr_to_order)
        )

    def create_order(self, principal: Principal, payload: OrderCreate) -> OrderCreation:
        if not principal.can_manage_orders():
            raise AuthorizationError("only admins and dispatchers can create orders")
        result = self.creation_saga().run({"principal": principal, "payload": payload})
        order: Order = result.context["bind_qr_to_order"]
        qr_code: QRCode = result.context["attach_qr_image_url"]
        logger.info("order %s created with qr code %s", order.id, qr_code.id)
        record_audit_event(
            tenant_id=principal.tenant_id,
            actor_id=principal.user_id,
            action=ACTION_ORDER_CREATED,
            order_id=order.id,
            detail={"order_number": order.order_number, "status": str(order.status)},
        )
        event_bus.publish_dict(
            ORDER_CREATED,
            principal.tenant_id,
            {"order_id": order.id, "order_number": order.order_number, "status": order.status},
            actor_id=principal.user_id,
        )
        if "creation_status_update" in result.context:
            publish_status_change(result.context["creation_status_update"])
        return OrderCreation(order=order, qr_code=qr_code, qr_code_url=qr_code.qr_code_image_url or "")

    def list_orders(self, principal: Principal, status: OrderStatus | None = None) -> list[Order]:
        with self._session() as session:
            statement = select(Order).where(Order.tenant_id == principal.tenant_id)
            if principal.is_driver:
                statement = statement.where(Order.assigned_driver_id == principal.user_id)
            if status is not None:
                statement = statement.where(Order.status == status)
            return list(session.exec(statement.order_by(col(Order.created_at).desc())).all())

    def get_order(self, principal: Principal, order_id: str) -> Order:
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            ensure_order_visible(principal, order)
            return order

    def get_qr_code(self, principal: Principal, order_id: str) -> QRCode:
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            ensure_order_visible(principal, order)
            qr_code = session.exec(select(QRCode).where(QRCode.order_id == order.id)).first()
            if qr_code is None:
                raise NotFoundError("qr code not found")
            return qr_code

    def assign_driver(self, principal: Principal, order_id: str, driver_id: str) -> Order:
        if not principal.can_manage_orders():
            raise AuthorizationError("only admins and dispatchers can assign drivers")
        update: StatusUpdate | None = None
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            self._get_driver(session, principal.tenant_id, driver_id)
            if order.status not in {OrderStatus.PENDING, OrderStatus.ASSIGNED}:
                raise ConflictError(f"cannot reassign an order in status {order.status}")
            order.assigned_driver_id = driver_id
            if order.status == OrderStatus.PENDING:
                update = apply_transition(
                    session,
                    order,
                    OrderStatus.ASSIGNED,
                    actor_id=principal.user_id,
                    notes=f"assigned to {driver_id}",
                )
            else:
                order.updated_at = now_utc()
                session.add(order)
            session.commit()
            session.refresh(order)
            if update is not None:
                session.refresh(update)
        if update is not None:
            publish_status_change(update)
        return order

    def update_status(self, principal: Principal, order_id: str, payload: OrderStatusRequest) -> Order:
        location = to_postgis_point(parse_location(payload.location)) if payload.location is not None else None
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            if principal.is_driver:
                if order.assigned_driver_id != principal.user_id:
                    raise NotAssignedError("order is not assigned to this driver")
                if payload.status in SCAN_DRIVEN_STATUSES or payload.status == OrderStatus.CANCELLED:
                    raise AuthorizationError(f"drivers cannot set status {payload.status}")
            elif not principal.can_manage_orders():
                raise AuthorizationError("status change not permitted")
            update = apply_transition(
                session,
                order,
                payload.status,
                actor_id=principal.user_id,
                notes=payload.notes,
                location=location,
            )
            session.commit()
            session.refresh(order)
            session.refresh(update)
        logger.info("order %s moved %s -> %s", order.id, update.from_status, update.status)
        record_audit_event(
            tenant_id=principal.tenant_id,
            actor_id=principal.user_id,
            action=ACTION_ORDER_STATUS_CHANGED,
            order_id=order.id,
            detail={"from_status": str(update.from_status), "status": str(update.status)},
        )
        publish_status_change(update)
        return order

    def cancel_order(self, principal: Principal, order_id: str, notes: str | None = None) -> Order:
        if not principal.can_manage_orders():
            raise AuthorizationError("only admins and dispatchers can cancel orders")
        return self.update_status(
            principal,
            order_id,
            OrderStatusRequest(status=OrderStatus.CANCELLED, notes=notes),
        )

    def list_status_updates(self, principal: Principal, order_id: str) -> list[StatusUpdate]:
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            ensure_order_visible(principal, order)
            statement = (
                select(StatusUpdate)
                .where(StatusUpdate.tenant_id == principal.tenant_id)
                .where(StatusUpdate.order_id == order_id)
                .order_by(col(StatusUpdate.created_at))
            )
            return list(session.exec(statement).all())
