from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session, select

from app.domain.errors import (
    AccessDeniedError,
    ActivationRequiredError,
    AuthorizationError,
    ConflictError,
    ExpiredCodeError,
    InvalidSignatureError,
    NotAssignedError,
    NotFoundError,
    OrderTrackingError,
)
from app.domain.geo import parse_postgis_point
from app.domain.models import (
    ContactProjection,
    DriverProjection,
    LoadActivation,
    Order,
    OrderProjection,
    PointProjection,
    QRCode,
    QRSignatureRequest,
    StatusUpdate,
    TimeWindow,
    User,
    now_utc,
)
from app.domain.permissions import Principal
from app.domain.state_machine import OrderStatus, is_terminal
from app.infra import signing
from app.infra.audit import ACTION_QR_CODE_REGENERATED, ACTION_QR_CODE_SCANNED, record_audit_event
from app.infra.db import get_engine
from app.infra.qr_image import QRImageRenderer
from app.infra.saga import Saga
from app.services.object_storage_service import ObjectStorageService
from app.services.order_service import (
    QR_CONTENT_TYPE,
    apply_transition,
    get_scoped_order,
    publish_status_change,
)

logger = logging.getLogger(__name__)


def _point_projection(order: Order, prefix: str) -> PointProjection:
    raw_location = getattr(order, f"{prefix}_point_location")
    try:
        point = parse_postgis_point(raw_location)
        location: dict[str, float] | None = {"latitude": point.latitude, "longitude": point.longitude}
    except OrderTrackingError:
        location = None
    return PointProjection(
        name=getattr(order, f"{prefix}_point_name"),
        address=getattr(order, f"{prefix}_point_address"),
        location=location,
        time_window=TimeWindow(
            start=getattr(order, f"{prefix}_time_window_start"),
            end=getattr(order, f"{prefix}_time_window_end"),
        ),
    )


def build_order_projection(session: Session, order: Order) -> OrderProjection:
    """The subset of an order a scanning client may see."""
    driver: DriverProjection | None = None
    if order.assigned_driver_id:
        user = session.get(User, order.assigned_driver_id)
        if user is not None:
            driver = DriverProjection(id=user.id, full_name=user.full_name, phone=user.phone)
    requires_activation = False
    if order.status in {OrderStatus.PENDING, OrderStatus.ASSIGNED}:
        activation = session.exec(select(LoadActivation).where(LoadActivation.order_id == order.id)).first()
        requires_activation = activation is None
    return OrderProjection(
        id=order.id,
        order_number=order.order_number,
        status=order.status,
        sku=order.sku,
        loading_point=_point_projection(order, "loading"),
        unloading_point=_point_projection(order, "unloading"),
        waypoints=list(order.waypoints),
        delivery_instructions=order.delivery_instructions,
        special_handling=order.special_handling_instructions,
        contact=ContactProjection(name=order.contact_name, phone=order.contact_phone),
        estimated_distance=order.estimated_distance_km,
        estimated_duration=order.estimated_duration_minutes,
        assigned_driver=driver,
        requires_activation=requires_activation,
    )


class QRService:
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

    def create_signature(self, principal: Principal, payload: QRSignatureRequest) -> str:
        if not principal.is_admin_or_dispatcher():
            raise AuthorizationError("only admins and dispatchers can sign QR payloads")
        if payload.tenant_id is not None and not principal.same_tenant(payload.tenant_id):
            raise AccessDeniedError("tenant mismatch")
        return signing.get_signer().sign(payload.order_id, payload.timestamp)

    def _touch_qr_code(self, session: Session, order_id: str, user_id: str) -> None:
        qr_code = session.exec(select(QRCode).where(QRCode.order_id == order_id)).first()
        if qr_code is None:
            return
        qr_code.scan_count += 1
        qr_code.last_scanned_at = now_utc()
        qr_code.last_scanned_by = user_id
        session.add(qr_code)

    def validate_and_advance(self, principal: Principal, qr_code_data: str) -> OrderProjection:
        payload = signing.decode_qr_payload(qr_code_data)
        signer = signing.get_signer()
        # Expiry wins over a bad signature.
        if signing.is_expired(payload.timestamp):
            raise ExpiredCodeError("QR code has expired")
        if not signer.verify(payload.order_id, payload.timestamp, payload.signature):
            raise InvalidSignatureError("invalid QR code signature")

        with self._session() as session:
            order = session.get(Order, payload.order_id)
            if order is None:
                raise NotFoundError("order not found")
            if not principal.same_tenant(order.tenant_id):
                raise AccessDeniedError("access denied")

            record_audit_event(
                tenant_id=principal.tenant_id,
                actor_id=principal.user_id,
                action=ACTION_QR_CODE_SCANNED,
                order_id=order.id,
                detail={"status": str(order.status), "role": str(principal.role)},
            )

            update: StatusUpdate | None = None
            if principal.is_driver:
                update = self._advance_for_driver(session, principal, order)
            # Only accepted scans count.
            self._touch_qr_code(session, order.id, principal.user_id)
            session.commit()
            session.refresh(order)
            if update is not None:
                session.refresh(update)
            projection = build_order_projection(session, order)

        if update is not None:
            logger.info("scan moved order %s %s -> %s", order.id, update.from_status, update.status)
            publish_status_change(update)
        return projection

    def _advance_for_driver(self, session: Session, principal: Principal, order: Order) -> StatusUpdate | None:
        if order.status == OrderStatus.PENDING:
            order.assigned_driver_id = principal.user_id
            return apply_transition(
                session,
                order,
                OrderStatus.ASSIGNED,
                actor_id=principal.user_id,
                notes="auto-assigned by QR scan",
            )
        if order.assigned_driver_id != principal.user_id:
            raise NotAssignedError("order is not assigned to this driver")
        if order.status == OrderStatus.ASSIGNED:
            activation = session.exec(select(LoadActivation).where(LoadActivation.order_id == order.id)).first()
            if activation is None:
                raise ActivationRequiredError()
            return None
        if order.status == OrderStatus.ACTIVATED:
            return apply_transition(
                session,
                order,
                OrderStatus.IN_PROGRESS,
                actor_id=principal.user_id,
                notes="started by QR scan",
            )
        return None

    def _render_image(self, ctx: dict[str, Any]) -> bytes:
        return self._renderer.render_png(ctx["qr_code_data"])

    def _upload_image(self, ctx: dict[str, Any]) -> str:
        object_key = self._storage.build_qr_object_key(order_id=ctx["order_id"], timestamp_ms=ctx["timestamp"])
        self._storage.upload(
            bucket=self._storage.qr_bucket,
            object_key=object_key,
            content=ctx["render_image"],
            content_type=QR_CONTENT_TYPE,
        )
        return object_key

    def _remove_image(self, ctx: dict[str, Any]) -> None:
        self._storage.remove(bucket=self._storage.qr_bucket, object_key=ctx["upload_image"])

    def _store_regenerated(self, ctx: dict[str, Any]) -> QRCode:
        principal: Principal = ctx["principal"]
        signed: signing.QRCodePayload = ctx["signed"]
        object_key: str = ctx["upload_image"]
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, ctx["order_id"])
            qr_code = session.exec(select(QRCode).where(QRCode.order_id == order.id)).first()
            if qr_code is None:
                raise NotFoundError("qr code not found")
            ctx["previous_object_key"] = qr_code.object_key
            qr_code.qr_code_data = ctx["qr_code_data"]
            qr_code.signature = signed.signature
            qr_code.issued_at_ms = signed.timestamp
            qr_code.expires_at = signing.expires_at(signed.timestamp)
            qr_code.object_key = object_key
            qr_code.qr_code_image_url = self._storage.public_url(bucket=self._storage.qr_bucket, object_key=object_key)
            qr_code.updated_at = now_utc()
            order.qr_code_id = qr_code.id
            order.qr_code_data = qr_code.qr_code_data
            order.qr_code_signature = qr_code.signature
            order.qr_code_expires_at = qr_code.expires_at
            order.updated_at = now_utc()
            session.add(qr_code)
            session.add(order)
            session.commit()
            session.refresh(qr_code)
            return qr_code

    def regenerate_qr_code(self, principal: Principal, order_id: str) -> QRCode:
        if not principal.is_admin_or_dispatcher():
            raise AuthorizationError("only admins and dispatchers can regenerate QR codes")
        with self._session() as session:
            order = get_scoped_order(session, principal.tenant_id, order_id)
            if is_terminal(order.status):
                raise ConflictError(f"order is {order.status}")
        signed = signing.get_signer().issue(order.id)
        ctx: dict[str, Any] = {
            "principal": principal,
            "order_id": order.id,
            "signed": signed,
            "timestamp": signed.timestamp,
            "qr_code_data": signing.encode_qr_payload(signed),
        }
        saga = (
            Saga("qr_regeneration")
            .step("render_image", self._render_image)
            .step("upload_image", self._upload_image, self._remove_image)
            .step("store_regenerated", self._store_regenerated)
        )
        result = saga.run(ctx)
        qr_code: QRCode = result.context["store_regenerated"]
        previous_key = result.context.get("previous_object_key")
        if previous_key and previous_key != qr_code.object_key:
            self._storage.remove(bucket=self._storage.qr_bucket, object_key=previous_key)
        record_audit_event(
            tenant_id=principal.tenant_id,
            actor_id=principal.user_id,
            action=ACTION_QR_CODE_REGENERATED,
            order_id=order.id,
            detail={"qr_code_id": qr_code.id, "issued_at_ms": qr_code.issued_at_ms},
        )
        return qr_code
