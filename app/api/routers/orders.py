from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, Request, WebSocket, WebSocketDisconnect

from app.api.deps import AdminOrDispatcher, CurrentPrincipal, resolve_principal
from app.domain.geo import parse_postgis_point
from app.domain.models import (
    LatestLocationRead,
    LocationSample,
    LocationUpdate,
    LocationUpdateRead,
    Order,
    OrderAssignRequest,
    OrderRead,
    OrderStatusRequest,
    QRCodeRead,
    StatusUpdateRead,
)
from app.domain.permissions import PERM_ORDERS_READ, Principal
from app.domain.state_machine import OrderStatus
from app.infra.audit import ACTION_ORDER_STATUS_CHANGED, set_audit_context
from app.infra.auth import decode_access_token
from app.services.location_service import LocationService
from app.services.order_service import OrderService
from app.services.qr_service import QRService

router = APIRouter()
ws_router = APIRouter()


class OrderWsHub:
    def __init__(self) -> None:
        self._connections: dict[str, dict[WebSocket, Principal]] = {}

    async def connect(self, principal: Principal, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.setdefault(principal.tenant_id, {})[websocket] = principal

    def disconnect(self, tenant_id: str, websocket: WebSocket) -> None:
        tenant_conns = self._connections.get(tenant_id, {})
        tenant_conns.pop(websocket, None)
        if not tenant_conns and tenant_id in self._connections:
            del self._connections[tenant_id]

    async def broadcast(self, tenant_id: str, payload: dict[str, Any], *, driver_id: str | None) -> None:
        connections = list(self._connections.get(tenant_id, {}).items())
        for connection, principal in connections:
            # Drivers only follow orders assigned to them.
            if principal.is_driver and principal.user_id != driver_id:
                continue
            try:
                await connection.send_json(payload)
            except Exception:
                self.disconnect(tenant_id, connection)


order_ws_hub = OrderWsHub()


def status_change_message(order: Order) -> dict[str, Any]:
    return {
        "type": "status",
        "order_id": order.id,
        "status": str(order.status),
        "assigned_driver_id": order.assigned_driver_id,
    }


def location_update_message(update: LocationUpdate) -> dict[str, Any]:
    point = parse_postgis_point(update.location)
    return {
        "type": "location",
        "order_id": update.order_id,
        "driver_id": update.driver_id,
        "latitude": point.latitude,
        "longitude": point.longitude,
        "ts": update.ts.isoformat(),
    }


def get_order_service() -> OrderService:
    return OrderService()


def get_location_service() -> LocationService:
    return LocationService()


def get_qr_service() -> QRService:
    return QRService()


Orders = Annotated[OrderService, Depends(get_order_service)]
Locations = Annotated[LocationService, Depends(get_location_service)]
QRCodes = Annotated[QRService, Depends(get_qr_service)]


def _extract_ws_token(websocket: WebSocket, token: str | None) -> str | None:
    if token:
        return token
    auth_header = websocket.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return None


@router.get("", response_model=list[OrderRead])
def list_orders(
    principal: CurrentPrincipal,
    service: Orders,
    status: Annotated[OrderStatus | None, Query()] = None,
) -> list[OrderRead]:
    return [OrderRead.model_validate(item) for item in service.list_orders(principal, status)]


@router.get("/{order_id}", response_model=OrderRead)
def get_order(order_id: str, principal: CurrentPrincipal, service: Orders) -> OrderRead:
    return OrderRead.model_validate(service.get_order(principal, order_id))


@router.post("/{order_id}/assign", response_model=OrderRead)
async def assign_driver(
    order_id: str,
    payload: OrderAssignRequest,
    request: Request,
    principal: AdminOrDispatcher,
    service: Orders,
) -> OrderRead:
    set_audit_context(request, action=ACTION_ORDER_STATUS_CHANGED, resource="order", order_id=order_id)
    order = service.assign_driver(principal, order_id, payload.driver_id)
    await order_ws_hub.broadcast(
        principal.tenant_id,
        status_change_message(order),
        driver_id=order.assigned_driver_id,
    )
    return OrderRead.model_validate(order)


@router.post("/{order_id}/status", response_model=OrderRead)
async def update_status(
    order_id: str,
    payload: OrderStatusRequest,
    request: Request,
    principal: CurrentPrincipal,
    service: Orders,
) -> OrderRead:
    set_audit_context(
        request,
        action=ACTION_ORDER_STATUS_CHANGED,
        resource="order",
        order_id=order_id,
        detail={"what": {"target_status": str(payload.status)}},
    )
    order = service.update_status(principal, order_id, payload)
    await order_ws_hub.broadcast(
        principal.tenant_id,
        status_change_message(order),
        driver_id=order.assigned_driver_id,
    )
    return OrderRead.model_validate(order)


@router.post("/{order_id}/cancel", response_model=OrderRead)
async def cancel_order(
    order_id: str,
    request: Request,
    principal: AdminOrDispatcher,
    service: Orders,
    notes: Annotated[str | None, Query()] = None,
) -> OrderRead:
    set_audit_context(request, action=ACTION_ORDER_STATUS_CHANGED, resource="order", order_id=order_id)
    order = service.cancel_order(principal, order_id, notes)
    await order_ws_hub.broadcast(
        principal.tenant_id,
        status_change_message(order),
        driver_id=order.assigned_driver_id,
    )
    return OrderRead.model_validate(order)


@router.get("/{order_id}/status-updates", response_model=list[StatusUpdateRead])
def list_status_updates(order_id: str, principal: CurrentPrincipal, service: Orders) -> list[StatusUpdateRead]:
    return [StatusUpdateRead.model_validate(item) for item in service.list_status_updates(principal, order_id)]


@router.get("/{order_id}/qr-code", response_model=QRCodeRead)
def get_qr_code(order_id: str, principal: CurrentPrincipal, service: Orders) -> QRCodeRead:
    return QRCodeRead.model_validate(service.get_qr_code(principal, order_id))


@router.post("/{order_id}/qr-code", response_model=QRCodeRead)
def regenerate_qr_code(
    order_id: str,
    request: Request,
    principal: AdminOrDispatcher,
    service: QRCodes,
) -> QRCodeRead:
    set_audit_context(request, resource="qr_code", order_id=order_id)
    return QRCodeRead.model_validate(service.regenerate_qr_code(principal, order_id))


@router.post("/{order_id}/locations", response_model=LocationUpdateRead)
async def record_location(
    order_id: str,
    payload: LocationSample,
    principal: CurrentPrincipal,
    service: Locations,
) -> LocationUpdateRead:
    update = service.record_location(principal, order_id, payload)
    await order_ws_hub.broadcast(
        principal.tenant_id,
        location_update_message(update),
        driver_id=update.driver_id,
    )
    return LocationUpdateRead.model_validate(update)


@router.get("/{order_id}/locations", response_model=list[LocationUpdateRead])
def list_locations(
    order_id: str,
    principal: CurrentPrincipal,
    service: Locations,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[LocationUpdateRead]:
    return [LocationUpdateRead.model_validate(item) for item in service.list_locations(principal, order_id, limit)]


@router.get("/{order_id}/locations/latest", response_model=LatestLocationRead)
def get_latest_location(order_id: str, principal: CurrentPrincipal, service: Locations) -> LatestLocationRead:
    return service.get_latest(principal, order_id)


@ws_router.websocket("/ws/orders")
async def ws_orders(websocket: WebSocket, token: str | None = Query(default=None)) -> None:
    resolved_token = _extract_ws_token(websocket, token)
    if not resolved_token:
        await websocket.close(code=4401)
        return
    try:
        principal = resolve_principal(decode_access_token(resolved_token))
    except Exception:
        await websocket.close(code=4401)
        return
    if not principal.has(PERM_ORDERS_READ):
        await websocket.close(code=4403)
        return

    await order_ws_hub.connect(principal, websocket)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        order_ws_hub.disconnect(principal.tenant_id, websocket)
