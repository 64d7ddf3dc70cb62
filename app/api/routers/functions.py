"""Endpoints kept at the root paths the mobile app and dashboard already call."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Request

from app.api.deps import AdminOrDispatcher, CurrentPrincipal
from app.api.routers.orders import get_order_service, order_ws_hub, status_change_message
from app.domain.models import (
    ActivateLoadRead,
    ActivateLoadRequest,
    DriverAccountCreate,
    DriverAccountRead,
    DriverPasswordResetRead,
    DriverPasswordResetRequest,
    LoadActivationRead,
    OrderCreationRead,
    OrderCreationRequest,
    OrderProjection,
    OrderRead,
    QRCodeRead,
    QRSignatureRead,
    QRSignatureRequest,
    QRValidateRequest,
    UserRead,
)
from app.infra.audit import (
    ACTION_DRIVER_ACCOUNT_CREATED,
    ACTION_DRIVER_PASSWORD_RESET,
    ACTION_LOAD_ACTIVATED,
    ACTION_ORDER_CREATED,
    ACTION_QR_CODE_SCANNED,
    set_audit_context,
)
from app.services.activation_service import ActivationService
from app.services.identity_service import IdentityService
from app.services.order_service import OrderService
from app.services.qr_service import QRService

router = APIRouter()


def get_activation_service() -> ActivationService:
    return ActivationService()


def get_qr_service() -> QRService:
    return QRService()


def get_identity_service() -> IdentityService:
    return IdentityService()


Activations = Annotated[ActivationService, Depends(get_activation_service)]
QRCodes = Annotated[QRService, Depends(get_qr_service)]
Orders = Annotated[OrderService, Depends(get_order_service)]
Identity = Annotated[IdentityService, Depends(get_identity_service)]


@router.post("/activate-load", response_model=ActivateLoadRead)
async def activate_load(
    payload: ActivateLoadRequest,
    request: Request,
    principal: CurrentPrincipal,
    service: Activations,
) -> ActivateLoadRead:
    set_audit_context(request, action=ACTION_LOAD_ACTIVATED, resource="order", order_id=payload.order_id)
    activation, order = service.activate_load(principal, payload)
    await order_ws_hub.broadcast(
        principal.tenant_id,
        status_change_message(order),
        driver_id=order.assigned_driver_id,
    )
    return ActivateLoadRead(
        activation=LoadActivationRead.model_validate(activation),
        order=OrderRead.model_validate(order),
    )


@router.post("/create-qr-signature", response_model=QRSignatureRead)
def create_qr_signature(
    payload: QRSignatureRequest,
    principal: AdminOrDispatcher,
    service: QRCodes,
) -> QRSignatureRead:
    return QRSignatureRead(signature=service.create_signature(principal, payload))


@router.post("/validate-qr-code", response_model=OrderProjection)
def validate_qr_code(
    payload: QRValidateRequest,
    request: Request,
    principal: CurrentPrincipal,
    service: QRCodes,
) -> OrderProjection:
    set_audit_context(request, action=ACTION_QR_CODE_SCANNED, resource="order")
    projection = service.validate_and_advance(principal, payload.qr_code_data)
    set_audit_context(request, order_id=projection.id, detail={"what": {"status": str(projection.status)}})
    return projection


@router.post("/order_creation", response_model=OrderCreationRead)
def order_creation(
    payload: OrderCreationRequest,
    request: Request,
    principal: AdminOrDispatcher,
    service: Orders,
) -> OrderCreationRead:
    set_audit_context(request, action=ACTION_ORDER_CREATED, resource="order")
    created = service.create_order(principal, payload.order_data)
    set_audit_context(request, order_id=created.order.id)
    return OrderCreationRead(
        order=OrderRead.model_validate(created.order),
        qr_code=QRCodeRead.model_validate(created.qr_code),
        qr_code_url=created.qr_code_url,
    )


@router.post("/create-driver-account", response_model=DriverAccountRead)
def create_driver_account(
    payload: DriverAccountCreate,
    request: Request,
    principal: AdminOrDispatcher,
    service: Identity,
) -> DriverAccountRead:
    set_audit_context(request, action=ACTION_DRIVER_ACCOUNT_CREATED, resource="user")
    driver, temporary_password = service.create_driver_account(principal, payload)
    return DriverAccountRead(user=UserRead.model_validate(driver), temporary_password=temporary_password)


@router.post("/reset-driver-password", response_model=DriverPasswordResetRead)
def reset_driver_password(
    payload: DriverPasswordResetRequest,
    request: Request,
    principal: AdminOrDispatcher,
    service: Identity,
) -> DriverPasswordResetRead:
    set_audit_context(request, action=ACTION_DRIVER_PASSWORD_RESET, resource="user")
    driver, temporary_password = service.reset_driver_password(principal, payload.driver_id, payload.email)
    return DriverPasswordResetRead(
        driver_id=driver.id,
        email=driver.email,
        temporary_password=temporary_password,
        password_reset_required=driver.password_reset_required,
    )
