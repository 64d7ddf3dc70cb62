from __future__ import annotations

from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict
from pydantic import Field as PydanticField
from pydantic.alias_generators import to_camel
from sqlalchemy import JSON, BigInteger, Column, Index, UniqueConstraint
from sqlmodel import Field, SQLModel

from app.domain.permissions import UserRole
from app.domain.state_machine import OrderStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Aware UTC copy of ``value``; naive values are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class AuditLog(SQLModel, table=True):
    __tablename__ = "audit_logs"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(index=True)
    actor_id: str | None = Field(default=None, index=True)
    order_id: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    resource: str
    method: str
    status_code: int
    ts: datetime = Field(default_factory=now_utc, index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class User(SQLModel, table=True):
    __tablename__ = "users"
    __table_args__ = (
        UniqueConstraint("tenant_id", "id", name="uq_users_tenant_id_id"),
        Index("ix_users_tenant_role", "tenant_id", "role"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    email: str = Field(index=True, unique=True)
    full_name: str | None = None
    phone: str | None = None
    role: UserRole = Field(default=UserRole.DRIVER)
    password_hash: str
    is_active: bool = Field(default=True)
    password_reset_required: bool = Field(default=False)
    last_location: str | None = None
    last_location_update: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class Order(SQLModel, table=True):
    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "order_number", name="uq_orders_tenant_order_number"),
        Index("ix_orders_tenant_status", "tenant_id", "status"),
        Index("ix_orders_tenant_driver", "tenant_id", "assigned_driver_id"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    order_number: str = Field(index=True)
    sku: str | None = None
    status: OrderStatus = Field(default=OrderStatus.PENDING)
    assigned_driver_id: str | None = Field(default=None, foreign_key="users.id")
    qr_code_id: str | None = None
    qr_code_data: str | None = None
    qr_code_signature: str | None = None
    qr_code_expires_at: datetime | None = None
    loading_point_name: str
    loading_point_address: str
    loading_point_location: str
    loading_time_window_start: datetime | None = None
    loading_time_window_end: datetime | None = None
    unloading_point_name: str
    unloading_point_address: str
    unloading_point_location: str
    unloading_time_window_start: datetime | None = None
    unloading_time_window_end: datetime | None = None
    waypoints: list[dict[str, Any]] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
    )
    delivery_instructions: str | None = None
    special_handling_instructions: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    estimated_distance_km: float | None = None
    estimated_duration_minutes: int | None = None
    load_activated_at: datetime | None = None
    load_activated_by: str | None = None
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    last_known_location: str | None = None
    last_location_update: datetime | None = None
    created_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class QRCode(SQLModel, table=True):
    __tablename__ = "qr_codes"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    order_id: str = Field(foreign_key="orders.id", index=True, unique=True)
    tracking_code: str = Field(index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    qr_code_data: str
    signature: str
    issued_at_ms: int = Field(sa_column=Column(BigInteger, nullable=False))
    expires_at: datetime
    object_key: str | None = None
    qr_code_image_url: str | None = None
    scan_count: int = Field(default=0)
    last_scanned_at: datetime | None = None
    last_scanned_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc)


class LoadActivation(SQLModel, table=True):
    __tablename__ = "load_activations"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    order_id: str = Field(foreign_key="orders.id", index=True, unique=True)
    driver_id: str = Field(foreign_key="users.id", index=True)
    activated_at: datetime = Field(default_factory=now_utc)
    location: str | None = None
    location_address: str | None = None
    device_info: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    notes: str | None = None


class LocationUpdate(SQLModel, table=True):
    __tablename__ = "location_updates"
    __table_args__ = (
        UniqueConstraint("order_id", "driver_id", "ts", name="uq_location_updates_order_driver_ts"),
        Index("ix_location_updates_tenant_order_ts", "tenant_id", "order_id", "ts"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    order_id: str = Field(foreign_key="orders.id", index=True)
    driver_id: str = Field(foreign_key="users.id", index=True)
    ts: datetime
    location: str
    accuracy_m: float | None = None
    speed_mps: float | None = None
    heading_deg: float | None = None
    battery_level: float | None = None
    created_at: datetime = Field(default_factory=now_utc)


class StatusUpdate(SQLModel, table=True):
    __tablename__ = "status_updates"
    __table_args__ = (Index("ix_status_updates_tenant_order", "tenant_id", "order_id"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    order_id: str = Field(foreign_key="orders.id", index=True)
    actor_id: str | None = Field(default=None, index=True)
    from_status: OrderStatus | None = None
    status: OrderStatus
    notes: str | None = None
    location: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# Identity


class TenantCreate(BaseModel):
    name: str


class TenantRead(ORMReadModel):
    id: str
    name: str
    is_active: bool
    created_at: datetime


class UserCreate(BaseModel):
    email: str
    password: str = PydanticField(min_length=8)
    role: UserRole = UserRole.DRIVER
    full_name: str | None = None
    phone: str | None = None
    is_active: bool = True


class UserRead(ORMReadModel):
    id: str
    tenant_id: str
    email: str
    full_name: str | None = None
    phone: str | None = None
    role: UserRole
    is_active: bool
    password_reset_required: bool
    last_location: str | None = None
    last_location_update: datetime | None = None
    created_at: datetime


class BootstrapAdminRequest(BaseModel):
    tenant_id: str
    email: str
    password: str = PydanticField(min_length=8)
    full_name: str | None = None


class LoginRequest(BaseModel):
    email: str
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: UserRole
    permissions: list[str]


class DriverAccountCreate(BaseModel):
    email: str
    full_name: str | None = None
    phone: str | None = None
    password: str | None = None


class DriverAccountRead(BaseModel):
    user: UserRead
    temporary_password: str | None = None


class DriverPasswordResetRequest(BaseModel):
    driver_id: str
    email: str


class DriverPasswordResetRead(BaseModel):
    driver_id: str
    email: str
    temporary_password: str
    password_reset_required: bool = True


# Orders


class TimeWindow(BaseModel):
    start: datetime | None = None
    end: datetime | None = None


class DeliveryPointInput(BaseModel):
    name: str
    address: str
    location: Any
    time_window: TimeWindow | None = PydanticField(
        default=None,
        validation_alias=AliasChoices("time_window", "timeWindow"),
    )


class OrderCreate(BaseModel):
    order_number: str | None = None
    sku: str | None = None
    loading_point: DeliveryPointInput
    unloading_point: DeliveryPointInput
    waypoints: list[DeliveryPointInput] = PydanticField(default_factory=list)
    assigned_driver_id: str | None = None
    delivery_instructions: str | None = None
    special_handling_instructions: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    estimated_distance_km: float | None = None
    estimated_duration_minutes: int | None = None


class OrderCreationRequest(BaseModel):
    order_data: OrderCreate = PydanticField(validation_alias=AliasChoices("orderData", "order_data"))


class OrderRead(ORMReadModel):
    id: str
    tenant_id: str
    order_number: str
    sku: str | None = None
    status: OrderStatus
    assigned_driver_id: str | None = None
    qr_code_id: str | None = None
    qr_code_data: str | None = None
    qr_code_expires_at: datetime | None = None
    loading_point_name: str
    loading_point_address: str
    loading_point_location: str
    loading_time_window_start: datetime | None = None
    loading_time_window_end: datetime | None = None
    unloading_point_name: str
    unloading_point_address: str
    unloading_point_location: str
    unloading_time_window_start: datetime | None = None
    unloading_time_window_end: datetime | None = None
    waypoints: list[dict[str, Any]]
    delivery_instructions: str | None = None
    special_handling_instructions: str | None = None
    contact_name: str | None = None
    contact_phone: str | None = None
    estimated_distance_km: float | None = None
    estimated_duration_minutes: int | None = None
    load_activated_at: datetime | None = None
    load_activated_by: str | None = None
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    last_known_location: str | None = None
    last_location_update: datetime | None = None
    created_at: datetime
    updated_at: datetime


class QRCodeRead(ORMReadModel):
    id: str
    order_id: str
    tracking_code: str
    payload: dict[str, Any]
    qr_code_data: str
    expires_at: datetime
    qr_code_image_url: str | None = None
    scan_count: int
    last_scanned_at: datetime | None = None
    created_at: datetime


class OrderCreationRead(BaseModel):
    order: OrderRead
    qr_code: QRCodeRead = PydanticField(serialization_alias="qrCode")
    qr_code_url: str = PydanticField(serialization_alias="qrCodeUrl")


class OrderAssignRequest(BaseModel):
    driver_id: str


class OrderStatusRequest(BaseModel):
    status: OrderStatus
    notes: str | None = None
    location: Any | None = None


class StatusUpdateRead(ORMReadModel):
    id: str
    order_id: str
    actor_id: str | None = None
    from_status: OrderStatus | None = None
    status: OrderStatus
    notes: str | None = None
    location: str | None = None
    created_at: datetime


# QR codes and activation


class QRSignatureRequest(CamelModel):
    order_id: str = PydanticField(min_length=1)
    timestamp: int
    tenant_id: str | None = None


class QRSignatureRead(BaseModel):
    signature: str


class QRValidateRequest(CamelModel):
    qr_code_data: str = PydanticField(min_length=1)


class PointProjection(CamelModel):
    name: str
    address: str
    location: dict[str, float] | None = None
    time_window: TimeWindow


class ContactProjection(CamelModel):
    name: str | None = None
    phone: str | None = None


class DriverProjection(CamelModel):
    id: str
    full_name: str | None = None
    phone: str | None = None


class OrderProjection(CamelModel):
    id: str
    order_number: str
    status: OrderStatus
    sku: str | None = None
    loading_point: PointProjection
    unloading_point: PointProjection
    waypoints: list[dict[str, Any]]
    delivery_instructions: str | None = None
    special_handling: str | None = None
    contact: ContactProjection
    estimated_distance: float | None = None
    estimated_duration: int | None = None
    assigned_driver: DriverProjection | None = None
    requires_activation: bool = False


class DeviceInfo(BaseModel):
    app_version: str | None = None
    platform: str | None = None
    os_version: str | None = None


class ActivateLoadRequest(BaseModel):
    order_id: str = PydanticField(min_length=1)
    location: Any | None = None
    location_address: str | None = None
    device_info: DeviceInfo | None = None
    notes: str | None = None


class LoadActivationRead(ORMReadModel):
    id: str
    order_id: str
    driver_id: str
    activated_at: datetime
    location: str | None = None
    location_address: str | None = None
    device_info: dict[str, Any]
    notes: str | None = None


class ActivateLoadRead(BaseModel):
    activation: LoadActivationRead
    order: OrderRead


# Location


class LocationSample(BaseModel):
    latitude: float
    longitude: float
    ts: datetime = PydanticField(
        default_factory=now_utc,
        validation_alias=AliasChoices("ts", "timestamp"),
    )
    accuracy_m: float | None = None
    speed_mps: float | None = None
    heading_deg: float | None = None
    battery_level: float | None = None


class LocationUpdateRead(ORMReadModel):
    id: str
    order_id: str
    driver_id: str
    ts: datetime
    location: str
    accuracy_m: float | None = None
    speed_mps: float | None = None
    heading_deg: float | None = None
    battery_level: float | None = None


class LatestLocationRead(BaseModel):
    order_id: str
    driver_id: str
    latitude: float
    longitude: float
    ts: datetime
