from __future__ import annotations

import hashlib
import logging
import os
import re
import secrets
import string

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from app.domain.errors import AuthError, AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.domain.models import (
    BootstrapAdminRequest,
    DriverAccountCreate,
    Tenant,
    TenantCreate,
    User,
    UserCreate,
    now_utc,
)
from app.domain.permissions import Principal, UserRole
from app.infra.audit import (
    ACTION_DRIVER_ACCOUNT_CREATED,
    ACTION_DRIVER_PASSWORD_RESET,
    record_audit_event,
)
from app.infra.db import get_engine

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8
TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits


def generate_temp_password(length: int = 12) -> str:
    return "".join(secrets.choice(TEMP_PASSWORD_ALPHABET) for _ in range(max(8, length)))


class IdentityService:
    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _hash_password(self, raw_password: str) -> str:
        salt = os.getenv("PASSWORD_SALT", "order-tracker-dev-salt")
        return hashlib.sha256(f"{salt}:{raw_password}".encode()).hexdigest()

    @staticmethod
    def _normalize_email(email: str) -> str:
        normalized = email.strip().lower()
        if not EMAIL_RE.match(normalized):
            raise ValidationError("invalid email format")
        return normalized

    def _new_user(
        self,
        session: Session,
        *,
        tenant_id: str,
        email: str,
        password: str,
        role: UserRole,
        full_name: str | None = None,
        phone: str | None = None,
        is_active: bool = True,
        password_reset_required: bool = False,
    ) -> User:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
        user = User(
            tenant_id=tenant_id,
            email=self._normalize_email(email),
            full_name=full_name,
            phone=phone,
            role=role,
            password_hash=self._hash_password(password),
            is_active=is_active,
            password_reset_required=password_reset_required,
        )
        session.add(user)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError("email already exists") from exc
        session.refresh(user)
        return user

    def create_tenant(self, payload: TenantCreate) -> Tenant:
        with self._session() as session:
            tenant = Tenant(name=payload.name)
            session.add(tenant)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ConflictError("tenant name already exists") from exc
            session.refresh(tenant)
            return tenant

    def get_tenant(self, tenant_id: str) -> Tenant:
        with self._session() as session:
            tenant = session.get(Tenant, tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")
            return tenant

    def bootstrap_admin(self, payload: BootstrapAdminRequest) -> User:
        with self._session() as session:
            if session.get(Tenant, payload.tenant_id) is None:
                raise NotFoundError("tenant not found")
            tenant_users = session.exec(select(User).where(User.tenant_id == payload.tenant_id)).all()
            if tenant_users:
                raise ConflictError("tenant already initialized")
            return self._new_user(
                session,
                tenant_id=payload.tenant_id,
                email=payload.email,
                password=payload.password,
                role=UserRole.ADMIN,
                full_name=payload.full_name,
            )

    def create_user(self, principal: Principal, payload: UserCreate) -> User:
        if payload.role == UserRole.ADMIN and principal.role != UserRole.ADMIN:
            raise AuthorizationError("only admins can create admins")
        with self._session() as session:
            return self._new_user(
                session,
                tenant_id=principal.tenant_id,
                email=payload.email,
                password=payload.password,
                role=payload.role,
                full_name=payload.full_name,
                phone=payload.phone,
                is_active=payload.is_active,
            )

    def list_users(self, tenant_id: str, role: UserRole | None = None) -> list[User]:
        with self._session() as session:
            statement = select(User).where(User.tenant_id == tenant_id)
            if role is not None:
                statement = statement.where(User.role == role)
            return list(session.exec(statement).all())

    def get_user(self, tenant_id: str, user_id: str) -> User:
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None or user.tenant_id != tenant_id:
                raise NotFoundError("user not found")
            return user

    def login(self, email: str, password: str) -> User:
        with self._session() as session:
            user = session.exec(select(User).where(User.email == email.strip().lower())).first()
            if user is None:
                raise AuthError("invalid credentials")
            if not user.is_active:
                raise AuthError("user disabled")
            if user.password_hash != self._hash_password(password):
                raise AuthError("invalid credentials")
            return user

    def create_driver_account(self, principal: Principal, payload: DriverAccountCreate) -> tuple[User, str | None]:
        temporary_password: str | None = None
        password = payload.password
        if password is None:
            temporary_password = generate_temp_password()
            password = temporary_password
        with self._session() as session:
            driver = self._new_user(
                session,
                tenant_id=principal.tenant_id,
                email=payload.email,
                password=password,
                role=UserRole.DRIVER,
                full_name=payload.full_name.strip() if payload.full_name else None,
                phone=payload.phone.strip() if payload.phone else None,
                password_reset_required=temporary_password is not None,
            )
        logger.info("driver account %s created", driver.id)
        record_audit_event(
            tenant_id=principal.tenant_id,
            actor_id=principal.user_id,
            action=ACTION_DRIVER_ACCOUNT_CREATED,
            resource="user",
            detail={"driver_id": driver.id, "generated_password": temporary_password is not None},
        )
        return driver, temporary_password

    def reset_driver_password(self, principal: Principal, driver_id: str, email: str) -> tuple[User, str]:
        with self._session() as session:
            driver = session.get(User, driver_id)
            if driver is None or driver.tenant_id != principal.tenant_id or driver.role != UserRole.DRIVER:
                raise NotFoundError("driver not found")
            if driver.email.lower() != email.strip().lower():
                raise ValidationError("email mismatch")
            temporary_password = generate_temp_password()
            driver.password_hash = self._hash_password(temporary_password)
            driver.password_reset_required = True
            driver.updated_at = now_utc()
            session.add(driver)
            session.commit()
            session.refresh(driver)
        logger.info("password reset for driver %s", driver_id)
        record_audit_event(
            tenant_id=principal.tenant_id,
            actor_id=principal.user_id,
            action=ACTION_DRIVER_PASSWORD_RESET,
            resource="user",
            detail={"driver_id": driver_id},
        )
        return driver, temporary_password
