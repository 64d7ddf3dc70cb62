from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import AdminOrDispatcher, CurrentPrincipal
from app.domain.models import (
    BootstrapAdminRequest,
    LoginRequest,
    TenantCreate,
    TenantRead,
    TokenResponse,
    UserCreate,
    UserRead,
)
from app.domain.permissions import UserRole, permissions_for_role
from app.infra.auth import create_access_token
from app.services.identity_service import IdentityService

router = APIRouter()


def get_identity_service() -> IdentityService:
    return IdentityService()


Service = Annotated[IdentityService, Depends(get_identity_service)]


@router.post("/tenants", response_model=TenantRead, status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, service: Service) -> TenantRead:
    tenant = service.create_tenant(payload)
    return TenantRead.model_validate(tenant)


@router.get("/tenants/current", response_model=TenantRead)
def get_current_tenant(principal: CurrentPrincipal, service: Service) -> TenantRead:
    return TenantRead.model_validate(service.get_tenant(principal.tenant_id))


@router.post("/bootstrap-admin", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def bootstrap_admin(payload: BootstrapAdminRequest, service: Service) -> UserRead:
    user = service.bootstrap_admin(payload)
    return UserRead.model_validate(user)


@router.post("/login", response_model=TokenResponse)
def login(payload: LoginRequest, service: Service) -> TokenResponse:
    user = service.login(payload.email, payload.password)
    role = UserRole(user.role)
    token = create_access_token(user_id=user.id, tenant_id=user.tenant_id, role=role)
    return TokenResponse(access_token=token, role=role, permissions=permissions_for_role(role))


@router.get("/me", response_model=UserRead)
def get_me(principal: CurrentPrincipal, service: Service) -> UserRead:
    return UserRead.model_validate(service.get_user(principal.tenant_id, principal.user_id))


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, principal: AdminOrDispatcher, service: Service) -> UserRead:
    user = service.create_user(principal, payload)
    return UserRead.model_validate(user)


@router.get("/users", response_model=list[UserRead])
def list_users(
    principal: AdminOrDispatcher,
    service: Service,
    role: Annotated[UserRole | None, Query()] = None,
) -> list[UserRead]:
    users = service.list_users(principal.tenant_id, role)
    return [UserRead.model_validate(item) for item in users]


@router.get("/users/{user_id}", response_model=UserRead)
def get_user(user_id: str, principal: AdminOrDispatcher, service: Service) -> UserRead:
    return UserRead.model_validate(service.get_user(principal.tenant_id, user_id))
