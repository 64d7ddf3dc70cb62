from __future__ import annotations

from collections.abc import Callable
from typing import Annotated, Any

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session

from app.domain.errors import AuthError, AuthorizationError
from app.domain.models import User
from app.domain.permissions import Principal, UserRole
from app.infra.auth import decode_access_token
from app.infra.db import get_engine
from app.infra.tenant import set_request_context

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/identity/login", auto_error=False)


def get_current_claims(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
) -> dict[str, Any]:
    if not token:
        raise AuthError("authorization required")
    try:
        claims = decode_access_token(token)
    except Exception as exc:
        raise AuthError("invalid authorization") from exc
    request.state.claims = claims
    set_request_context(claims.get("tenant_id"), claims.get("sub"))
    return claims


def resolve_principal(claims: dict[str, Any]) -> Principal:
    user_id = claims.get("sub")
    tenant_id = claims.get("tenant_id")
    if not isinstance(user_id, str) or not isinstance(tenant_id, str):
        raise AuthError("invalid authorization")
    with Session(get_engine()) as session:
        user = session.get(User, user_id)
        if user is None or not user.is_active or user.tenant_id != tenant_id:
            raise AuthError("invalid authorization")
        # The stored role wins over whatever the token was minted with.
        return Principal(user_id=user.id, tenant_id=user.tenant_id, role=UserRole(user.role))


def get_current_principal(
    claims: Annotated[dict[str, Any], Depends(get_current_claims)],
) -> Principal:
    return resolve_principal(claims)


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]


def require_roles(*roles: UserRole) -> Callable[[Principal], Principal]:
    expected = set(roles)

    def _checker(principal: CurrentPrincipal) -> Principal:
        if principal.role not in expected:
            allowed = ", ".join(sorted(str(role) for role in expected))
            raise AuthorizationError(f"requires role: {allowed}")
        return principal

    return _checker


AdminOrDispatcher = Annotated[Principal, Depends(require_roles(UserRole.ADMIN, UserRole.DISPATCHER))]
