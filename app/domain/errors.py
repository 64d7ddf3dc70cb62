from __future__ import annotations

from typing import Any


class OrderTrackingError(Exception):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.error_code, "message": str(self), **self.extra}


class ValidationError(OrderTrackingError):
    status_code = 400
    error_code = "validation_error"


class AuthError(OrderTrackingError):
    status_code = 401
    error_code = "unauthorized"


class ExpiredCodeError(AuthError):
    error_code = "expired_code"


class InvalidSignatureError(AuthError):
    error_code = "invalid_signature"


class AuthorizationError(OrderTrackingError):
    status_code = 403
    error_code = "forbidden"


class AccessDeniedError(AuthorizationError):
    error_code = "access_denied"


class NotAssignedError(AuthorizationError):
    error_code = "not_assigned"


class NotFoundError(OrderTrackingError):
    status_code = 404
    error_code = "not_found"


class ConflictError(OrderTrackingError):
    status_code = 409
    error_code = "conflict"


class ActivationRequiredError(ConflictError):
    error_code = "activation_required"

    def __init__(self, message: str = "load must be activated before scanning QR code") -> None:
        super().__init__(message, requiresActivation=True)


class ConfigurationError(OrderTrackingError):
    """Deploy-time misconfiguration; not worth retrying."""

    status_code = 500
    error_code = "configuration_error"


class UpstreamError(OrderTrackingError):
    status_code = 500
    error_code = "upstream_error"

    def __init__(self, message: str, *, step: str) -> None:
        super().__init__(message, step=step)
        self.step = step
