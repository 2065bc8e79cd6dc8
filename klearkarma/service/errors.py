from __future__ import annotations

from typing import Optional

from pydantic import ValidationError as PydanticValidationError


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries both an HTTP status_code and a stable error_code:
    - validation_error (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"

    @classmethod
    def from_pydantic(cls, exc: PydanticValidationError) -> "ValidationError":
        """Caller-supplied values that a record model refused."""
        errors = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
            for err in exc.errors()
        ]
        return cls("invalid field values", detail={"errors": errors})


class AuthenticationError(ServiceError):
    """Missing, invalid or expired credentials (401).

    Messages stay generic; the reason a token failed is only logged.
    """
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Authenticated but lacking role, permission or ownership (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"

    @classmethod
    def resource(cls, kind: str, resource_id: str) -> "NotFoundError":
        return cls(f"{kind} not found", detail={f"{kind}_id": resource_id})


class ConflictError(ServiceError):
    """Duplicate unique key or a state change that already happened (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429). Raised by throttling layers in front of services."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    status_code = 500
    error_code = "server_error"


class SlotUnavailableError(ConflictError):
    """The practitioner already holds a live booking at this date and time."""

    def __init__(self, date: str, time: str) -> None:
        super().__init__("time slot already booked", detail={"date": date, "time": time})


class InvalidTransitionError(ConflictError):
    def __init__(self, current: str, target: str) -> None:
        if current == target:
            message = f"appointment already {target}"
        else:
            message = f"cannot move appointment from {current} to {target}"
        super().__init__(message, detail={"from": current, "to": target})


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "SlotUnavailableError",
    "InvalidTransitionError",
    "RateLimitedError",
    "ServerError",
]
