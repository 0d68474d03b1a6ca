"""
Application error taxonomy.

Every error raised across a service boundary derives from OrderflowError,
which carries a stable machine-readable code, a human message, an HTTP
status used by the API exception handler, and free-form context for logs.
"""

from typing import Any, Optional


class OrderflowError(Exception):
    """Base exception for all application errors."""

    status_code: int = 500
    default_code: str = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, **context: Any):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        """Serialize the error for an API response body."""
        data: dict[str, Any] = {"message": self.message, "code": self.code}
        if "errors" in self.context:
            data["errors"] = self.context["errors"]
        return data


class UnauthorizedError(OrderflowError):
    """Missing, malformed or expired session token."""

    status_code = 401
    default_code = "UNAUTHORIZED"


class ForbiddenError(OrderflowError):
    """Valid session lacking the privilege for the requested action."""

    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(OrderflowError):
    """Requested entity does not exist."""

    status_code = 404
    default_code = "NOT_FOUND"


class InvalidInputError(OrderflowError):
    """Request failed schema or range validation."""

    status_code = 400
    default_code = "INVALID_INPUT"


class PreconditionFailedError(OrderflowError):
    """Entity is not in a state that permits the requested operation."""

    status_code = 412
    default_code = "PRECONDITION_FAILED"


class NotYetShippedError(PreconditionFailedError):
    """Shipment documents requested before the carrier order exists."""

    default_code = "NOT_YET_SHIPPED"


class ConcurrentUpdateError(PreconditionFailedError):
    """A conditional write lost the race against another writer."""

    status_code = 409
    default_code = "CONCURRENT_UPDATE"


class GatewayError(OrderflowError):
    """
    External provider rejected or failed a call.

    Carries the provider's own error code and description so admins can use
    them in dispute handling.
    """

    status_code = 502
    default_code = "GATEWAY_ERROR"

    def __init__(
        self,
        message: str,
        provider: str,
        provider_code: Optional[str] = None,
        provider_description: Optional[str] = None,
        http_status: Optional[int] = None,
        code: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message, code=code, **context)
        self.provider = provider
        self.provider_code = provider_code
        self.provider_description = provider_description
        self.http_status = http_status

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["provider"] = self.provider
        data["provider_code"] = self.provider_code
        data["provider_description"] = self.provider_description
        return data


class GatewayUnavailableError(GatewayError):
    """Provider credentials are missing or the provider cannot be reached."""

    status_code = 503
    default_code = "GATEWAY_UNAVAILABLE"


class GatewayTimeoutError(GatewayError):
    """
    Provider call exceeded its timeout.

    The outcome of the remote operation is unknown; callers must reconcile
    through webhooks or a status check rather than treat it as failed.
    """

    status_code = 504
    default_code = "GATEWAY_TIMEOUT"
