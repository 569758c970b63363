"""Custom exceptions for the cellsync backend."""

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "NotFoundError": "The requested resource was not found.",
    "AuthenticationError": "Authentication failed. Please log in again.",
    "ValidationError": "The provided input is invalid. Please check and try again.",
    "StateTokenError": "The authorization request could not be verified. Please try again.",
    "BrokerUnavailable": "The integration service is temporarily unavailable.",
    "ConnectionNotFound": "The integration connection no longer exists. Please reconnect.",
    "ConnectionInactive": "The integration connection is not active. Please reconnect.",
    "ProviderMismatch": "No matching integration connection was found. Please connect again.",
    "SyncFetchError": "Contacts could not be fetched from the provider.",
    "PersistenceError": "A database error occurred. Please try again.",
    "CircuitBreakerOpen": "A service dependency is temporarily unavailable. Please try again in a moment.",
    "ValueError": "The provided value is invalid.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: Exception) -> str:
    """Map an exception to a safe, user-facing error message.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    # Walk the MRO to find the most specific matching type
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class CellSyncException(Exception):
    """Base exception for all cellsync-specific errors."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            status_code: HTTP status code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class NotFoundError(CellSyncException):
    """Resource not found error (404)."""

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' not found"
        super().__init__(
            message=message,
            code="NOT_FOUND",
            status_code=404,
            details={"resource": resource, "resource_id": resource_id},
        )


class AuthenticationError(CellSyncException):
    """No resolvable principal (401)."""

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(
            message=message,
            code="UNAUTHORIZED",
            status_code=401,
        )


class ValidationError(CellSyncException):
    """Missing or empty required input (400)."""

    def __init__(
        self, message: str, field: str | None = None, details: dict[str, Any] | None = None
    ) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Name of the invalid field.
            details: Additional validation details.
        """
        error_details = details or {}
        if field:
            error_details["field"] = field
        super().__init__(
            message=message,
            code="VALIDATION_ERROR",
            status_code=400,
            details=error_details,
        )


class StateTokenError(CellSyncException):
    """OAuth state token is missing, malformed, or belongs to another principal."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message=message, code=code, status_code=400)


class BrokerUnavailable(CellSyncException):
    """The connection broker call failed or timed out (502)."""

    def __init__(self, operation: str, message: str | None = None) -> None:
        super().__init__(
            message=message or f"Connection broker unavailable during {operation}",
            code="BROKER_UNAVAILABLE",
            status_code=502,
            details={"operation": operation},
        )


class ConnectionNotFound(CellSyncException):
    """A stored connection ID no longer resolves at the broker (404)."""

    def __init__(self, connection_id: str | None, message: str | None = None) -> None:
        super().__init__(
            message=message or f"Connection '{connection_id}' not found",
            code="CONNECTION_NOT_FOUND",
            status_code=404,
            details={"connection_id": connection_id},
        )


class ConnectionInactive(CellSyncException):
    """The connection resolves but its status is outside the active set (409)."""

    def __init__(self, connection_id: str, status: str | None) -> None:
        super().__init__(
            message=f"Connection status: {status}",
            code="CONNECTION_INACTIVE",
            status_code=409,
            details={"connection_id": connection_id, "status": status},
        )
        self.status = status


class ProviderMismatch(CellSyncException):
    """Reconciliation found no broker connection for the provider (404)."""

    def __init__(self, provider: str) -> None:
        super().__init__(
            message=f"{provider} integration not connected. Please connect {provider} first.",
            code="PROVIDER_MISMATCH",
            status_code=404,
            details={"provider": provider},
        )


class SyncFetchError(CellSyncException):
    """Pulling records from the provider failed.

    ``reconnect_required`` is set when the failure looks like expired or
    revoked credentials so the caller can prompt a reconnect.
    """

    def __init__(self, provider: str, message: str, reconnect_required: bool = False) -> None:
        super().__init__(
            message=message,
            code="RECONNECT_REQUIRED" if reconnect_required else "SYNC_FETCH_ERROR",
            status_code=401 if reconnect_required else 502,
            details={"provider": provider, "reconnect_required": reconnect_required},
        )
        self.reconnect_required = reconnect_required


class PersistenceError(CellSyncException):
    """A store write or read failed (500)."""

    def __init__(self, message: str = "A database error occurred") -> None:
        super().__init__(
            message=message,
            code="PERSISTENCE_ERROR",
            status_code=500,
        )
