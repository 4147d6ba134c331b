"""Error taxonomy for the refresh pipeline."""

from typing import Any


class RefreshError(Exception):
    """Base exception for refresh pipeline errors."""

    code = "REFRESH_ERROR"

    def __init__(self, message: str, *, code: str | None = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details

    def to_details(self) -> dict[str, Any]:
        """Serializable form stored in the audit log's error_details."""
        return {
            "code": self.code,
            "error": type(self).__name__,
            "message": self.message,
            "details": self.details,
        }


class RegistryError(RefreshError):
    """The refresh registry could not be read or written. Aborts a sweep."""

    code = "REGISTRY_ERROR"


class DispatchError(RefreshError):
    """A worker invocation failed to start."""

    code = "DISPATCH_ERROR"


class SourceReadError(RefreshError):
    """A fetch from the warehouse failed."""

    code = "SOURCE_READ_ERROR"


class WriteConflictError(RefreshError):
    """A destination write violated a constraint other than the natural key."""

    code = "WRITE_CONFLICT"


class ChainDepthExceeded(RefreshError):
    """A run would continue past the configured chain-depth ceiling."""

    code = "CHAIN_DEPTH_EXCEEDED"


# Warehouse error codes mapped to operator-facing messages.
SOURCE_ERROR_MESSAGES: dict[str, str] = {
    "PERMISSION_DENIED": "Warehouse permission denied - check service account permissions",
    "TIMEOUT": "Warehouse query timeout - consider reducing batch size",
    "RATE_LIMIT_EXCEEDED": "Warehouse rate limit exceeded",
    "INVALID_ARGUMENT": "Invalid query parameters",
    "NOT_FOUND": "Warehouse table or dataset not found",
}


def describe_source_error(code: str | None, fallback: str) -> str:
    """Friendly message for a warehouse error code."""
    if code and code in SOURCE_ERROR_MESSAGES:
        return SOURCE_ERROR_MESSAGES[code]
    return fallback
