"""
Shared error handling for the Bhandara platform.
"""

from enum import Enum
from typing import Dict, Any, Optional
from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Fixed set of failure kinds raised by the platform substrate."""
    CONFIG_ERROR = "CONFIG_ERROR"
    CACHE_UNAVAILABLE = "CACHE_UNAVAILABLE"
    INVALID_ARGUMENT = "INVALID_ARGUMENT"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"


DEFAULT_STATUS_CODES: Dict[ErrorKind, int] = {
    ErrorKind.CONFIG_ERROR: 500,
    ErrorKind.CACHE_UNAVAILABLE: 503,
    ErrorKind.INVALID_ARGUMENT: 400,
    ErrorKind.UPSTREAM_ERROR: 502,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.NOT_FOUND: 404,
}


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    kind: ErrorKind
    message: str
    status: int
    details: Dict[str, Any] = {}


class PlatformError(Exception):
    """Single error value for every platform failure, tagged by kind."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.kind = ErrorKind(kind)
        self.message = message
        self.details = details or {}
        self.status_code = status_code or DEFAULT_STATUS_CODES[self.kind]
        super().__init__(message)

    def __repr__(self) -> str:
        return f"PlatformError(kind={self.kind.value!r}, message={self.message!r})"

    def to_response(self, request_id: Optional[str] = None) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id,
            kind=self.kind,
            message=self.message,
            status=self.status_code,
            details=self.details,
        )


def config_error(message: str, **details: Any) -> PlatformError:
    return PlatformError(ErrorKind.CONFIG_ERROR, message, details)


def invalid_argument(message: str, **details: Any) -> PlatformError:
    return PlatformError(ErrorKind.INVALID_ARGUMENT, message, details)


def cache_unavailable(message: str, **details: Any) -> PlatformError:
    return PlatformError(ErrorKind.CACHE_UNAVAILABLE, message, details)


def upstream_error(message: str, **details: Any) -> PlatformError:
    return PlatformError(ErrorKind.UPSTREAM_ERROR, message, details)


def unauthorized(message: str = "Authentication required", **details: Any) -> PlatformError:
    return PlatformError(ErrorKind.UNAUTHORIZED, message, details)


def not_found(message: str = "Resource not found", **details: Any) -> PlatformError:
    return PlatformError(ErrorKind.NOT_FOUND, message, details)
