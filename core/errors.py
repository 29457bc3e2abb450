"""
core/errors.py -- The single application error type and its HTTP rendering.

Every failure the app reports to a client is an AppError. The `type` field is
the discriminator: exception handlers and the CSRF middleware match on it
instead of walking a chain of isinstance checks across framework error
classes.

  AppError.type      -- ErrorType category, stable and machine-readable
  AppError.status_code
  AppError.message   -- safe for clients
  AppError.details   -- optional structured payload (validation fields)
  AppError.internal  -- underlying cause; logged, never serialized

Factory functions (csrf_error(), not_found(), ...) return a NEW instance on
every call. Sharing one module-level instance would let with_context() on one
request leak path/request_id into another.

Layer rule: core/ may import third-party libraries but nothing from api/,
web/, auth/, or middleware/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from enum import Enum
from http import HTTPStatus
from typing import Any, Optional

from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger("formwork.errors")


class ErrorType(str, Enum):
    validation = "validation"
    authentication = "authentication"
    authorization = "authorization"
    not_found = "not_found"
    conflict = "conflict"
    rate_limit = "rate_limit"
    internal = "internal"
    external = "external"
    timeout = "timeout"
    csrf = "csrf"
    sanitization = "sanitization"


class AppError(Exception):
    """Application error carrying category, HTTP status, and an internal cause."""

    def __init__(
        self,
        type: ErrorType,
        status_code: int,
        message: str,
        details: Any = None,
        internal: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.type = type
        self.status_code = status_code
        self.message = message
        self.details = details
        self.internal = internal
        self.request_id: Optional[str] = None
        self.path: Optional[str] = None
        self.method: Optional[str] = None

    def __str__(self) -> str:
        if self.internal is not None:
            return str(self.internal)
        return self.message

    def __repr__(self) -> str:
        return f"AppError(type={self.type.value!r}, status_code={self.status_code}, message={self.message!r})"

    def with_context(self, request: Request) -> "AppError":
        """Attach path, method and request ID from the current request."""
        self.request_id = getattr(request.state, "request_id", None)
        self.path = request.url.path
        self.method = request.method
        return self

    def with_internal(self, exc: BaseException) -> "AppError":
        self.internal = exc
        return self


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def bad_request(message: str = "Bad request", details: Any = None) -> AppError:
    return AppError(ErrorType.validation, 400, message, details)


def validation_failed(details: Any) -> AppError:
    return AppError(ErrorType.validation, 400, "Validation failed", details)


_LOC_PREFIXES = frozenset({"body", "query", "path", "header", "cookie"})


def validation_details(errors: list[dict]) -> list[dict[str, str]]:
    """Flatten pydantic error dicts into [{field, message}] for the envelope.

    The leading location segment ("body", "query", ...) is dropped. Errors
    raised by a model validator carry no field and are reported as "__all__".
    """
    details = []
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in _LOC_PREFIXES]
        message = err.get("msg", "Invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, ") :]
        details.append({"field": ".".join(loc) or "__all__", "message": message})
    return details


def unauthorized(message: str = "Unauthorized") -> AppError:
    return AppError(ErrorType.authentication, 401, message)


def forbidden(message: str = "Forbidden") -> AppError:
    return AppError(ErrorType.authorization, 403, message)


def not_found(message: str = "Resource not found") -> AppError:
    return AppError(ErrorType.not_found, 404, message)


def conflict(message: str = "Resource already exists") -> AppError:
    return AppError(ErrorType.conflict, 409, message)


def too_many_requests(message: str = "Rate limit exceeded") -> AppError:
    return AppError(ErrorType.rate_limit, 429, message)


def internal_error(message: str = "Internal server error") -> AppError:
    return AppError(ErrorType.internal, 500, message)


def service_unavailable(message: str = "Service unavailable") -> AppError:
    return AppError(ErrorType.external, 503, message)


def csrf_error() -> AppError:
    """Generic client-facing CSRF failure. The specific reason goes in `internal`."""
    return AppError(ErrorType.csrf, 403, "Invalid CSRF token")


_STATUS_TYPES: dict[int, ErrorType] = {
    400: ErrorType.validation,
    401: ErrorType.authentication,
    403: ErrorType.authorization,
    404: ErrorType.not_found,
    405: ErrorType.validation,
    408: ErrorType.timeout,
    409: ErrorType.conflict,
    422: ErrorType.validation,
    429: ErrorType.rate_limit,
    503: ErrorType.external,
}


def from_status(status_code: int, message: Optional[str] = None) -> AppError:
    """Map a bare HTTP status (e.g. a framework 404/405) onto an AppError."""
    err_type = _STATUS_TYPES.get(status_code, ErrorType.internal if status_code >= 500 else ErrorType.validation)
    return AppError(err_type, status_code, message or _status_text(status_code))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _status_text(status_code: int) -> str:
    try:
        return HTTPStatus(status_code).phrase
    except ValueError:
        return "Error"


def error_payload(exc: AppError, hide_internal_messages: bool = False) -> dict:
    """Build the JSON error envelope. The internal cause is never included.

    5xx responses drop `details`; in production the 5xx message is replaced by
    a generic one as well.
    """
    message = exc.message
    details = exc.details
    if exc.status_code >= 500:
        details = None
        if hide_internal_messages:
            message = "Internal server error"
    return {
        "error": {
            "type": exc.type.value,
            "error": _status_text(exc.status_code),
            "message": message,
            "details": details,
            "code": exc.status_code,
            "path": exc.path,
            "method": exc.method,
            "request_id": exc.request_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    }


def log_app_error(exc: AppError, request: Request) -> None:
    """Log an AppError with request context. Only errors carrying an internal cause are logged."""
    if exc.internal is None:
        return
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        "application error type=%s code=%d message=%r cause=%r path=%s method=%s request_id=%s remote_ip=%s",
        exc.type.value,
        exc.status_code,
        exc.message,
        str(exc.internal),
        request.url.path,
        request.method,
        getattr(request.state, "request_id", None),
        request.client.host if request.client else "unknown",
    )


def error_response(request: Request, exc: AppError, hide_internal_messages: bool = False) -> JSONResponse:
    """Attach request context, log, and render an AppError as a JSONResponse."""
    if exc.path is None:
        exc.with_context(request)
    log_app_error(exc, request)
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc, hide_internal_messages=hide_internal_messages),
    )
