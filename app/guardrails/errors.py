"""Structured API errors: machine-readable codes, HTTP status mapping, and the JSON error payload."""
import logging
from enum import Enum
from typing import Dict, Optional

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.requests import Request

from app.core.logging import get_logger, request_id_for, request_logger


class ErrorCode(str, Enum):
    # Client errors (4xx)
    BAD_REQUEST = "BAD_REQUEST"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_FORMAT = "INVALID_FORMAT"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"
    NOT_FOUND = "NOT_FOUND"
    RATE_LIMITED = "RATE_LIMITED"

    # Server errors (5xx)
    CONVERSION_FAILED = "CONVERSION_FAILED"
    CONVERSION_TIMEOUT = "CONVERSION_TIMEOUT"
    CONVERSION_CANCELLED = "CONVERSION_CANCELLED"
    FILE_READ_ERROR = "FILE_READ_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppError(Exception):
    """Error with an HTTP status, a stable code, and a client-safe message.
    Why available: Routes raise these and the registered handler turns them into the JSON error payload."""

    def __init__(
        self,
        message: str,
        status_code: int,
        code: ErrorCode,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.headers = dict(headers or {})

    @classmethod
    def bad_request(cls, message: str, code: ErrorCode = ErrorCode.BAD_REQUEST) -> "AppError":
        return cls(message, 400, code)

    @classmethod
    def validation_error(cls, message: str) -> "AppError":
        return cls(message, 400, ErrorCode.VALIDATION_ERROR)

    @classmethod
    def missing_field(cls, field: str) -> "AppError":
        return cls(f"Missing required field: '{field}'", 400, ErrorCode.MISSING_FIELD)

    @classmethod
    def invalid_format(cls, fmt: str, side: str) -> "AppError":
        return cls(f"Invalid {side} format: {fmt}", 400, ErrorCode.INVALID_FORMAT)

    @classmethod
    def file_too_large(cls, max_size: int) -> "AppError":
        max_mb = round(max_size / (1024 * 1024))
        return cls(f"File too large. Maximum size is {max_mb}MB", 413, ErrorCode.FILE_TOO_LARGE)

    @classmethod
    def method_not_allowed(cls, method: str) -> "AppError":
        return cls(f"Method {method} not allowed", 405, ErrorCode.METHOD_NOT_ALLOWED)

    @classmethod
    def not_found(cls, message: str = "Not found") -> "AppError":
        return cls(message, 404, ErrorCode.NOT_FOUND)

    @classmethod
    def rate_limited(cls, headers: Optional[Dict[str, str]] = None) -> "AppError":
        return cls("Too many requests. Please try again later.", 429, ErrorCode.RATE_LIMITED, headers)

    @classmethod
    def conversion_failed(cls, details: Optional[str] = None) -> "AppError":
        message = f"Conversion failed: {details}" if details else "Conversion failed"
        return cls(message, 500, ErrorCode.CONVERSION_FAILED)

    @classmethod
    def conversion_timeout(cls, seconds: float) -> "AppError":
        return cls(f"Conversion timed out after {seconds:g}s", 504, ErrorCode.CONVERSION_TIMEOUT)

    @classmethod
    def file_read_error(cls) -> "AppError":
        return cls("Failed to read output file", 500, ErrorCode.FILE_READ_ERROR)

    @classmethod
    def internal(cls, message: str = "Internal server error") -> "AppError":
        return cls(message, 500, ErrorCode.INTERNAL_ERROR)


def error_payload(err: AppError, request_id: Optional[str] = None) -> dict:
    payload = {"success": False, "error": err.message, "code": err.code.value}
    if request_id:
        payload["request_id"] = request_id
    return payload


def error_response(err: AppError, request_id: Optional[str] = None) -> JSONResponse:
    """Build the standard JSON error response for an AppError (status, payload, and any extra headers)."""
    return JSONResponse(
        status_code=err.status_code,
        content=error_payload(err, request_id),
        headers=err.headers or None,
    )


def as_http_500(e: Exception, logger: Optional[logging.LoggerAdapter] = None) -> AppError:
    """Log exception with traceback and return a generic 500 AppError (no internal details leaked).
    Why available: Centralized handling so the API never leaks stack traces or host paths to clients."""
    (logger or get_logger("errors")).error("Unhandled error: %s", type(e).__name__, exc_info=e)
    return AppError.internal()


class AppErrorRoute(APIRoute):
    """Route class that turns unexpected exceptions into AppError.internal inside the router.
    Why available: The 500 then flows back through the app middleware (request id, rate-limit headers,
    completion log) instead of being answered by the outermost server-error fallback."""

    def get_route_handler(self):
        handler = super().get_route_handler()

        async def route_handler(request: Request):
            try:
                return await handler(request)
            except (AppError, StarletteHTTPException, RequestValidationError):
                raise
            except Exception as e:
                raise as_http_500(e, request_logger(request)) from e

        return route_handler


_STATUS_CODES = {
    400: ErrorCode.BAD_REQUEST,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.METHOD_NOT_ALLOWED,
    413: ErrorCode.FILE_TOO_LARGE,
    429: ErrorCode.RATE_LIMITED,
}


def register_exception_handlers(app: FastAPI) -> None:
    """Route every error (ours, Starlette's, validation, unexpected) through the same JSON shape."""

    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError):
        if exc.status_code >= 500:
            request_logger(request).error("%s: %s", exc.code.value, exc.message)
        return error_response(exc, request_id_for(request))

    @app.exception_handler(StarletteHTTPException)
    async def _http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 405:
            err = AppError.method_not_allowed(request.method)
        else:
            code = _STATUS_CODES.get(exc.status_code)
            if code is None:
                code = ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.BAD_REQUEST
            err = AppError(str(exc.detail), exc.status_code, code)
        err.headers.update(getattr(exc, "headers", None) or {})
        return error_response(err, request_id_for(request))

    @app.exception_handler(RequestValidationError)
    async def _validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p not in ("query", "body"))
        message = f"{loc}: {first.get('msg', 'invalid value')}" if loc else first.get("msg", "Invalid request")
        return error_response(AppError.validation_error(message), request_id_for(request))

    # last resort for errors outside the routes (e.g. middleware); answered outside RequestTimingMiddleware
    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception):
        return error_response(as_http_500(exc, request_logger(request)), request_id_for(request))
