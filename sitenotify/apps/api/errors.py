from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from sitenotify.apps.api.response import error_response
from sitenotify.core.errors import (
    AccessDeniedError,
    CircuitOpenError,
    ContentIntegrityError,
    NotificationNotFoundError,
    NotificationStateError,
    NotificationValidationError,
    SiteNotifyError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Ordered most specific first; the first matching class decides the status code.
_DOMAIN_STATUS: tuple[tuple[type[SiteNotifyError], int], ...] = (
    (NotificationValidationError, 422),
    (AccessDeniedError, 403),
    (NotificationNotFoundError, 404),
    (NotificationStateError, 409),
    (CircuitOpenError, 503),
    (ContentIntegrityError, 500),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def status_for_error(exc: SiteNotifyError) -> int:
    for error_type, status_code in _DOMAIN_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def domain_exception_handler(request: Request, exc: SiteNotifyError) -> JSONResponse:
    # Map domain errors onto HTTP status codes while keeping their stable error code.
    status_code = status_for_error(exc)
    details: dict[str, Any] | None = None
    if isinstance(exc, NotificationValidationError) and exc.field:
        details = {"field": exc.field}
    elif isinstance(exc, CircuitOpenError):
        details = {"service_name": exc.service_name}
    if status_code >= 500:
        logger.error("request_failed path=%s error_code=%s", request.url.path, exc.code, exc_info=exc)
        message = "Internal server error" if status_code == 500 else str(exc)
    else:
        message = str(exc)
    payload = error_response(request=request, code=exc.code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to clients.
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)
