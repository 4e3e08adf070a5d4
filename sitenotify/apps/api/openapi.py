from __future__ import annotations

from typing import Any

from sitenotify.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message, details=details)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: _response("Unauthorized", code="AUTH_UNAUTHORIZED", message="Missing X-User-Id or X-User-Role header"),
    403: _response("Forbidden", code="AUTHORIZATION_ERROR", message="role worker lacks CREATE_NOTIFICATION"),
    404: _response("Not found", code="NOTIFICATION_NOT_FOUND", message="notification not found"),
    409: _response(
        "Invalid status transition",
        code="INVALID_STATUS_TRANSITION",
        message="notification cannot be acknowledged while PENDING",
    ),
    422: _response(
        "Validation error",
        code="VALIDATION_ERROR",
        message="title must be at most 100 characters",
        details={"field": "title"},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response(
        "Service unavailable",
        code="CIRCUIT_BREAKER_OPEN",
        message="PUSH is temporarily unavailable",
        details={"service_name": "PUSH"},
    ),
}
