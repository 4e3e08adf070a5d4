from __future__ import annotations

import asyncio
from typing import Any


class SiteNotifyError(Exception):
    """Base error for sitenotify."""

    code = "INTERNAL_ERROR"


class DeliveryError(SiteNotifyError):
    """Delivery pipeline failure."""

    code = "DELIVERY_ERROR"


class TransportError(DeliveryError):
    """Push/SMS adapter failure carrying the provider error code."""

    def __init__(self, message: str, *, code: str = "TRANSPORT_ERROR", retryable: bool = True) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable


class CircuitOpenError(DeliveryError):
    """Call rejected because the service circuit breaker is not admitting traffic."""

    code = "CIRCUIT_BREAKER_OPEN"

    def __init__(self, service_name: str, *, alerts: list[Any] | None = None) -> None:
        super().__init__(f"{service_name} is temporarily unavailable")
        self.service_name = service_name
        self.alerts = list(alerts or [])


class RetryExhaustedError(DeliveryError):
    """Retry sequence ended without success."""

    code = "RETRY_EXHAUSTED"

    def __init__(
        self,
        message: str,
        *,
        reason: str,
        attempts: int,
        last_error: BaseException,
        alerts: list[Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.reason = reason
        self.attempts = attempts
        self.last_error = last_error
        self.alerts = list(alerts or [])


class DeliveryCancelledError(DeliveryError):
    """Retry sequence cancelled between attempts."""

    code = "DELIVERY_CANCELLED"


class NotificationValidationError(SiteNotifyError):
    """Notification payload failed validation."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class AccessDeniedError(SiteNotifyError):
    """Caller lacks the capability for the requested operation."""

    code = "AUTHORIZATION_ERROR"


class NotificationNotFoundError(SiteNotifyError):
    """Notification does not exist or is not visible to the caller."""

    code = "NOTIFICATION_NOT_FOUND"


class NotificationStateError(SiteNotifyError):
    """Requested status change is not a legal transition."""

    code = "INVALID_STATUS_TRANSITION"


class ContentIntegrityError(SiteNotifyError):
    """Sealed notification content failed authentication or hash verification."""

    code = "CONTENT_INTEGRITY_ERROR"


class AuditImmutableError(SiteNotifyError):
    """Audit records are append-only."""

    code = "AUDIT_IMMUTABLE"


def error_code_for(error: BaseException) -> str:
    # Resolve a stable error code for audit rows, alert keys and retry classification.
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return "TIMEOUT"
    if isinstance(error, (ConnectionError, OSError)):
        return "NETWORK_ERROR"
    return "UNKNOWN_ERROR"
