from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import math
import random
from typing import Any, Awaitable, Callable

from sitenotify.core.config import Settings, get_settings
from sitenotify.core.errors import (
    CircuitOpenError,
    DeliveryCancelledError,
    RetryExhaustedError,
    TransportError,
    error_code_for,
)
from sitenotify.domain.state import EVENT_RETRY, SEVERITY_HIGH, SEVERITY_MEDIUM
from sitenotify.services.alerts import AdminAlert
from sitenotify.services.audit import AuditLog
from sitenotify.services.error_tracking import ErrorContext, ErrorTracker
from sitenotify.services.resilience import CircuitBreakerManager
from sitenotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

# Errors that can never succeed on a retry; they abort the sequence immediately.
NON_RETRYABLE_ERROR_CODES = frozenset(
    {
        "VALIDATION_ERROR",
        "AUTHENTICATION_ERROR",
        "AUTHORIZATION_ERROR",
        "MALFORMED_TOKEN",
        "INVALID_TOKEN",
        "INVALID_PAYLOAD",
        "SENDER_ID_MISMATCH",
        CircuitOpenError.code,
        DeliveryCancelledError.code,
    }
)

REASON_MAX_ATTEMPTS = "MAX_ATTEMPTS_REACHED"
REASON_NON_RETRYABLE = "NON_RETRYABLE_ERROR"


def is_retryable(error: BaseException) -> bool:
    if isinstance(error, TransportError) and not error.retryable:
        return False
    return error_code_for(error) not in NON_RETRYABLE_ERROR_CODES


@dataclass(frozen=True)
class RetryPolicy:
    # Centralize retry behavior for deterministic policy changes.
    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    backoff_multiplier: float
    jitter_factor: float
    attempt_timeout_ms: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=max(1, int(settings.retry_max_attempts)),
            base_delay_ms=max(0, int(settings.retry_base_delay_ms)),
            max_delay_ms=max(0, int(settings.retry_max_delay_ms)),
            backoff_multiplier=max(1.0, float(settings.retry_backoff_multiplier)),
            jitter_factor=max(0.0, float(settings.retry_jitter_factor)),
            attempt_timeout_ms=max(1, int(settings.retry_attempt_timeout_ms)),
        )


def compute_backoff_ms(attempt: int, policy: RetryPolicy) -> int:
    # Pre-jitter delay after the given attempt: geometric growth capped at max_delay_ms.
    raw = policy.base_delay_ms * (policy.backoff_multiplier ** max(0, attempt - 1))
    return int(min(raw, policy.max_delay_ms))


def compute_delay_ms(attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> int:
    # Add proportional jitter so recipients retrying together do not stampede the provider.
    capped = compute_backoff_ms(attempt, policy)
    return int(math.floor(capped + capped * policy.jitter_factor * rng()))


@dataclass(frozen=True)
class RetryAttempt:
    attempt_number: int
    service_name: str
    delay_before_ms: int
    outcome: str
    error_code: str | None = None


@dataclass(frozen=True)
class RetryResult:
    value: Any
    attempts: int
    alerts: tuple[AdminAlert, ...] = ()
    history: tuple[RetryAttempt, ...] = field(default=(), repr=False)


class RetryExecutor:
    def __init__(
        self,
        *,
        breakers: CircuitBreakerManager,
        tracker: ErrorTracker,
        audit: AuditLog | None = None,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
        rng: Callable[[], float] | None = None,
    ) -> None:
        self._breakers = breakers
        self._tracker = tracker
        self._audit = audit
        self._policy = policy or RetryPolicy.from_settings()
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.random

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute_with_retry(
        self,
        operation: Callable[[int], Awaitable[Any]],
        service_name: str,
        *,
        policy: RetryPolicy | None = None,
        context: ErrorContext | None = None,
        should_cancel: Callable[[], Awaitable[bool]] | None = None,
    ) -> RetryResult:
        # Run attempts strictly one after another; the breaker gates every attempt.
        policy = policy or self._policy
        context = context or ErrorContext(service_name=service_name)
        alerts: list[AdminAlert] = []
        history: list[RetryAttempt] = []
        delay_before_ms = 0
        for attempt in range(1, policy.max_attempts + 1):
            if attempt > 1 and should_cancel is not None and await should_cancel():
                history.append(RetryAttempt(attempt, service_name, delay_before_ms, "cancelled"))
                await self._audit_retry(context, "CANCELLED", attempt=attempt - 1)
                raise DeliveryCancelledError(f"delivery cancelled before attempt {attempt}")

            if not await self._breakers.is_call_allowed(service_name):
                history.append(RetryAttempt(attempt, service_name, delay_before_ms, "circuit_open"))
                error = CircuitOpenError(service_name, alerts=alerts)
                if attempt > 1:
                    await self._audit_retry(
                        context,
                        "EXHAUSTED",
                        attempt=attempt - 1,
                        reason=REASON_NON_RETRYABLE,
                        error_code=error.code,
                    )
                raise error

            try:
                value = await asyncio.wait_for(operation(attempt), timeout=policy.attempt_timeout_ms / 1000.0)
            except asyncio.CancelledError:
                history.append(RetryAttempt(attempt, service_name, delay_before_ms, "cancelled"))
                await asyncio.shield(self._breakers.release_trial(service_name))
                logger.warning("retry_attempt_cancelled service=%s attempt=%s", service_name, attempt)
                raise
            except Exception as exc:  # noqa: BLE001 - every failure is classified, audited and re-raised
                error_code = error_code_for(exc)
                history.append(RetryAttempt(attempt, service_name, delay_before_ms, "failure", error_code))
                update = await self._breakers.record_failure(service_name, exc)
                alerts.extend(update.alerts)
                retryable = is_retryable(exc)
                severity = SEVERITY_MEDIUM if retryable else SEVERITY_HIGH
                alerts.extend(
                    await self._tracker.log_error(exc, context.with_attempt(attempt), severity=severity)
                )
                await self._audit_retry(
                    context,
                    "ATTEMPT",
                    attempt=attempt,
                    error_code=error_code,
                    extra={"retryable": retryable},
                )
                if not retryable or attempt >= policy.max_attempts:
                    reason = REASON_NON_RETRYABLE if not retryable else REASON_MAX_ATTEMPTS
                    await self._audit_retry(
                        context, "EXHAUSTED", attempt=attempt, reason=reason, error_code=error_code
                    )
                    increment_counter(f"retry_exhausted_total.{service_name}")
                    logger.warning(
                        "retry_exhausted service=%s attempts=%s reason=%s error_code=%s",
                        service_name,
                        attempt,
                        reason,
                        error_code,
                    )
                    raise RetryExhaustedError(
                        f"{service_name} failed after {attempt} attempt(s): {reason}",
                        reason=reason,
                        attempts=attempt,
                        last_error=exc,
                        alerts=alerts,
                    ) from exc
                delay_before_ms = compute_delay_ms(attempt, policy, self._rng)
                # Track retry volume so operators can detect retry storms.
                increment_counter(f"retries_total.{service_name}")
                await self._audit_retry(context, "DELAY", attempt=attempt, extra={"delay_ms": delay_before_ms})
                await self._sleep(delay_before_ms / 1000.0)
                continue

            history.append(RetryAttempt(attempt, service_name, delay_before_ms, "success"))
            update = await self._breakers.record_success(service_name)
            alerts.extend(update.alerts)
            if attempt > 1:
                await self._audit_retry(context, "SUCCESS", attempt=attempt)
            return RetryResult(value=value, attempts=attempt, alerts=tuple(alerts), history=tuple(history))

        # max_attempts is at least one, so the loop always returns or raises.
        raise AssertionError("retry loop exited without a result")

    async def _audit_retry(
        self,
        context: ErrorContext,
        action: str,
        *,
        attempt: int,
        reason: str | None = None,
        error_code: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        if self._audit is None:
            return
        metadata: dict[str, Any] = {"action": action, "attempt": attempt}
        if reason:
            metadata["reason"] = reason
        if context.operation:
            metadata["operation"] = context.operation
        metadata.update(extra or {})
        await self._audit.record(
            event=EVENT_RETRY,
            notification_id=context.notification_id,
            worker_id=context.worker_id,
            service_name=context.service_name,
            error_code=error_code,
            metadata=metadata,
        )
