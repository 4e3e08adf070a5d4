from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import TYPE_CHECKING, Any, Callable

from sitenotify.core.config import Settings, get_settings
from sitenotify.core.errors import error_code_for
from sitenotify.domain.state import (
    CB_CLOSED,
    CB_HALF_OPEN,
    CB_OPEN,
    EVENT_CIRCUIT_BREAKER,
    EVENT_ERROR,
    EVENT_RETRY,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_MEDIUM,
)
from sitenotify.services.alerts import ALERT_ERROR_THRESHOLD_EXCEEDED, AdminAlert, AdminAlertQueue
from sitenotify.services.audit import AuditLog
from sitenotify.services.telemetry import counters_snapshot, increment_counter

if TYPE_CHECKING:
    from sitenotify.services.resilience import CircuitBreakerManager


logger = logging.getLogger(__name__)

HEALTH_HEALTHY = "HEALTHY"
HEALTH_DEGRADED = "DEGRADED"


@dataclass(frozen=True)
class ErrorContext:
    service_name: str
    operation: str | None = None
    notification_id: str | None = None
    worker_id: str | None = None
    attempt: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def with_attempt(self, attempt: int) -> "ErrorContext":
        return replace(self, attempt=attempt)


@dataclass(frozen=True)
class AlertThresholds:
    admin_threshold: int
    critical_threshold: int
    window_ms: int
    cooldown_ms: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "AlertThresholds":
        settings = settings or get_settings()
        return cls(
            admin_threshold=max(1, int(settings.alert_admin_threshold)),
            critical_threshold=max(1, int(settings.alert_critical_error_threshold)),
            window_ms=max(1, int(settings.alert_window_ms)),
            cooldown_ms=max(0, int(settings.alert_cooldown_ms)),
        )


class ErrorTracker:
    def __init__(
        self,
        *,
        alerts: AdminAlertQueue,
        audit: AuditLog | None = None,
        breakers: "CircuitBreakerManager | None" = None,
        thresholds: AlertThresholds | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._alerts = alerts
        self._audit = audit
        self._breakers = breakers
        self._thresholds = thresholds or AlertThresholds.from_settings()
        self._time = time_source or time.time
        # (service, error code) -> occurrences as (timestamp, severity) inside the sliding window.
        self._windows: dict[str, deque[tuple[float, str]]] = defaultdict(deque)
        self._last_alert_at: dict[str, float] = {}

    def attach_breakers(self, breakers: "CircuitBreakerManager") -> None:
        self._breakers = breakers

    async def log_error(
        self,
        error: BaseException,
        context: ErrorContext,
        severity: str = SEVERITY_MEDIUM,
    ) -> list[AdminAlert]:
        # Audit every error before alerting decisions so the trail is complete even when throttled.
        error_code = error_code_for(error)
        log = logger.error if severity in {SEVERITY_HIGH, SEVERITY_CRITICAL} else logger.warning
        log(
            "delivery_error service=%s error_code=%s severity=%s notification_id=%s attempt=%s",
            context.service_name,
            error_code,
            severity,
            context.notification_id,
            context.attempt,
        )
        increment_counter(f"errors_total.{context.service_name}.{error_code}")
        if self._audit is not None:
            metadata: dict[str, Any] = {
                "error_message": str(error)[:500],
                "error_type": type(error).__name__,
                "severity": severity,
            }
            if context.operation:
                metadata["operation"] = context.operation
            if context.attempt is not None:
                metadata["attempt"] = context.attempt
            metadata.update(context.extra)
            await self._audit.record(
                event=EVENT_ERROR,
                notification_id=context.notification_id,
                worker_id=context.worker_id,
                service_name=context.service_name,
                error_code=error_code,
                metadata=metadata,
            )
        return await self.track_error_for_alerting(error, context, severity)

    async def track_error_for_alerting(
        self,
        error: BaseException,
        context: ErrorContext,
        severity: str = SEVERITY_MEDIUM,
    ) -> list[AdminAlert]:
        # Sliding-window counts per (service, error code) with a per-key cooldown.
        error_code = error_code_for(error)
        key = f"{context.service_name}_{error_code}"
        now = self._time()
        window = self._windows[key]
        cutoff = now - self._thresholds.window_ms / 1000.0
        while window and window[0][0] < cutoff:
            window.popleft()
        window.append((now, severity))

        total = len(window)
        critical = sum(1 for _ts, item_severity in window if item_severity == SEVERITY_CRITICAL)
        if critical < self._thresholds.critical_threshold and total < self._thresholds.admin_threshold:
            return []
        last_alert = self._last_alert_at.get(key)
        if last_alert is not None and (now - last_alert) < self._thresholds.cooldown_ms / 1000.0:
            return []
        # Reserve the cooldown slot before awaiting so concurrent errors cannot double-alert.
        self._last_alert_at[key] = now
        alert = await self.trigger_admin_alert(
            ALERT_ERROR_THRESHOLD_EXCEEDED,
            {
                "service_name": context.service_name,
                "error_code": error_code,
                "total_in_window": total,
                "critical_in_window": critical,
                "window_ms": self._thresholds.window_ms,
            },
        )
        return [alert]

    async def trigger_admin_alert(self, alert_type: str, data: dict[str, Any] | None = None) -> AdminAlert:
        return await self._alerts.trigger(alert_type, data)

    async def get_recent_alerts(self, limit: int = 10) -> list[AdminAlert]:
        return await self._alerts.recent(limit)

    async def acknowledge_alert(self, alert_id: str) -> bool:
        return await self._alerts.acknowledge(alert_id)

    async def get_health_summary(self) -> dict[str, Any]:
        # DEGRADED whenever any breaker is not fully CLOSED.
        statuses = await self._breakers.get_all_statuses() if self._breakers is not None else {}
        counts = {CB_CLOSED: 0, CB_OPEN: 0, CB_HALF_OPEN: 0}
        for snapshot in statuses.values():
            counts[snapshot.state] = counts.get(snapshot.state, 0) + 1
        degraded = counts[CB_OPEN] > 0 or counts[CB_HALF_OPEN] > 0
        alert_counts = await self._alerts.counts()
        return {
            "status": HEALTH_DEGRADED if degraded else HEALTH_HEALTHY,
            "timestamp": datetime.fromtimestamp(self._time(), timezone.utc).isoformat(),
            "circuit_breakers": {
                "total": len(statuses),
                "closed": counts[CB_CLOSED],
                "open": counts[CB_OPEN],
                "half_open": counts[CB_HALF_OPEN],
                "services": {name: snapshot.state for name, snapshot in statuses.items()},
            },
            "alerts": alert_counts,
        }

    async def get_error_statistics(self, hours: int = 24) -> dict[str, Any]:
        # Aggregate ERROR/CIRCUIT_BREAKER/RETRY audit rows for the lookback window.
        hours = max(1, int(hours))
        now = datetime.fromtimestamp(self._time(), timezone.utc)
        since = now - timedelta(hours=hours)
        rows = []
        if self._audit is not None:
            rows = await self._audit.count_by_event(
                since=since,
                events=(EVENT_ERROR, EVENT_CIRCUIT_BREAKER, EVENT_RETRY),
            )
        by_event: dict[str, int] = defaultdict(int)
        by_service: dict[str, int] = defaultdict(int)
        by_error_code: dict[str, int] = defaultdict(int)
        breakdown: list[dict[str, Any]] = []
        for event, service_name, error_code, count in rows:
            by_event[event] += count
            if event == EVENT_ERROR:
                by_service[service_name or "UNKNOWN"] += count
                by_error_code[error_code or "UNKNOWN_ERROR"] += count
            breakdown.append(
                {"event": event, "service_name": service_name, "error_code": error_code, "count": count}
            )
        statuses = await self._breakers.get_all_statuses() if self._breakers is not None else {}
        return {
            "window_hours": hours,
            "since": since.isoformat(),
            "until": now.isoformat(),
            "total_errors": by_event.get(EVENT_ERROR, 0),
            "by_event": dict(by_event),
            "by_service": dict(by_service),
            "by_error_code": dict(by_error_code),
            "breakdown": breakdown,
            "circuit_breakers": {name: snapshot.state for name, snapshot in statuses.items()},
            "alerts": await self._alerts.counts(),
            "counters": counters_snapshot(),
        }
