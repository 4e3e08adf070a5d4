from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
import time
from typing import Any, Callable
from uuid import uuid4

from sitenotify.domain.state import (
    EVENT_ADMIN_ALERT,
    EVENT_ADMIN_ALERT_ACK,
    SEVERITY_CRITICAL,
    SEVERITY_HIGH,
    SEVERITY_LOW,
    SEVERITY_MEDIUM,
)
from sitenotify.services.audit import AuditLog, sanitize_metadata
from sitenotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

ALERT_CRITICAL_ERROR = "CRITICAL_ERROR"
ALERT_CIRCUIT_BREAKER_OPENED = "CIRCUIT_BREAKER_OPENED"
ALERT_ERROR_THRESHOLD_EXCEEDED = "ERROR_THRESHOLD_EXCEEDED"
ALERT_SERVICE_DEGRADED = "SERVICE_DEGRADED"
ALERT_PERFORMANCE_ISSUE = "PERFORMANCE_ISSUE"
ALERT_ESCALATION_FAILED = "ESCALATION_FAILED"

_ALERT_SEVERITY = {
    ALERT_CRITICAL_ERROR: SEVERITY_CRITICAL,
    ALERT_CIRCUIT_BREAKER_OPENED: SEVERITY_HIGH,
    ALERT_ERROR_THRESHOLD_EXCEEDED: SEVERITY_HIGH,
    ALERT_ESCALATION_FAILED: SEVERITY_HIGH,
    ALERT_SERVICE_DEGRADED: SEVERITY_MEDIUM,
    ALERT_PERFORMANCE_ISSUE: SEVERITY_MEDIUM,
}


def severity_for(alert_type: str) -> str:
    return _ALERT_SEVERITY.get(alert_type, SEVERITY_LOW)


@dataclass
class AdminAlert:
    id: str
    type: str
    severity: str
    timestamp: float
    data: dict[str, Any] = field(default_factory=dict)
    acknowledged: bool = False
    acknowledged_at: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "severity": self.severity,
            "timestamp": _iso(self.timestamp),
            "data": self.data,
            "acknowledged": self.acknowledged,
            "acknowledged_at": _iso(self.acknowledged_at),
        }


def _iso(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc).isoformat()


class AdminAlertQueue:
    # With an audit log attached, ADMIN_ALERT rows are the queue, so every process reads the same alerts.
    def __init__(
        self,
        *,
        max_size: int = 100,
        audit: AuditLog | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        # Newest alerts sit at the left so reads never need to sort.
        self._max_size = max(1, max_size)
        self._alerts: deque[AdminAlert] = deque(maxlen=self._max_size)
        self._audit = audit
        self._time = time_source or time.time

    async def trigger(self, alert_type: str, data: dict[str, Any] | None = None) -> AdminAlert:
        alert = AdminAlert(
            id=uuid4().hex,
            type=alert_type,
            severity=severity_for(alert_type),
            timestamp=self._time(),
            data=sanitize_metadata(dict(data or {})),
        )
        self._alerts.appendleft(alert)
        increment_counter(f"admin_alerts_total.{alert_type}")
        logger.warning("admin_alert_triggered id=%s type=%s severity=%s", alert.id, alert.type, alert.severity)
        if self._audit is not None:
            await self._audit.record(
                event=EVENT_ADMIN_ALERT,
                service_name=alert.data.get("service_name"),
                error_code=alert.data.get("error_code"),
                metadata={
                    "alert_id": alert.id,
                    "type": alert.type,
                    "severity": alert.severity,
                    "raised_at": alert.timestamp,
                    "data": alert.data,
                },
            )
        return alert

    async def recent(self, limit: int = 10) -> list[AdminAlert]:
        return (await self._load())[: max(0, limit)]

    async def acknowledge(self, alert_id: str) -> bool:
        for alert in await self._load():
            if alert.id != alert_id:
                continue
            if not alert.acknowledged:
                alert.acknowledged = True
                alert.acknowledged_at = self._time()
                for local in self._alerts:
                    if local.id == alert_id:
                        local.acknowledged = True
                        local.acknowledged_at = alert.acknowledged_at
                if self._audit is not None:
                    await self._audit.record(
                        event=EVENT_ADMIN_ALERT_ACK,
                        metadata={"alert_id": alert_id, "type": alert.type, "acknowledged_at": alert.acknowledged_at},
                        best_effort=False,
                    )
                logger.info("admin_alert_acknowledged id=%s", alert_id)
            return True
        return False

    async def counts(self) -> dict[str, int]:
        alerts = await self._load()
        return {
            "total": len(alerts),
            "unacknowledged": sum(1 for alert in alerts if not alert.acknowledged),
            "critical": sum(1 for alert in alerts if alert.severity == SEVERITY_CRITICAL),
            "unacknowledged_critical": sum(
                1 for alert in alerts if alert.severity == SEVERITY_CRITICAL and not alert.acknowledged
            ),
        }

    async def _load(self) -> list[AdminAlert]:
        if self._audit is None:
            return list(self._alerts)
        raised = await self._audit.list_events(event=EVENT_ADMIN_ALERT, limit=self._max_size)
        acks = await self._audit.list_events(event=EVENT_ADMIN_ALERT_ACK, limit=self._max_size * 2)
        acknowledged_at: dict[str, float | None] = {}
        # Rows arrive newest first; the earliest acknowledgment wins.
        for record in acks:
            metadata = record.metadata_json or {}
            acknowledged_at[str(metadata.get("alert_id"))] = metadata.get("acknowledged_at")
        alerts: list[AdminAlert] = []
        for record in raised:
            metadata = record.metadata_json or {}
            alert_id = str(metadata.get("alert_id"))
            alerts.append(
                AdminAlert(
                    id=alert_id,
                    type=str(metadata.get("type")),
                    severity=str(metadata.get("severity") or SEVERITY_LOW),
                    timestamp=float(metadata.get("raised_at") or 0.0),
                    data=dict(metadata.get("data") or {}),
                    acknowledged=alert_id in acknowledged_at,
                    acknowledged_at=acknowledged_at.get(alert_id),
                )
            )
        return alerts
