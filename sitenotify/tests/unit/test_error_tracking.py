from __future__ import annotations

import pytest

from sitenotify.core.errors import TransportError
from sitenotify.domain.state import EVENT_ADMIN_ALERT, EVENT_ERROR, SERVICE_PUSH, SERVICE_SMS, SEVERITY_CRITICAL
from sitenotify.services.alerts import (
    ALERT_CRITICAL_ERROR,
    ALERT_ERROR_THRESHOLD_EXCEEDED,
    AdminAlertQueue,
)
from sitenotify.services.audit import AuditLog
from sitenotify.services.error_tracking import (
    HEALTH_DEGRADED,
    HEALTH_HEALTHY,
    AlertThresholds,
    ErrorContext,
    ErrorTracker,
)
from sitenotify.services.resilience import CircuitBreakerConfig, CircuitBreakerManager, LocalResilienceState


_UNAVAILABLE = TransportError("gateway unavailable", code="PROVIDER_UNAVAILABLE")


def _tracker(clock, *, audit=None, admin=3, critical=2, window_ms=60000, cooldown_ms=120000):
    alerts = AdminAlertQueue(audit=audit, time_source=clock)
    breakers = CircuitBreakerManager(
        services=[SERVICE_PUSH, SERVICE_SMS],
        state=LocalResilienceState(),
        config=CircuitBreakerConfig(failure_threshold=2, recovery_timeout_ms=60000, half_open_max_calls=1),
        alerts=alerts,
        time_source=clock,
    )
    tracker = ErrorTracker(
        alerts=alerts,
        audit=audit,
        breakers=breakers,
        thresholds=AlertThresholds(
            admin_threshold=admin,
            critical_threshold=critical,
            window_ms=window_ms,
            cooldown_ms=cooldown_ms,
        ),
        time_source=clock,
    )
    return tracker, breakers


@pytest.mark.asyncio
async def test_threshold_alert_fires_once_per_cooldown(clock) -> None:
    tracker, _breakers = _tracker(clock)
    context = ErrorContext(service_name=SERVICE_PUSH)

    fired = []
    for _ in range(6):
        fired.extend(await tracker.track_error_for_alerting(_UNAVAILABLE, context))
    assert [alert.type for alert in fired] == [ALERT_ERROR_THRESHOLD_EXCEEDED]
    assert fired[0].data["error_code"] == "PROVIDER_UNAVAILABLE"

    # Sustained degradation is reported again once the cooldown has elapsed.
    clock.advance(121)
    for _ in range(3):
        fired.extend(await tracker.track_error_for_alerting(_UNAVAILABLE, context))
    assert len(fired) == 2


@pytest.mark.asyncio
async def test_errors_outside_the_window_do_not_count(clock) -> None:
    tracker, _breakers = _tracker(clock)
    context = ErrorContext(service_name=SERVICE_PUSH)

    await tracker.track_error_for_alerting(_UNAVAILABLE, context)
    await tracker.track_error_for_alerting(_UNAVAILABLE, context)
    clock.advance(61)
    assert await tracker.track_error_for_alerting(_UNAVAILABLE, context) == []


@pytest.mark.asyncio
async def test_critical_threshold_is_lower_than_admin_threshold(clock) -> None:
    tracker, _breakers = _tracker(clock, admin=10, critical=2)
    context = ErrorContext(service_name=SERVICE_SMS)

    assert await tracker.track_error_for_alerting(_UNAVAILABLE, context, SEVERITY_CRITICAL) == []
    fired = await tracker.track_error_for_alerting(_UNAVAILABLE, context, SEVERITY_CRITICAL)
    assert len(fired) == 1
    assert fired[0].data["critical_in_window"] == 2


@pytest.mark.asyncio
async def test_keys_are_tracked_per_service_and_error_code(clock) -> None:
    tracker, _breakers = _tracker(clock, admin=2)
    other_code = TransportError("throttled", code="PROVIDER_THROTTLED")

    assert await tracker.track_error_for_alerting(_UNAVAILABLE, ErrorContext(service_name=SERVICE_PUSH)) == []
    assert await tracker.track_error_for_alerting(other_code, ErrorContext(service_name=SERVICE_PUSH)) == []
    assert await tracker.track_error_for_alerting(_UNAVAILABLE, ErrorContext(service_name=SERVICE_SMS)) == []


@pytest.mark.asyncio
async def test_log_error_audits_before_alerting(clock, session_factory) -> None:
    audit = AuditLog(session_factory, time_source=clock)
    tracker, _breakers = _tracker(clock, audit=audit, admin=1)
    context = ErrorContext(service_name=SERVICE_PUSH, notification_id="n-7", worker_id="worker-7", attempt=2)

    alerts = await tracker.log_error(_UNAVAILABLE, context)

    assert len(alerts) == 1
    trail = await audit.trail("n-7")
    assert [record.event for record in trail] == [EVENT_ERROR]
    assert trail[0].error_code == "PROVIDER_UNAVAILABLE"
    assert trail[0].metadata_json["attempt"] == 2
    alert_rows = await audit.list_events(event=EVENT_ADMIN_ALERT)
    assert len(alert_rows) == 1
    assert alert_rows[0].service_name == SERVICE_PUSH


@pytest.mark.asyncio
async def test_health_summary_reports_degraded_breakers(clock) -> None:
    tracker, breakers = _tracker(clock)
    summary = await tracker.get_health_summary()
    assert summary["status"] == HEALTH_HEALTHY
    assert summary["circuit_breakers"]["closed"] == 2

    await breakers.record_failure(SERVICE_PUSH, _UNAVAILABLE)
    await breakers.record_failure(SERVICE_PUSH, _UNAVAILABLE)
    summary = await tracker.get_health_summary()
    assert summary["status"] == HEALTH_DEGRADED
    assert summary["circuit_breakers"]["open"] == 1
    assert summary["circuit_breakers"]["services"][SERVICE_PUSH] == "OPEN"
    assert summary["alerts"]["total"] == 1


@pytest.mark.asyncio
async def test_admin_alert_acknowledgment_is_idempotent(clock) -> None:
    tracker, _breakers = _tracker(clock)
    alert = await tracker.trigger_admin_alert(ALERT_CRITICAL_ERROR, {"service_name": SERVICE_PUSH})

    assert await tracker.acknowledge_alert(alert.id) is True
    first_ack = alert.acknowledged_at
    clock.advance(5)
    assert await tracker.acknowledge_alert(alert.id) is True
    assert alert.acknowledged_at == first_ack
    assert await tracker.acknowledge_alert("missing") is False
    assert (await tracker.get_recent_alerts(5))[0].acknowledged is True


@pytest.mark.asyncio
async def test_recent_alerts_are_newest_first_and_bounded(clock) -> None:
    queue = AdminAlertQueue(max_size=2, time_source=clock)
    first = await queue.trigger(ALERT_CRITICAL_ERROR)
    second = await queue.trigger(ALERT_ERROR_THRESHOLD_EXCEEDED)
    third = await queue.trigger(ALERT_CRITICAL_ERROR)

    assert [alert.id for alert in await queue.recent(10)] == [third.id, second.id]
    assert first.id not in {alert.id for alert in await queue.recent(10)}
    assert (await queue.counts())["critical"] == 1


@pytest.mark.asyncio
async def test_error_statistics_group_audited_errors(clock, session_factory) -> None:
    audit = AuditLog(session_factory, time_source=clock)
    tracker, _breakers = _tracker(clock, audit=audit, admin=100)
    for _ in range(3):
        await tracker.log_error(_UNAVAILABLE, ErrorContext(service_name=SERVICE_PUSH))
    await tracker.log_error(TransportError("bad number", code="INVALID_PAYLOAD"), ErrorContext(service_name=SERVICE_SMS))

    stats = await tracker.get_error_statistics(hours=1)

    assert stats["total_errors"] == 4
    assert stats["by_service"] == {SERVICE_PUSH: 3, SERVICE_SMS: 1}
    assert stats["by_error_code"]["PROVIDER_UNAVAILABLE"] == 3
    assert stats["counters"]["errors_total.PUSH.PROVIDER_UNAVAILABLE"] == 3


@pytest.mark.asyncio
async def test_alerts_and_acknowledgments_are_shared_through_the_audit_log(clock, session_factory) -> None:
    # One queue per process, both reading the same audit table.
    worker_queue = AdminAlertQueue(audit=AuditLog(session_factory, time_source=clock), time_source=clock)
    api_queue = AdminAlertQueue(audit=AuditLog(session_factory, time_source=clock), time_source=clock)

    raised = await worker_queue.trigger(ALERT_CRITICAL_ERROR, {"service_name": SERVICE_PUSH, "notification_id": "n-1"})

    (listed,) = await api_queue.recent(5)
    assert listed.id == raised.id
    assert listed.severity == SEVERITY_CRITICAL
    assert listed.timestamp == pytest.approx(raised.timestamp)
    assert listed.data["notification_id"] == "n-1"
    assert (await api_queue.counts())["unacknowledged_critical"] == 1

    clock.advance(3)
    assert await api_queue.acknowledge(raised.id) is True
    (seen,) = await worker_queue.recent(5)
    assert seen.acknowledged is True
    assert seen.acknowledged_at == pytest.approx(clock.now)
    assert (await worker_queue.counts())["unacknowledged"] == 0

    clock.advance(3)
    assert await worker_queue.acknowledge(raised.id) is True
    assert await worker_queue.acknowledge("missing") is False
    acks = await AuditLog(session_factory, time_source=clock).list_events(event="ADMIN_ALERT_ACK")
    assert len(acks) == 1
