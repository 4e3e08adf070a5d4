from __future__ import annotations

import asyncio

import pytest

from sitenotify.core.errors import TransportError
from sitenotify.domain.state import (
    CB_CLOSED,
    CB_HALF_OPEN,
    CB_OPEN,
    EVENT_CIRCUIT_BREAKER,
    SERVICE_PUSH,
    SERVICE_SMS,
)
from sitenotify.services.alerts import ALERT_CIRCUIT_BREAKER_OPENED, AdminAlertQueue
from sitenotify.services.audit import AuditLog
from sitenotify.services.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerManager,
    LocalResilienceState,
    RedisResilienceState,
)


_PROVIDER_DOWN = TransportError("push gateway unavailable", code="PROVIDER_UNAVAILABLE")


def _manager(clock, *, state=None, audit=None, threshold=5, recovery_ms=60000, half_open=3):
    return CircuitBreakerManager(
        services=[SERVICE_PUSH, SERVICE_SMS],
        state=state or LocalResilienceState(),
        config=CircuitBreakerConfig(
            failure_threshold=threshold,
            recovery_timeout_ms=recovery_ms,
            half_open_max_calls=half_open,
        ),
        audit=audit,
        alerts=AdminAlertQueue(time_source=clock),
        time_source=clock,
    )


async def _trip(manager, service_name=SERVICE_PUSH, times=5):
    updates = []
    for _ in range(times):
        updates.append(await manager.record_failure(service_name, _PROVIDER_DOWN))
    return updates


@pytest.mark.asyncio
async def test_push_breaker_half_opens_exactly_at_next_attempt_time(clock) -> None:
    manager = _manager(clock)
    await _trip(manager)

    status = await manager.get_status(SERVICE_PUSH)
    assert status.state == CB_OPEN
    assert status.next_attempt_time == pytest.approx(clock.now + 60.0)

    clock.now = status.next_attempt_time - 1
    assert await manager.is_call_allowed(SERVICE_PUSH) is False
    assert (await manager.get_status(SERVICE_PUSH)).state == CB_OPEN

    clock.now = status.next_attempt_time
    assert await manager.is_call_allowed(SERVICE_PUSH) is True
    assert (await manager.get_status(SERVICE_PUSH)).state == CB_HALF_OPEN


@pytest.mark.asyncio
async def test_breaker_opens_once_and_alerts_once_for_long_failure_runs(clock) -> None:
    manager = _manager(clock)
    updates = await _trip(manager, times=9)

    transitions = [update for update in updates if update.transitioned]
    assert len(transitions) == 1
    assert transitions[0].previous_state == CB_CLOSED
    alerts = [alert for update in updates for alert in update.alerts]
    assert [alert.type for alert in alerts] == [ALERT_CIRCUIT_BREAKER_OPENED]
    assert alerts[0].data["service_name"] == SERVICE_PUSH
    assert await manager.is_call_allowed(SERVICE_PUSH) is False


@pytest.mark.asyncio
async def test_half_open_failure_reopens_despite_trial_successes(clock) -> None:
    manager = _manager(clock)
    await _trip(manager)
    clock.advance(60)

    assert await manager.is_call_allowed(SERVICE_PUSH) is True
    await manager.record_success(SERVICE_PUSH)
    assert await manager.is_call_allowed(SERVICE_PUSH) is True
    update = await manager.record_failure(SERVICE_PUSH, _PROVIDER_DOWN)

    assert update.snapshot.state == CB_OPEN
    assert update.previous_state == CB_HALF_OPEN
    assert update.snapshot.next_attempt_time == pytest.approx(clock.now + 60.0)
    # Only a CLOSED -> OPEN transition raises an operator alert.
    assert update.alerts == ()


@pytest.mark.asyncio
async def test_half_open_limits_trials_and_closes_after_enough_successes(clock) -> None:
    manager = _manager(clock)
    await _trip(manager)
    clock.advance(61)

    admitted = [await manager.is_call_allowed(SERVICE_PUSH) for _ in range(4)]
    assert admitted == [True, True, True, False]

    for _ in range(3):
        await manager.record_success(SERVICE_PUSH)
    status = await manager.get_status(SERVICE_PUSH)
    assert status.state == CB_CLOSED
    assert status.consecutive_failures == 0
    assert await manager.is_call_allowed(SERVICE_PUSH) is True


@pytest.mark.asyncio
async def test_success_while_closed_forgives_a_single_failure(clock) -> None:
    manager = _manager(clock)
    await _trip(manager, times=3)
    update = await manager.record_success(SERVICE_PUSH)
    assert update.snapshot.consecutive_failures == 2

    await _trip(manager, times=2)
    assert (await manager.get_status(SERVICE_PUSH)).state == CB_CLOSED
    await _trip(manager, times=1)
    assert (await manager.get_status(SERVICE_PUSH)).state == CB_OPEN


@pytest.mark.asyncio
async def test_breakers_are_isolated_per_service(clock) -> None:
    manager = _manager(clock)
    await _trip(manager, SERVICE_PUSH)
    assert await manager.is_call_allowed(SERVICE_PUSH) is False
    assert await manager.is_call_allowed(SERVICE_SMS) is True


@pytest.mark.asyncio
async def test_unknown_service_is_admitted_but_not_tracked(clock) -> None:
    manager = _manager(clock)
    assert await manager.is_call_allowed("FAX") is True
    assert await manager.get_status("FAX") is None
    assert await manager.reset("FAX") is False
    assert set(await manager.get_all_statuses()) == {SERVICE_PUSH, SERVICE_SMS}


@pytest.mark.asyncio
async def test_manual_reset_closes_breaker_and_is_audited(clock, session_factory) -> None:
    audit = AuditLog(session_factory, time_source=clock)
    manager = _manager(clock, audit=audit)
    await _trip(manager)

    assert await manager.reset(SERVICE_PUSH, actor_id="ops-1") is True
    status = await manager.get_status(SERVICE_PUSH)
    assert status.state == CB_CLOSED
    assert status.consecutive_failures == 0

    records = await audit.list_events(event=EVENT_CIRCUIT_BREAKER, service_name=SERVICE_PUSH)
    resets = [record for record in records if record.metadata_json.get("action") == "MANUAL_RESET"]
    assert len(resets) == 1
    assert resets[0].worker_id == "ops-1"
    assert resets[0].metadata_json["previous_state"] == CB_OPEN


class _FakeLock:
    def __init__(self, redis: "_FakeRedis", name: str) -> None:
        self._redis = redis
        self._name = name

    async def __aenter__(self) -> "_FakeLock":
        self._redis.lock_calls.append(self._name)
        return self

    async def __aexit__(self, *exc) -> bool:
        return False


class _FakeRedis:
    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.lock_calls: list[str] = []

    async def hgetall(self, key: str) -> dict[str, str]:
        return dict(self.hashes.get(key, {}))

    async def hset(self, key: str, mapping: dict[str, str]) -> int:
        self.hashes.setdefault(key, {}).update(mapping)
        return len(mapping)

    def lock(self, name: str, timeout: int | None = None, blocking_timeout: int | None = None) -> _FakeLock:
        return _FakeLock(self, name)


@pytest.mark.asyncio
async def test_redis_state_is_shared_between_instances(clock) -> None:
    redis = _FakeRedis()
    first = _manager(clock, state=RedisResilienceState(redis, prefix="sitenotify:cb"))
    second = _manager(clock, state=RedisResilienceState(redis, prefix="sitenotify:cb"))

    await _trip(first)

    assert redis.hashes["sitenotify:cb:PUSH"]["state"] == CB_OPEN
    assert "sitenotify:cb:PUSH:lock" in redis.lock_calls
    assert await second.is_call_allowed(SERVICE_PUSH) is False
    assert (await second.get_status(SERVICE_PUSH)).consecutive_failures == 5


@pytest.mark.asyncio
async def test_unreported_half_open_trials_are_reclaimed_after_recovery_timeout(clock) -> None:
    manager = _manager(clock)
    await _trip(manager)
    clock.advance(61)

    assert [await manager.is_call_allowed(SERVICE_PUSH) for _ in range(3)] == [True, True, True]
    await manager.record_success(SERVICE_PUSH)
    await manager.record_success(SERVICE_PUSH)
    # The third trial never reports an outcome.
    clock.advance(30)
    assert await manager.is_call_allowed(SERVICE_PUSH) is False

    clock.advance(30)
    assert await manager.is_call_allowed(SERVICE_PUSH) is True
    await manager.record_success(SERVICE_PUSH)
    assert (await manager.get_status(SERVICE_PUSH)).state == CB_CLOSED


@pytest.mark.asyncio
async def test_concurrent_failures_open_the_breaker_exactly_once(clock) -> None:
    manager = _manager(clock)

    updates = await asyncio.gather(*(manager.record_failure(SERVICE_PUSH, _PROVIDER_DOWN) for _ in range(12)))

    transitions = [update for update in updates if update.transitioned]
    assert len(transitions) == 1
    assert transitions[0].snapshot.state == CB_OPEN
    alerts = [alert for update in updates for alert in update.alerts]
    assert [alert.type for alert in alerts] == [ALERT_CIRCUIT_BREAKER_OPENED]
    status = await manager.get_status(SERVICE_PUSH)
    assert status.consecutive_failures == 12
