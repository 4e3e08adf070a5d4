from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
import logging
import time
from typing import Any, AsyncIterator, Callable, Iterable, Protocol

from redis.asyncio import Redis

from sitenotify.core.config import Settings, get_settings, split_csv
from sitenotify.core.errors import error_code_for
from sitenotify.domain.state import CB_CLOSED, CB_HALF_OPEN, CB_OPEN, EVENT_CIRCUIT_BREAKER
from sitenotify.services.alerts import ALERT_CIRCUIT_BREAKER_OPENED, AdminAlert, AdminAlertQueue
from sitenotify.services.audit import AuditLog
from sitenotify.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CircuitBreakerConfig:
    # Store thresholds in settings so operators can tune without code changes.
    failure_threshold: int
    recovery_timeout_ms: int
    half_open_max_calls: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "CircuitBreakerConfig":
        settings = settings or get_settings()
        return cls(
            failure_threshold=max(1, int(settings.cb_failure_threshold)),
            recovery_timeout_ms=max(0, int(settings.cb_recovery_timeout_ms)),
            half_open_max_calls=max(1, int(settings.cb_half_open_max_calls)),
        )


@dataclass
class BreakerRecord:
    # Mutable breaker state as stored in the resilience backend.
    state: str = CB_CLOSED
    consecutive_failures: int = 0
    last_failure_time: float | None = None
    last_success_time: float | None = None
    next_attempt_time: float | None = None
    half_open_trial_count: int = 0
    half_open_successes: int = 0
    last_trial_time: float | None = None

    def to_mapping(self) -> dict[str, str]:
        return {key: "" if value is None else str(value) for key, value in asdict(self).items()}

    @classmethod
    def from_mapping(cls, raw: dict[str, Any]) -> "BreakerRecord":
        def _float(key: str) -> float | None:
            value = raw.get(key)
            return float(value) if value not in (None, "") else None

        return cls(
            state=str(raw.get("state") or CB_CLOSED),
            consecutive_failures=int(raw.get("consecutive_failures") or 0),
            last_failure_time=_float("last_failure_time"),
            last_success_time=_float("last_success_time"),
            next_attempt_time=_float("next_attempt_time"),
            half_open_trial_count=int(raw.get("half_open_trial_count") or 0),
            half_open_successes=int(raw.get("half_open_successes") or 0),
            last_trial_time=_float("last_trial_time"),
        )


@dataclass(frozen=True)
class CircuitBreakerSnapshot:
    service_name: str
    state: str
    consecutive_failures: int
    last_failure_time: float | None
    last_success_time: float | None
    next_attempt_time: float | None
    half_open_trial_count: int
    half_open_successes: int
    last_trial_time: float | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "service_name": self.service_name,
            "state": self.state,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_time": _iso(self.last_failure_time),
            "last_success_time": _iso(self.last_success_time),
            "next_attempt_time": _iso(self.next_attempt_time),
            "half_open_trial_count": self.half_open_trial_count,
            "half_open_successes": self.half_open_successes,
        }


@dataclass(frozen=True)
class BreakerUpdate:
    snapshot: CircuitBreakerSnapshot
    previous_state: str
    alerts: tuple[AdminAlert, ...] = ()

    @property
    def transitioned(self) -> bool:
        return self.previous_state != self.snapshot.state


def _iso(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc).isoformat()


def _snapshot(service_name: str, record: BreakerRecord) -> CircuitBreakerSnapshot:
    return CircuitBreakerSnapshot(service_name=service_name, **asdict(record))


class ResilienceState(Protocol):
    async def load(self, service_name: str) -> BreakerRecord | None: ...

    async def save(self, service_name: str, record: BreakerRecord) -> None: ...

    def lock(self, service_name: str) -> Any: ...


class LocalResilienceState:
    # Single-process breaker state; every instance keeps its own view.
    def __init__(self) -> None:
        self._records: dict[str, BreakerRecord] = {}
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def load(self, service_name: str) -> BreakerRecord | None:
        record = self._records.get(service_name)
        return replace(record) if record is not None else None

    async def save(self, service_name: str, record: BreakerRecord) -> None:
        self._records[service_name] = replace(record)

    @asynccontextmanager
    async def lock(self, service_name: str) -> AsyncIterator[None]:
        async with self._locks[service_name]:
            yield


class RedisResilienceState:
    # Shared breaker state for multi-instance deployments; Redis locks serialize read-check-record.
    def __init__(self, redis: Redis, *, prefix: str, lock_timeout_s: int = 5) -> None:
        self._redis = redis
        self._prefix = prefix
        self._lock_timeout_s = max(1, int(lock_timeout_s))

    def _key(self, service_name: str) -> str:
        return f"{self._prefix}:{service_name}"

    async def load(self, service_name: str) -> BreakerRecord | None:
        raw = await self._redis.hgetall(self._key(service_name))
        if not raw:
            return None
        return BreakerRecord.from_mapping(raw)

    async def save(self, service_name: str, record: BreakerRecord) -> None:
        await self._redis.hset(self._key(service_name), mapping=record.to_mapping())

    @asynccontextmanager
    async def lock(self, service_name: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"{self._key(service_name)}:lock",
            timeout=self._lock_timeout_s,
            blocking_timeout=self._lock_timeout_s,
        )
        async with lock:
            yield


_STATE_GAUGE = {CB_CLOSED: 0.0, CB_HALF_OPEN: 0.5, CB_OPEN: 1.0}


class CircuitBreakerManager:
    def __init__(
        self,
        *,
        services: Iterable[str],
        state: ResilienceState | None = None,
        config: CircuitBreakerConfig | None = None,
        audit: AuditLog | None = None,
        alerts: AdminAlertQueue | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._services = tuple(services)
        self._state = state or LocalResilienceState()
        self._config = config or CircuitBreakerConfig.from_settings()
        self._audit = audit
        self._alerts = alerts
        self._time = time_source or time.time

    @property
    def services(self) -> tuple[str, ...]:
        return self._services

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    def _known(self, service_name: str) -> bool:
        return service_name in self._services

    async def _load(self, service_name: str) -> BreakerRecord:
        return await self._state.load(service_name) or BreakerRecord()

    def _open(self, record: BreakerRecord, now: float) -> None:
        record.state = CB_OPEN
        record.next_attempt_time = now + self._config.recovery_timeout_ms / 1000.0
        record.half_open_trial_count = 0
        record.half_open_successes = 0
        record.last_trial_time = None

    def _reclaim_stale_trials(self, record: BreakerRecord, now: float) -> None:
        # Trial slots whose calls never reported back are freed after one recovery timeout.
        if record.half_open_trial_count < self._config.half_open_max_calls:
            return
        if record.last_trial_time is None:
            return
        if now - record.last_trial_time < self._config.recovery_timeout_ms / 1000.0:
            return
        logger.warning(
            "circuit_breaker_trials_reclaimed trials=%s successes=%s",
            record.half_open_trial_count,
            record.half_open_successes,
        )
        record.half_open_trial_count = record.half_open_successes

    async def is_call_allowed(self, service_name: str) -> bool:
        # Decide admission; OPEN moves to HALF_OPEN lazily on the first check after the timeout.
        if not self._known(service_name):
            logger.warning("circuit_breaker_unknown_service name=%s", service_name)
            return True
        previous: str | None = None
        async with self._state.lock(service_name):
            record = await self._load(service_name)
            now = self._time()
            allowed = True
            if record.state == CB_OPEN:
                if record.next_attempt_time is not None and now >= record.next_attempt_time:
                    previous = record.state
                    record.state = CB_HALF_OPEN
                    record.next_attempt_time = None
                    record.half_open_trial_count = 0
                    record.half_open_successes = 0
                else:
                    allowed = False
            if allowed and record.state == CB_HALF_OPEN:
                self._reclaim_stale_trials(record, now)
                if record.half_open_trial_count >= self._config.half_open_max_calls:
                    allowed = False
                else:
                    record.half_open_trial_count += 1
                    record.last_trial_time = now
            if previous is not None or record.state == CB_HALF_OPEN:
                await self._state.save(service_name, record)
            snapshot = _snapshot(service_name, record)
        if previous is not None:
            await self._on_transition(snapshot, previous, action="STATE_CHANGE")
        if not allowed:
            increment_counter(f"circuit_breaker_rejections_total.{service_name}")
        return allowed

    async def release_trial(self, service_name: str) -> None:
        # A HALF_OPEN call that ended without an outcome hands its trial slot back.
        if not self._known(service_name):
            return
        async with self._state.lock(service_name):
            record = await self._load(service_name)
            if record.state != CB_HALF_OPEN or record.half_open_trial_count <= record.half_open_successes:
                return
            record.half_open_trial_count -= 1
            await self._state.save(service_name, record)
        logger.info("circuit_breaker_trial_released name=%s", service_name)

    async def record_success(self, service_name: str) -> BreakerUpdate:
        if not self._known(service_name):
            logger.warning("circuit_breaker_unknown_service name=%s", service_name)
            return BreakerUpdate(_snapshot(service_name, BreakerRecord()), CB_CLOSED)
        async with self._state.lock(service_name):
            record = await self._load(service_name)
            previous = record.state
            record.last_success_time = self._time()
            if record.state == CB_CLOSED:
                # Flapping tolerance: one success forgives one failure instead of clearing the streak.
                record.consecutive_failures = max(0, record.consecutive_failures - 1)
            elif record.state == CB_HALF_OPEN:
                record.half_open_successes += 1
                if record.half_open_successes >= self._config.half_open_max_calls:
                    record.state = CB_CLOSED
                    record.consecutive_failures = 0
                    record.half_open_trial_count = 0
                    record.half_open_successes = 0
            await self._state.save(service_name, record)
            snapshot = _snapshot(service_name, record)
        await self._audit_event(snapshot, previous, action="SUCCESS")
        if snapshot.state != previous:
            await self._on_transition(snapshot, previous, action="STATE_CHANGE")
        return BreakerUpdate(snapshot, previous)

    async def record_failure(self, service_name: str, error: BaseException | None = None) -> BreakerUpdate:
        error_code = error_code_for(error) if error is not None else None
        if not self._known(service_name):
            logger.warning("circuit_breaker_unknown_service name=%s", service_name)
            return BreakerUpdate(_snapshot(service_name, BreakerRecord()), CB_CLOSED)
        async with self._state.lock(service_name):
            record = await self._load(service_name)
            previous = record.state
            now = self._time()
            record.last_failure_time = now
            record.consecutive_failures += 1
            if record.state == CB_HALF_OPEN:
                self._open(record, now)
            elif record.state == CB_CLOSED and record.consecutive_failures >= self._config.failure_threshold:
                self._open(record, now)
            await self._state.save(service_name, record)
            snapshot = _snapshot(service_name, record)
        await self._audit_event(snapshot, previous, action="FAILURE", error_code=error_code)
        alerts: list[AdminAlert] = []
        if snapshot.state != previous:
            await self._on_transition(snapshot, previous, action="STATE_CHANGE", error_code=error_code)
            if previous == CB_CLOSED and self._alerts is not None:
                alerts.append(
                    await self._alerts.trigger(
                        ALERT_CIRCUIT_BREAKER_OPENED,
                        {
                            "service_name": service_name,
                            "error_code": error_code,
                            "consecutive_failures": snapshot.consecutive_failures,
                            "next_attempt_time": _iso(snapshot.next_attempt_time),
                        },
                    )
                )
        return BreakerUpdate(snapshot, previous, tuple(alerts))

    async def get_status(self, service_name: str) -> CircuitBreakerSnapshot | None:
        if not self._known(service_name):
            return None
        return _snapshot(service_name, await self._load(service_name))

    async def get_all_statuses(self) -> dict[str, CircuitBreakerSnapshot]:
        return {name: _snapshot(name, await self._load(name)) for name in self._services}

    async def reset(self, service_name: str, *, actor_id: str | None = None) -> bool:
        # Operator override: force CLOSED with cleared counters.
        if not self._known(service_name):
            return False
        async with self._state.lock(service_name):
            record = await self._load(service_name)
            previous = record.state
            fresh = BreakerRecord(
                last_failure_time=record.last_failure_time,
                last_success_time=record.last_success_time,
            )
            await self._state.save(service_name, fresh)
            snapshot = _snapshot(service_name, fresh)
        logger.warning("circuit_breaker_reset name=%s from=%s actor=%s", service_name, previous, actor_id)
        set_gauge(f"circuit_breaker_state.{service_name}", _STATE_GAUGE[CB_CLOSED])
        await self._audit_event(snapshot, previous, action="MANUAL_RESET", worker_id=actor_id)
        return True

    async def _on_transition(
        self,
        snapshot: CircuitBreakerSnapshot,
        previous: str,
        *,
        action: str,
        error_code: str | None = None,
    ) -> None:
        # Emit logs, gauges and an audit row on state transitions for operator visibility.
        logger.warning(
            "circuit_breaker_transition name=%s from=%s to=%s",
            snapshot.service_name,
            previous,
            snapshot.state,
        )
        increment_counter(f"circuit_breaker_transition_total.{snapshot.service_name}.{snapshot.state}")
        if snapshot.state == CB_OPEN:
            increment_counter("circuit_breaker_open_total")
        set_gauge(f"circuit_breaker_state.{snapshot.service_name}", _STATE_GAUGE.get(snapshot.state, 0.0))
        await self._audit_event(snapshot, previous, action=action, error_code=error_code)

    async def _audit_event(
        self,
        snapshot: CircuitBreakerSnapshot,
        previous: str,
        *,
        action: str,
        error_code: str | None = None,
        worker_id: str | None = None,
    ) -> None:
        if self._audit is None:
            return
        await self._audit.record(
            event=EVENT_CIRCUIT_BREAKER,
            service_name=snapshot.service_name,
            error_code=error_code,
            worker_id=worker_id,
            metadata={"action": action, "previous_state": previous, **snapshot.as_dict()},
        )


def build_resilience_state(settings: Settings, redis: Redis | None = None) -> ResilienceState:
    # Pick the breaker backend; Redis is required when several API/worker instances share breakers.
    if settings.resilience_backend == "redis":
        if redis is None:
            redis = Redis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
        return RedisResilienceState(
            redis,
            prefix=settings.cb_redis_prefix,
            lock_timeout_s=settings.cb_redis_lock_timeout_s,
        )
    return LocalResilienceState()


def breaker_services(settings: Settings) -> list[str]:
    return split_csv(settings.cb_services)
