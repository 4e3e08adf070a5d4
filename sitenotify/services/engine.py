from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitenotify.core.config import Settings, get_settings
from sitenotify.services.alerts import AdminAlertQueue
from sitenotify.services.audit import AuditLog
from sitenotify.services.error_tracking import AlertThresholds, ErrorTracker
from sitenotify.services.notifications.content import ContentCipher
from sitenotify.services.notifications.coordinator import DeliveryCoordinator
from sitenotify.services.notifications.escalation import (
    DeadlinePolicy,
    DirectoryEscalationTarget,
    EscalationTargetResolver,
    StaticEscalationTarget,
)
from sitenotify.services.notifications.transport import TransportRegistry, build_transport_registry
from sitenotify.services.resilience import (
    CircuitBreakerConfig,
    CircuitBreakerManager,
    ResilienceState,
    breaker_services,
    build_resilience_state,
)
from sitenotify.services.retry import RetryExecutor, RetryPolicy


logger = logging.getLogger(__name__)


@dataclass
class NotificationEngine:
    # One wired set of collaborators shared by the API and the worker.
    settings: Settings
    audit: AuditLog
    alerts: AdminAlertQueue
    breakers: CircuitBreakerManager
    tracker: ErrorTracker
    executor: RetryExecutor
    transports: TransportRegistry
    coordinator: DeliveryCoordinator


def build_engine(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    state: ResilienceState | None = None,
    transports: TransportRegistry | None = None,
    cipher: ContentCipher | None = None,
    targets: EscalationTargetResolver | None = None,
    enqueue: Callable[[str], Awaitable[bool]] | None = None,
    time_source: Callable[[], float] | None = None,
    sleep: Callable[[float], Awaitable[Any]] | None = None,
    rng: Callable[[], float] | None = None,
) -> NotificationEngine:
    settings = settings or get_settings()
    if session_factory is None:
        from sitenotify.persistence.db import SessionLocal

        session_factory = SessionLocal
    audit = AuditLog(session_factory, time_source=time_source)
    alerts = AdminAlertQueue(max_size=settings.alert_queue_max, audit=audit, time_source=time_source)
    breakers = CircuitBreakerManager(
        services=breaker_services(settings),
        state=state or build_resilience_state(settings),
        config=CircuitBreakerConfig.from_settings(settings),
        audit=audit,
        alerts=alerts,
        time_source=time_source,
    )
    tracker = ErrorTracker(
        alerts=alerts,
        audit=audit,
        breakers=breakers,
        thresholds=AlertThresholds.from_settings(settings),
        time_source=time_source,
    )
    executor = RetryExecutor(
        breakers=breakers,
        tracker=tracker,
        audit=audit,
        policy=RetryPolicy.from_settings(settings),
        sleep=sleep,
        rng=rng,
    )
    transports = transports or build_transport_registry(settings)
    if targets is None:
        targets = DirectoryEscalationTarget(
            session_factory, fallback=StaticEscalationTarget(settings.notify_escalation_target_id)
        )
    coordinator = DeliveryCoordinator(
        session_factory=session_factory,
        audit=audit,
        executor=executor,
        tracker=tracker,
        transports=transports,
        cipher=cipher or ContentCipher.from_settings(settings),
        settings=settings,
        deadlines=DeadlinePolicy.from_settings(settings),
        targets=targets,
        enqueue=enqueue,
        time_source=time_source,
    )
    logger.info(
        "notification_engine_built backend=%s delivery_mode=%s services=%s",
        settings.resilience_backend,
        settings.notify_delivery_mode,
        ",".join(breakers.services),
    )
    return NotificationEngine(
        settings=settings,
        audit=audit,
        alerts=alerts,
        breakers=breakers,
        tracker=tracker,
        executor=executor,
        transports=transports,
        coordinator=coordinator,
    )


_engine: NotificationEngine | None = None


def get_engine() -> NotificationEngine:
    # Breaker and alert state live on the engine, so processes share one instance.
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def reset_engine() -> None:
    global _engine
    _engine = None
