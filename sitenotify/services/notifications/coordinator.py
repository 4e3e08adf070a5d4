from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
import logging
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4
from zoneinfo import ZoneInfo

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitenotify.core.config import Settings, get_settings
from sitenotify.core.errors import (
    AccessDeniedError,
    CircuitOpenError,
    ContentIntegrityError,
    DeliveryCancelledError,
    NotificationNotFoundError,
    NotificationStateError,
    NotificationValidationError,
    RetryExhaustedError,
    error_code_for,
)
from sitenotify.domain.models import AuditRecord, Notification
from sitenotify.domain.state import (
    EVENT_ACK,
    EVENT_ATTEMPT,
    EVENT_CREATED,
    EVENT_DELIVERED,
    EVENT_ERROR,
    EVENT_ESCALATION,
    EVENT_SKIPPED,
    OUTCOME_CREATED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    PRIORITY_CRITICAL,
    PRIORITY_HIGH,
    SERVICE_PUSH,
    SERVICE_SMS,
    SEVERITY_HIGH,
    SKIP_DAILY_LIMIT,
    STATUS_ACKNOWLEDGED,
    STATUS_DELIVERED,
    STATUS_ESCALATED,
    STATUS_FAILED,
    STATUS_PENDING,
    source_statuses,
)
from sitenotify.persistence.repos import audit as audit_repo
from sitenotify.persistence.repos import daily_limits as daily_limits_repo
from sitenotify.persistence.repos import escalation_contacts as contacts_repo
from sitenotify.persistence.repos import notifications as notifications_repo
from sitenotify.services.alerts import ALERT_ESCALATION_FAILED, AdminAlert
from sitenotify.services.audit import AuditLog, replay_status_path
from sitenotify.services.authz import AccessContext, Capability
from sitenotify.services.error_tracking import ErrorContext, ErrorTracker
from sitenotify.services.notifications.content import (
    ContentCipher,
    NotificationContent,
    SealedText,
    content_hash,
)
from sitenotify.services.notifications.escalation import (
    ESCALATION_LIMIT_EXCEEDED,
    ESCALATION_NO_TARGET,
    ESCALATION_QUEUED,
    ESCALATION_SEND_FAILED,
    ESCALATION_SENT,
    REASON_ACK_TIMEOUT,
    REASON_DELIVERY_FAILED,
    REASON_MANUAL,
    DeadlinePolicy,
    EscalationTargetResolver,
    StaticEscalationTarget,
    escalation_priorities,
    escalation_text,
)
from sitenotify.services.notifications.transport import TransportRegistry
from sitenotify.services.notifications.validation import (
    classify_priority,
    sanitize_text,
    validate_notification_input,
)
from sitenotify.services.retry import RetryExecutor
from sitenotify.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_FALLBACK_PRIORITIES = frozenset({PRIORITY_CRITICAL, PRIORITY_HIGH})
_EXPIRED_ERROR_CODE = "NOTIFICATION_EXPIRED"
_DEADLINE_ERROR_CODE = "DELIVERY_DEADLINE_EXCEEDED"


@dataclass(frozen=True)
class RecipientOutcome:
    recipient_id: str
    outcome: str
    notification_id: str | None = None
    status: str | None = None
    reason: str | None = None
    error_code: str | None = None
    alerts: tuple[AdminAlert, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"recipient_id": self.recipient_id, "outcome": self.outcome}
        if self.notification_id:
            payload["notification_id"] = self.notification_id
        if self.status:
            payload["status"] = self.status
        if self.reason:
            payload["reason"] = self.reason
        if self.error_code:
            payload["error_code"] = self.error_code
        return payload


@dataclass(frozen=True)
class CreateNotificationResult:
    created: list[RecipientOutcome] = field(default_factory=list)
    skipped: list[RecipientOutcome] = field(default_factory=list)
    failed: list[RecipientOutcome] = field(default_factory=list)

    @property
    def alerts(self) -> list[AdminAlert]:
        return [alert for item in (*self.created, *self.failed) for alert in item.alerts]

    def as_dict(self) -> dict[str, Any]:
        return {
            "created": [item.as_dict() for item in self.created],
            "skipped": [item.as_dict() for item in self.skipped],
            "failed": [item.as_dict() for item in self.failed],
            "alerts": [alert.as_dict() for alert in self.alerts],
        }


@dataclass(frozen=True)
class DeliveryOutcome:
    notification_id: str
    status: str
    attempts: int = 0
    service_name: str | None = None
    error_code: str | None = None
    escalated: bool = False
    claimed: bool = True
    alerts: tuple[AdminAlert, ...] = ()


@dataclass(frozen=True)
class EscalationOutcome:
    notification_id: str
    reason: str
    target_id: str | None
    escalation_status: str
    elapsed_wait_s: float
    escalation_notification_id: str | None = None
    alerts: tuple[AdminAlert, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "notification_id": self.notification_id,
            "reason": self.reason,
            "target_id": self.target_id,
            "escalation_status": self.escalation_status,
            "elapsed_wait_s": self.elapsed_wait_s,
            "escalation_notification_id": self.escalation_notification_id,
        }


@dataclass(frozen=True)
class AcknowledgeResult:
    notification_id: str
    status: str
    acknowledged_at: datetime | None
    already_acknowledged: bool


@dataclass(frozen=True)
class NotificationFilters:
    status: str | None = None
    notification_type: str | None = None
    priority: str | None = None
    unacknowledged_only: bool = False
    include_expired: bool = False
    limit: int = 50
    offset: int = 0


@dataclass(frozen=True)
class NotificationView:
    # Read-side projection; content is decrypted only here.
    id: str
    type: str
    priority: str
    status: str
    sender_id: str
    recipient_id: str
    company_id: str | None
    content: NotificationContent
    action_data: dict[str, Any] | None
    requires_acknowledgment: bool
    created_at: datetime
    deadline_at: datetime
    expires_at: datetime | None
    delivered_at: datetime | None
    acknowledged_at: datetime | None
    escalated_at: datetime | None
    escalation_of: str | None
    delivery_attempts: int

    def as_dict(self) -> dict[str, Any]:
        def _iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "type": self.type,
            "priority": self.priority,
            "status": self.status,
            "sender_id": self.sender_id,
            "recipient_id": self.recipient_id,
            "company_id": self.company_id,
            "title": self.content.title,
            "message": self.content.message,
            "action_data": self.action_data,
            "requires_acknowledgment": self.requires_acknowledgment,
            "created_at": _iso(self.created_at),
            "deadline_at": _iso(self.deadline_at),
            "expires_at": _iso(self.expires_at),
            "delivered_at": _iso(self.delivered_at),
            "acknowledged_at": _iso(self.acknowledged_at),
            "escalated_at": _iso(self.escalated_at),
            "escalation_of": self.escalation_of,
            "delivery_attempts": self.delivery_attempts,
        }


class DeliveryCoordinator:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        audit: AuditLog,
        executor: RetryExecutor,
        tracker: ErrorTracker,
        transports: TransportRegistry,
        cipher: ContentCipher,
        settings: Settings | None = None,
        deadlines: DeadlinePolicy | None = None,
        targets: EscalationTargetResolver | None = None,
        enqueue: Callable[[str], Awaitable[bool]] | None = None,
        time_source: Callable[[], float] | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session_factory = session_factory
        self._audit = audit
        self._executor = executor
        self._tracker = tracker
        self._transports = transports
        self._cipher = cipher
        self._deadlines = deadlines or DeadlinePolicy.from_settings(self._settings)
        self._targets = targets or StaticEscalationTarget(self._settings.notify_escalation_target_id)
        self._escalation_priorities = escalation_priorities(self._settings)
        self._enqueue = enqueue
        self._time = time_source or time.time
        self._zone = ZoneInfo(self._settings.notify_timezone)
        self._delivery_slots = asyncio.Semaphore(max(1, int(self._settings.notify_delivery_concurrency)))

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._time(), timezone.utc)

    def limit_day(self, now: datetime) -> date:
        # Daily limits roll over at local midnight in the configured timezone.
        return now.astimezone(self._zone).date()

    @property
    def inline_delivery(self) -> bool:
        return self._settings.notify_delivery_mode != "queue"

    async def create_notification(
        self,
        actor: AccessContext,
        *,
        notification_type: str,
        recipients: list[str],
        title: str,
        message: str,
        priority: str | None = None,
        requires_acknowledgment: bool = False,
        expires_at: datetime | None = None,
        action_data: dict[str, Any] | None = None,
    ) -> CreateNotificationResult:
        actor.require(Capability.CREATE_NOTIFICATION)
        now = self.now()
        normalized_type, normalized_priority, unique_recipients = validate_notification_input(
            notification_type=notification_type,
            priority=priority,
            recipients=recipients,
            title=title,
            message=message,
            expires_at=expires_at,
            now=now,
            settings=self._settings,
        )
        content = NotificationContent(title=sanitize_text(title), message=sanitize_text(message))
        resolved_priority = normalized_priority or classify_priority(normalized_type, message, action_data)

        created_ids: list[tuple[str, str]] = []
        skipped: list[RecipientOutcome] = []
        for recipient_id in unique_recipients:
            notification = await self._persist(
                sender_id=actor.user_id,
                company_id=actor.company_id,
                recipient_id=recipient_id,
                notification_type=normalized_type,
                priority=resolved_priority,
                content=content,
                requires_acknowledgment=requires_acknowledgment,
                expires_at=expires_at,
                action_data=action_data,
            )
            if notification is None:
                skipped.append(RecipientOutcome(recipient_id, OUTCOME_SKIPPED, reason=SKIP_DAILY_LIMIT))
                continue
            created_ids.append((recipient_id, notification.id))

        created: list[RecipientOutcome] = []
        failed: list[RecipientOutcome] = []
        if not self.inline_delivery:
            for recipient_id, notification_id in created_ids:
                await self._hand_off(notification_id)
                created.append(RecipientOutcome(recipient_id, OUTCOME_CREATED, notification_id, STATUS_PENDING))
            return CreateNotificationResult(created=created, skipped=skipped, failed=failed)

        outcomes = await asyncio.gather(
            *(self._deliver_bounded(notification_id) for _recipient, notification_id in created_ids),
            return_exceptions=True,
        )
        for (recipient_id, notification_id), outcome in zip(created_ids, outcomes):
            if isinstance(outcome, BaseException):
                error_code = await self._record_unexpected_failure(notification_id, recipient_id, outcome)
                failed.append(
                    RecipientOutcome(recipient_id, OUTCOME_FAILED, notification_id, STATUS_PENDING, error_code=error_code)
                )
            elif outcome.status in {STATUS_FAILED, STATUS_ESCALATED} and outcome.error_code:
                failed.append(
                    RecipientOutcome(
                        recipient_id,
                        OUTCOME_FAILED,
                        notification_id,
                        outcome.status,
                        error_code=outcome.error_code,
                        alerts=outcome.alerts,
                    )
                )
            else:
                created.append(
                    RecipientOutcome(recipient_id, OUTCOME_CREATED, notification_id, outcome.status, alerts=outcome.alerts)
                )
        return CreateNotificationResult(created=created, skipped=skipped, failed=failed)

    async def _persist(
        self,
        *,
        sender_id: str,
        company_id: str | None,
        recipient_id: str,
        notification_type: str,
        priority: str,
        content: NotificationContent,
        requires_acknowledgment: bool,
        expires_at: datetime | None,
        action_data: dict[str, Any] | None,
        escalation_of: str | None = None,
    ) -> Notification | None:
        # Consume the daily limit and insert the row in one transaction; None means skipped.
        now = self.now()
        day = self.limit_day(now)
        limit = int(self._settings.notify_daily_limit)
        async with self._session_factory() as session:
            if priority == PRIORITY_CRITICAL and self._settings.notify_daily_limit_exempt_critical:
                await daily_limits_repo.count_bypass(session, recipient_id=recipient_id, day=day, now=now)
            elif not await daily_limits_repo.try_consume(
                session, recipient_id=recipient_id, day=day, limit=limit, now=now
            ):
                await self._audit.record(
                    event=EVENT_SKIPPED,
                    worker_id=recipient_id,
                    metadata={
                        "reason": SKIP_DAILY_LIMIT,
                        "type": notification_type,
                        "priority": priority,
                        "daily_limit": limit,
                        "day": day.isoformat(),
                        "escalation_of": escalation_of,
                    },
                    session=session,
                )
                await session.commit()
                increment_counter("notifications_skipped_total.daily_limit")
                logger.info("notification_skipped recipient_id=%s reason=%s", recipient_id, SKIP_DAILY_LIMIT)
                return None

            notification_id = uuid4().hex
            sealed_title, sealed_message = self._cipher.seal_content(content, notification_id=notification_id)
            notification = Notification(
                id=notification_id,
                type=notification_type,
                priority=priority,
                sender_id=sender_id,
                recipient_id=recipient_id,
                company_id=company_id,
                title_sealed=sealed_title.to_json(),
                message_sealed=sealed_message.to_json(),
                content_hash=content_hash(
                    notification_type=notification_type,
                    priority=priority,
                    title=content.title,
                    message=content.message,
                ),
                action_data=action_data,
                created_at=now,
                deadline_at=self._deadlines.deadline_for(priority, now),
                expires_at=expires_at,
                requires_acknowledgment=requires_acknowledgment,
                status=STATUS_PENDING,
                delivery_attempts=0,
                escalation_of=escalation_of,
            )
            session.add(notification)
            await self._audit.record(
                event=EVENT_CREATED,
                notification_id=notification_id,
                worker_id=recipient_id,
                status=STATUS_PENDING,
                metadata={
                    "type": notification_type,
                    "priority": priority,
                    "sender_id": sender_id,
                    "requires_acknowledgment": requires_acknowledgment,
                    "deadline_s": self._deadlines.seconds_for(priority),
                    "escalation_of": escalation_of,
                },
                session=session,
            )
            await session.commit()
        increment_counter(f"notifications_created_total.{priority}")
        return notification

    async def _hand_off(self, notification_id: str) -> None:
        if self._enqueue is None:
            from sitenotify.services.notifications.queue import enqueue_notification_delivery

            self._enqueue = enqueue_notification_delivery
        if not await self._enqueue(notification_id):
            logger.warning("delivery_handoff_failed notification_id=%s", notification_id)

    async def _deliver_bounded(self, notification_id: str) -> DeliveryOutcome:
        async with self._delivery_slots:
            return await self.deliver(notification_id)

    async def _record_unexpected_failure(
        self, notification_id: str, recipient_id: str, error: BaseException
    ) -> str:
        # Unexpected errors (store outages, bugs) still leave an audit row and a log entry.
        logger.error("delivery_unexpected_failure notification_id=%s", notification_id, exc_info=error)
        await self._tracker.log_error(
            error,
            ErrorContext(
                service_name=SERVICE_PUSH,
                operation="deliver",
                notification_id=notification_id,
                worker_id=recipient_id,
            ),
            severity=SEVERITY_HIGH,
        )
        return error_code_for(error)

    async def deliver(self, notification_id: str) -> DeliveryOutcome:
        # Claim the row, then run the retry sequence over the primary channel.
        now = self.now()
        async with self._session_factory() as session:
            claimed = await notifications_repo.claim_delivery(
                session, notification_id, now=now, stale_before=self._lease_cutoff(now)
            )
            await session.commit()
            notification = await notifications_repo.get(session, notification_id)
        if notification is None:
            raise NotificationNotFoundError(f"notification {notification_id} not found")
        if not claimed:
            logger.info("delivery_claim_skipped notification_id=%s status=%s", notification_id, notification.status)
            return DeliveryOutcome(
                notification_id, notification.status, notification.delivery_attempts, claimed=False
            )
        try:
            return await self._deliver_claimed(notification, now)
        except Exception as exc:
            # Unexpected errors end the run as FAILED so the row never keeps a dead claim.
            logger.error("delivery_unexpected_failure notification_id=%s", notification_id, exc_info=exc)
            return await self._mark_failed(notification, exc, [], service_name=SERVICE_PUSH)
        except BaseException:
            await asyncio.shield(self._release_claim(notification_id))
            raise

    def _lease_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(seconds=max(1, int(self._settings.notify_delivery_lease_s)))

    async def _release_claim(self, notification_id: str) -> None:
        async with self._session_factory() as session:
            released = await notifications_repo.release_claim(session, notification_id)
            await session.commit()
        if released:
            logger.warning("delivery_claim_released notification_id=%s", notification_id)

    async def _deliver_claimed(self, notification: Notification, now: datetime) -> DeliveryOutcome:
        if notification.expires_at is not None and notification.expires_at <= now:
            return await self._expire(notification)

        payload = self._render_payload(notification)
        try:
            result = await self._send_with_retry(notification, SERVICE_PUSH, payload)
        except DeliveryCancelledError:
            return await self._cancelled(notification)
        except (RetryExhaustedError, CircuitOpenError) as exc:
            alerts = list(exc.alerts)
            if self._fallback_allowed(notification):
                try:
                    result = await self._send_with_retry(notification, SERVICE_SMS, payload)
                except DeliveryCancelledError:
                    return await self._cancelled(notification)
                except (RetryExhaustedError, CircuitOpenError) as fallback_exc:
                    alerts.extend(fallback_exc.alerts)
                    return await self._mark_failed(
                        notification, fallback_exc, alerts, service_name=SERVICE_SMS, primary_error=exc
                    )
                alerts.extend(result.alerts)
                return await self._mark_delivered(notification, result.value, SERVICE_SMS, result.attempts, alerts)
            return await self._mark_failed(notification, exc, alerts, service_name=SERVICE_PUSH)
        return await self._mark_delivered(notification, result.value, SERVICE_PUSH, result.attempts, list(result.alerts))

    def _fallback_allowed(self, notification: Notification) -> bool:
        return (
            self._settings.notify_sms_fallback_enabled
            and notification.priority in _FALLBACK_PRIORITIES
            and self._transports.has(SERVICE_SMS)
        )

    async def _send_with_retry(self, notification: Notification, service_name: str, payload: dict[str, Any]):
        async def _attempt(attempt: int):
            await self._audit.record(
                event=EVENT_ATTEMPT,
                notification_id=notification.id,
                worker_id=notification.recipient_id,
                service_name=service_name,
                metadata={"attempt": attempt},
            )
            async with self._session_factory() as session:
                await notifications_repo.record_attempt(session, notification.id)
                await session.commit()
            adapter = self._transports.get(service_name)
            return await adapter.send(notification.recipient_id, payload)

        async def _should_cancel() -> bool:
            return await self._should_cancel(notification.id)

        context = ErrorContext(
            service_name=service_name,
            operation="deliver",
            notification_id=notification.id,
            worker_id=notification.recipient_id,
            extra={"priority": notification.priority},
        )
        if service_name == SERVICE_SMS:
            logger.warning("delivery_sms_fallback notification_id=%s", notification.id)
            increment_counter("delivery_sms_fallback_total")
        return await self._executor.execute_with_retry(
            _attempt, service_name, context=context, should_cancel=_should_cancel
        )

    async def _should_cancel(self, notification_id: str) -> bool:
        # Stop retrying once the row left PENDING through another path or has expired.
        async with self._session_factory() as session:
            current = await notifications_repo.get(session, notification_id)
        if current is None or current.status != STATUS_PENDING:
            return True
        return current.expires_at is not None and current.expires_at <= self.now()

    def _render_payload(self, notification: Notification) -> dict[str, Any]:
        content = self.open_content(notification)
        return {
            "notification_id": notification.id,
            "type": notification.type,
            "priority": notification.priority,
            "title": content.title,
            "message": content.message,
            "action_data": notification.action_data or {},
            "requires_acknowledgment": notification.requires_acknowledgment,
            "deadline_at": notification.deadline_at.isoformat(),
        }

    def open_content(self, notification: Notification) -> NotificationContent:
        # Decrypt at the read boundary and verify the stored fingerprint.
        content = self._cipher.open_content(
            notification_id=notification.id,
            title=SealedText.from_json(notification.title_sealed),
            message=SealedText.from_json(notification.message_sealed),
        )
        expected = content_hash(
            notification_type=notification.type,
            priority=notification.priority,
            title=content.title,
            message=content.message,
        )
        if expected != notification.content_hash:
            raise ContentIntegrityError(f"content hash mismatch for notification {notification.id}")
        return content

    async def _mark_delivered(
        self,
        notification: Notification,
        receipt: Any,
        service_name: str,
        attempts: int,
        alerts: list[AdminAlert],
    ) -> DeliveryOutcome:
        now = self.now()
        async with self._session_factory() as session:
            moved = await notifications_repo.transition(
                session,
                notification.id,
                target=STATUS_DELIVERED,
                values={"delivered_at": now, "delivered_via": service_name},
            )
            if moved:
                await self._audit.record(
                    event=EVENT_DELIVERED,
                    notification_id=notification.id,
                    worker_id=notification.recipient_id,
                    status=STATUS_DELIVERED,
                    service_name=service_name,
                    metadata={
                        "attempts": attempts,
                        "provider_message_id": getattr(receipt, "provider_message_id", None),
                    },
                    session=session,
                )
            await session.commit()
            current = await notifications_repo.get(session, notification.id)
        if not moved:
            logger.warning(
                "delivery_result_discarded notification_id=%s status=%s",
                notification.id,
                current.status if current else None,
            )
            return DeliveryOutcome(notification.id, current.status if current else STATUS_PENDING, attempts, service_name)
        increment_counter(f"notifications_delivered_total.{service_name}")
        logger.info(
            "notification_delivered notification_id=%s service=%s attempts=%s",
            notification.id,
            service_name,
            attempts,
        )
        return DeliveryOutcome(notification.id, STATUS_DELIVERED, attempts, service_name, alerts=tuple(alerts))

    async def _mark_failed(
        self,
        notification: Notification,
        error: BaseException,
        alerts: list[AdminAlert],
        *,
        service_name: str,
        primary_error: BaseException | None = None,
    ) -> DeliveryOutcome:
        now = self.now()
        error_code = self._final_error_code(error)
        attempts = getattr(error, "attempts", 0)
        if isinstance(error, CircuitOpenError):
            # Capacity failures bypass the per-attempt tracker, so count them for alerting here.
            alerts.extend(
                await self._tracker.track_error_for_alerting(
                    error, ErrorContext(service_name=error.service_name, notification_id=notification.id)
                )
            )
        metadata: dict[str, Any] = {
            "reason": getattr(error, "reason", error_code),
            "attempts": attempts,
            "error_message": str(error)[:500],
        }
        if primary_error is not None:
            metadata["primary_error_code"] = self._final_error_code(primary_error)
        async with self._session_factory() as session:
            moved = await notifications_repo.transition(
                session,
                notification.id,
                target=STATUS_FAILED,
                values={"failed_at": now, "last_error": error_code},
            )
            if moved:
                await self._audit.record(
                    event=EVENT_ERROR,
                    notification_id=notification.id,
                    worker_id=notification.recipient_id,
                    status=STATUS_FAILED,
                    service_name=service_name,
                    error_code=error_code,
                    metadata=metadata,
                    session=session,
                )
            await session.commit()
            current = await notifications_repo.get(session, notification.id)
        if not moved:
            status = current.status if current else STATUS_PENDING
            return DeliveryOutcome(notification.id, status, attempts, error_code=error_code, alerts=tuple(alerts))
        increment_counter("notifications_failed_total")
        logger.warning("notification_failed notification_id=%s error_code=%s", notification.id, error_code)

        if current is not None and self._escalatable(current):
            escalation = await self.escalate(current, REASON_DELIVERY_FAILED)
            if escalation is not None:
                alerts.extend(escalation.alerts)
                return DeliveryOutcome(
                    notification.id,
                    STATUS_ESCALATED,
                    attempts,
                    error_code=error_code,
                    escalated=True,
                    alerts=tuple(alerts),
                )
        return DeliveryOutcome(notification.id, STATUS_FAILED, attempts, error_code=error_code, alerts=tuple(alerts))

    @staticmethod
    def _final_error_code(error: BaseException) -> str:
        last_error = getattr(error, "last_error", None)
        if last_error is not None:
            return error_code_for(last_error)
        return error_code_for(error)

    async def _cancelled(self, notification: Notification) -> DeliveryOutcome:
        async with self._session_factory() as session:
            current = await notifications_repo.get(session, notification.id)
        if current is not None and current.status == STATUS_PENDING:
            return await self._expire(current)
        status = current.status if current else STATUS_PENDING
        logger.info("delivery_cancelled notification_id=%s status=%s", notification.id, status)
        return DeliveryOutcome(notification.id, status, current.delivery_attempts if current else 0)

    async def _expire(self, notification: Notification) -> DeliveryOutcome:
        # Expired notifications fail quietly; escalating stale content helps nobody.
        now = self.now()
        async with self._session_factory() as session:
            moved = await notifications_repo.transition(
                session,
                notification.id,
                target=STATUS_FAILED,
                values={"failed_at": now, "last_error": _EXPIRED_ERROR_CODE},
            )
            if moved:
                await self._audit.record(
                    event=EVENT_ERROR,
                    notification_id=notification.id,
                    worker_id=notification.recipient_id,
                    status=STATUS_FAILED,
                    error_code=_EXPIRED_ERROR_CODE,
                    metadata={"reason": _EXPIRED_ERROR_CODE},
                    session=session,
                )
            await session.commit()
        logger.info("notification_expired notification_id=%s", notification.id)
        return DeliveryOutcome(
            notification.id,
            STATUS_FAILED if moved else notification.status,
            notification.delivery_attempts,
            error_code=_EXPIRED_ERROR_CODE,
        )

    def _escalatable(self, notification: Notification) -> bool:
        return notification.escalation_of is None and notification.priority in self._escalation_priorities

    async def escalate(
        self, notification: Notification, reason: str, *, now: datetime | None = None
    ) -> EscalationOutcome | None:
        # Move to ESCALATED together with its audit row, then notify the resolved target.
        now = now or self.now()
        target_id = await self._targets.resolve(notification)
        deadline_s = self._deadlines.seconds_for(notification.priority)
        elapsed_wait_s = (now - notification.created_at).total_seconds()
        metadata: dict[str, Any] = {
            "action": "ESCALATED",
            "reason": reason,
            "target_id": target_id,
            "deadline_s": deadline_s,
            "elapsed_wait_s": elapsed_wait_s,
        }
        if notification.delivered_at is not None:
            metadata["since_delivery_s"] = (now - notification.delivered_at).total_seconds()
        async with self._session_factory() as session:
            moved = await notifications_repo.transition(
                session,
                notification.id,
                target=STATUS_ESCALATED,
                values={"escalated_at": now, "escalation_reason": reason, "escalation_target_id": target_id},
            )
            if moved:
                await self._audit.record(
                    event=EVENT_ESCALATION,
                    notification_id=notification.id,
                    worker_id=notification.recipient_id,
                    status=STATUS_ESCALATED,
                    metadata=metadata,
                    session=session,
                )
            await session.commit()
        if not moved:
            return None

        alerts: list[AdminAlert] = []
        escalation_notification_id: str | None = None
        if target_id is None:
            escalation_status = ESCALATION_NO_TARGET
        else:
            try:
                escalation_status, escalation_notification_id = await self._notify_target(
                    notification, target_id, reason, deadline_s
                )
            except Exception as exc:
                logger.error(
                    "escalation_notify_failed notification_id=%s target_id=%s",
                    notification.id,
                    target_id,
                    exc_info=exc,
                )
                escalation_status = ESCALATION_SEND_FAILED
        if escalation_status in {ESCALATION_NO_TARGET, ESCALATION_LIMIT_EXCEEDED, ESCALATION_SEND_FAILED}:
            alerts.append(
                await self._tracker.trigger_admin_alert(
                    ALERT_ESCALATION_FAILED,
                    {
                        "notification_id": notification.id,
                        "reason": reason,
                        "escalation_status": escalation_status,
                        "target_id": target_id,
                    },
                )
            )

        await self._audit.record(
            event=EVENT_ESCALATION,
            notification_id=notification.id,
            worker_id=notification.recipient_id,
            metadata={
                "action": "TARGET_NOTIFIED",
                "reason": reason,
                "target_id": target_id,
                "escalation_status": escalation_status,
                "escalation_notification_id": escalation_notification_id,
            },
        )
        increment_counter(f"notifications_escalated_total.{reason}")
        logger.warning(
            "notification_escalated notification_id=%s reason=%s target_id=%s status=%s elapsed_wait_s=%.1f",
            notification.id,
            reason,
            target_id,
            escalation_status,
            elapsed_wait_s,
        )
        return EscalationOutcome(
            notification_id=notification.id,
            reason=reason,
            target_id=target_id,
            escalation_status=escalation_status,
            elapsed_wait_s=elapsed_wait_s,
            escalation_notification_id=escalation_notification_id,
            alerts=tuple(alerts),
        )

    async def _notify_target(
        self,
        notification: Notification,
        target_id: str,
        reason: str,
        deadline_s: int,
    ) -> tuple[str, str | None]:
        original = self.open_content(notification)
        title, message = escalation_text(
            notification=notification,
            original_title=original.title,
            reason=reason,
            deadline_s=deadline_s,
            title_max_length=self._settings.notify_title_max_length,
        )
        child = await self._persist(
            sender_id=notification.sender_id,
            company_id=notification.company_id,
            recipient_id=target_id,
            notification_type=notification.type,
            priority=notification.priority,
            content=NotificationContent(title=title, message=message),
            requires_acknowledgment=True,
            expires_at=None,
            action_data={"escalation_of": notification.id, "reason": reason},
            escalation_of=notification.id,
        )
        if child is None:
            return ESCALATION_LIMIT_EXCEEDED, None
        if not self.inline_delivery:
            await self._hand_off(child.id)
            return ESCALATION_QUEUED, child.id
        outcome = await self.deliver(child.id)
        if outcome.status == STATUS_DELIVERED:
            return ESCALATION_SENT, child.id
        return ESCALATION_SEND_FAILED, child.id

    async def check_acknowledgment_deadlines(self, now: datetime | None = None) -> list[EscalationOutcome]:
        # Escalate delivered notifications past their acknowledgment deadline and undelivered ones past theirs.
        now = now or self.now()
        batch = max(1, int(self._settings.notify_escalation_batch_size))
        async with self._session_factory() as session:
            overdue = await notifications_repo.list_overdue_acknowledgments(
                session, now=now, priorities=self._escalation_priorities, limit=batch
            )
            undelivered = await notifications_repo.list_undelivered_past_deadline(
                session, now=now, priorities=self._escalation_priorities, limit=batch
            )
        outcomes: list[EscalationOutcome] = []
        for notification in overdue:
            outcome = await self.escalate(notification, REASON_ACK_TIMEOUT, now=now)
            if outcome is not None:
                outcomes.append(outcome)
        for notification in undelivered:
            outcome = await self._fail_past_deadline(notification, now)
            if outcome is not None:
                outcomes.append(outcome)
        return outcomes

    async def _fail_past_deadline(self, notification: Notification, now: datetime) -> EscalationOutcome | None:
        # A row still PENDING at its deadline has missed the delivery window; fail it, then escalate.
        if notification.expires_at is not None and notification.expires_at <= now:
            await self._expire(notification)
            return None
        async with self._session_factory() as session:
            moved = await notifications_repo.transition(
                session,
                notification.id,
                target=STATUS_FAILED,
                values={"failed_at": now, "last_error": _DEADLINE_ERROR_CODE},
                expected=[STATUS_PENDING],
            )
            if moved:
                await self._audit.record(
                    event=EVENT_ERROR,
                    notification_id=notification.id,
                    worker_id=notification.recipient_id,
                    status=STATUS_FAILED,
                    error_code=_DEADLINE_ERROR_CODE,
                    metadata={
                        "reason": _DEADLINE_ERROR_CODE,
                        "attempts": notification.delivery_attempts,
                        "claimed": notification.delivery_started_at is not None,
                        "deadline_s": self._deadlines.seconds_for(notification.priority),
                    },
                    session=session,
                )
            await session.commit()
            current = await notifications_repo.get(session, notification.id)
        if not moved or current is None:
            return None
        increment_counter("notifications_failed_total")
        logger.warning(
            "delivery_deadline_missed notification_id=%s priority=%s attempts=%s",
            notification.id,
            notification.priority,
            notification.delivery_attempts,
        )
        return await self.escalate(current, REASON_DELIVERY_FAILED, now=now)

    async def requeue_unclaimed(self, *, older_than_s: int = 30, limit: int = 100) -> int:
        # Recover PENDING rows whose queue hand-off was lost or whose delivery run died holding the claim.
        now = self.now()
        cutoff = now - timedelta(seconds=older_than_s)
        async with self._session_factory() as session:
            notification_ids = await notifications_repo.list_unclaimed_pending(
                session, created_before=cutoff, stale_before=self._lease_cutoff(now), limit=limit
            )
        for notification_id in notification_ids:
            await self._hand_off(notification_id)
        return len(notification_ids)

    async def acknowledge(self, notification_id: str, worker_id: str) -> AcknowledgeResult:
        # Idempotent: a repeated acknowledgment returns the stored result without new audit rows.
        now = self.now()
        async with self._session_factory() as session:
            notification = await notifications_repo.get(session, notification_id)
            if notification is None:
                raise NotificationNotFoundError(f"notification {notification_id} not found")
            if notification.recipient_id != worker_id:
                raise AccessDeniedError("only the recipient can acknowledge a notification")
            if notification.status == STATUS_ACKNOWLEDGED:
                return AcknowledgeResult(notification_id, STATUS_ACKNOWLEDGED, notification.acknowledged_at, True)
            if notification.status not in source_statuses(STATUS_ACKNOWLEDGED):
                raise NotificationStateError(
                    f"notification {notification_id} cannot be acknowledged while {notification.status}"
                )
            previous = notification.status
            moved = await notifications_repo.transition(
                session,
                notification_id,
                target=STATUS_ACKNOWLEDGED,
                values={"acknowledged_at": now, "acknowledged_by": worker_id},
            )
            if moved:
                await self._audit.record(
                    event=EVENT_ACK,
                    notification_id=notification_id,
                    worker_id=worker_id,
                    status=STATUS_ACKNOWLEDGED,
                    metadata={
                        "previous_status": previous,
                        "response_time_s": (now - notification.created_at).total_seconds(),
                    },
                    session=session,
                )
            await session.commit()
            current = await notifications_repo.get(session, notification_id)
        if current is not None and current.status == STATUS_ACKNOWLEDGED:
            if moved:
                increment_counter("notifications_acknowledged_total")
            return AcknowledgeResult(notification_id, STATUS_ACKNOWLEDGED, current.acknowledged_at, not moved)
        raise NotificationStateError(f"notification {notification_id} changed status during acknowledgment")

    async def get_notifications(
        self,
        actor: AccessContext,
        recipient_id: str | None = None,
        filters: NotificationFilters | None = None,
        *,
        all_recipients: bool = False,
    ) -> list[NotificationView]:
        # Own notifications by default; other recipients need the read-all capability.
        filters = filters or NotificationFilters()
        target_recipient = None if all_recipients else (recipient_id or actor.user_id)
        if target_recipient == actor.user_id:
            actor.require(Capability.READ_OWN_NOTIFICATIONS)
        else:
            actor.require(Capability.READ_ALL_NOTIFICATIONS)
        company_id = None if actor.is_platform_admin else actor.company_id
        if target_recipient != actor.user_id and company_id is None and not actor.is_platform_admin:
            raise AccessDeniedError("company scope is required to read other recipients' notifications")
        async with self._session_factory() as session:
            rows = await notifications_repo.list_notifications(
                session,
                now=self.now(),
                recipient_id=target_recipient,
                company_id=company_id if target_recipient != actor.user_id else None,
                status=filters.status,
                notification_type=filters.notification_type,
                priority=filters.priority,
                unacknowledged_only=filters.unacknowledged_only,
                include_expired=filters.include_expired,
                limit=max(1, min(int(filters.limit), 200)),
                offset=max(0, int(filters.offset)),
            )
        return [self._view(row) for row in rows]

    def _view(self, notification: Notification) -> NotificationView:
        return NotificationView(
            id=notification.id,
            type=notification.type,
            priority=notification.priority,
            status=notification.status,
            sender_id=notification.sender_id,
            recipient_id=notification.recipient_id,
            company_id=notification.company_id,
            content=self.open_content(notification),
            action_data=notification.action_data,
            requires_acknowledgment=notification.requires_acknowledgment,
            created_at=notification.created_at,
            deadline_at=notification.deadline_at,
            expires_at=notification.expires_at,
            delivered_at=notification.delivered_at,
            acknowledged_at=notification.acknowledged_at,
            escalated_at=notification.escalated_at,
            escalation_of=notification.escalation_of,
            delivery_attempts=notification.delivery_attempts,
        )

    async def get_audit_trail(self, actor: AccessContext, notification_id: str) -> tuple[list[AuditRecord], list[str]]:
        # Return the ordered trail plus the lifecycle path it replays to.
        actor.require(Capability.VIEW_AUDIT)
        async with self._session_factory() as session:
            notification = await notifications_repo.get(session, notification_id)
        if notification is None:
            raise NotificationNotFoundError(f"notification {notification_id} not found")
        if not actor.is_platform_admin and notification.company_id != actor.company_id:
            raise NotificationNotFoundError(f"notification {notification_id} not found")
        records = await self._audit.trail(notification_id)
        return records, replay_status_path(records)

    def _company_scope(self, actor: AccessContext, company_id: str | None = None) -> str | None:
        # Platform admins may name any company; everyone else is pinned to their own.
        if actor.is_platform_admin:
            return company_id
        if actor.company_id is None:
            raise AccessDeniedError("company scope is required for escalation management")
        if company_id is not None and company_id != actor.company_id:
            raise AccessDeniedError(f"cannot manage escalations for company {company_id}")
        return actor.company_id

    async def get_escalation_stats(self, actor: AccessContext, *, days: int = 7) -> dict[str, Any]:
        actor.require(Capability.VIEW_ESCALATION_STATS)
        company_id = self._company_scope(actor)
        days = max(1, min(int(days), 90))
        since = self.now() - timedelta(days=days)
        async with self._session_factory() as session:
            records = await audit_repo.list_escalations(session, since=since, company_id=company_id)

        total = 0
        workers: set[str] = set()
        by_reason: dict[str, int] = {}
        by_status: dict[str, int] = {}
        daily: dict[str, int] = {}
        for record in records:
            metadata = record.metadata_json or {}
            if metadata.get("action") == "TARGET_NOTIFIED":
                status = str(metadata.get("escalation_status") or "UNKNOWN")
                by_status[status] = by_status.get(status, 0) + 1
                continue
            if record.status != STATUS_ESCALATED:
                continue
            total += 1
            if record.worker_id:
                workers.add(record.worker_id)
            reason = str(metadata.get("reason") or "UNKNOWN")
            by_reason[reason] = by_reason.get(reason, 0) + 1
            day = self.limit_day(record.timestamp).isoformat()
            daily[day] = daily.get(day, 0) + 1
        return {
            "days": days,
            "company_id": company_id,
            "since": since.isoformat(),
            "total_escalations": total,
            "unique_workers": len(workers),
            "by_reason": by_reason,
            "by_escalation_status": by_status,
            "daily": [{"date": day, "count": count} for day, count in sorted(daily.items())],
        }

    async def trigger_escalation_check(self, actor: AccessContext) -> list[EscalationOutcome]:
        actor.require(Capability.TRIGGER_ESCALATION)
        outcomes = await self.check_acknowledgment_deadlines()
        logger.info("escalation_check_triggered actor_id=%s escalated=%s", actor.user_id, len(outcomes))
        return outcomes

    async def force_escalate(self, actor: AccessContext, notification_id: str) -> EscalationOutcome:
        # Operator escalation skips the deadline but still follows the lifecycle.
        actor.require(Capability.TRIGGER_ESCALATION)
        async with self._session_factory() as session:
            notification = await notifications_repo.get(session, notification_id)
        if notification is None:
            raise NotificationNotFoundError(f"notification {notification_id} not found")
        if not actor.is_platform_admin and notification.company_id != actor.company_id:
            raise NotificationNotFoundError(f"notification {notification_id} not found")
        if notification.escalation_of is not None:
            raise NotificationStateError(f"notification {notification_id} is itself an escalation")
        if notification.status not in source_statuses(STATUS_ESCALATED):
            raise NotificationStateError(
                f"notification {notification_id} cannot be escalated from {notification.status}"
            )
        outcome = await self.escalate(notification, REASON_MANUAL)
        if outcome is None:
            raise NotificationStateError(f"notification {notification_id} changed status during escalation")
        logger.info("escalation_forced notification_id=%s actor_id=%s", notification_id, actor.user_id)
        return outcome

    async def assign_supervisor(
        self,
        actor: AccessContext,
        recipient_id: str,
        supervisor_id: str,
        *,
        company_id: str | None = None,
    ) -> dict[str, Any]:
        actor.require(Capability.MANAGE_ESCALATION_CONTACTS)
        company_id = self._company_scope(actor, company_id)
        recipient_id = (recipient_id or "").strip()
        supervisor_id = (supervisor_id or "").strip()
        if not recipient_id or not supervisor_id:
            raise NotificationValidationError("recipient and supervisor are required", field="supervisor_id")
        if recipient_id == supervisor_id:
            raise NotificationValidationError("a worker cannot supervise themselves", field="supervisor_id")
        async with self._session_factory() as session:
            assignment = await contacts_repo.set_supervisor(
                session,
                recipient_id=recipient_id,
                supervisor_id=supervisor_id,
                company_id=company_id,
                now=self.now(),
            )
            await session.commit()
            payload = {
                "recipient_id": assignment.recipient_id,
                "supervisor_id": assignment.supervisor_id,
                "company_id": assignment.company_id,
                "updated_at": assignment.updated_at.isoformat(),
            }
        logger.info(
            "supervisor_assigned recipient_id=%s supervisor_id=%s actor_id=%s",
            recipient_id,
            supervisor_id,
            actor.user_id,
        )
        return payload

    async def add_company_contact(
        self,
        actor: AccessContext,
        company_id: str,
        contact_id: str,
        *,
        role: str = "supervisor",
    ) -> dict[str, Any]:
        actor.require(Capability.MANAGE_ESCALATION_CONTACTS)
        company_id = self._company_scope(actor, company_id)
        contact_id = (contact_id or "").strip()
        role = (role or "").strip().lower()
        if not company_id or not contact_id:
            raise NotificationValidationError("company and contact are required", field="contact_id")
        if role not in contacts_repo.ESCALATION_CONTACT_ROLES:
            raise NotificationValidationError(f"unsupported escalation contact role: {role}", field="role")
        async with self._session_factory() as session:
            contact = await contacts_repo.add_company_contact(
                session, company_id=company_id, contact_id=contact_id, role=role, now=self.now()
            )
            await session.commit()
            payload = {
                "company_id": contact.company_id,
                "contact_id": contact.contact_id,
                "role": contact.role,
                "created_at": contact.created_at.isoformat(),
            }
        logger.info(
            "escalation_contact_added company_id=%s contact_id=%s role=%s actor_id=%s",
            company_id,
            contact_id,
            role,
            actor.user_id,
        )
        return payload

    async def get_daily_count(self, recipient_id: str, *, day: date | None = None) -> int:
        day = day or self.limit_day(self.now())
        async with self._session_factory() as session:
            return await daily_limits_repo.get_count(session, recipient_id=recipient_id, day=day)
