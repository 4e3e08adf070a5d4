from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sitenotify.core.config import Settings, get_settings, split_csv
from sitenotify.domain.models import Notification
from sitenotify.domain.state import (
    PRIORITY_CRITICAL,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_NORMAL,
)
from sitenotify.persistence.repos import escalation_contacts as contacts_repo


logger = logging.getLogger(__name__)


REASON_DELIVERY_FAILED = "DELIVERY_FAILED"
REASON_ACK_TIMEOUT = "ACKNOWLEDGMENT_TIMEOUT"
REASON_MANUAL = "MANUAL"

ESCALATION_SENT = "SUCCESS"
ESCALATION_QUEUED = "QUEUED"
ESCALATION_SEND_FAILED = "FAILED"
ESCALATION_NO_TARGET = "NO_TARGET"
ESCALATION_LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


@dataclass(frozen=True)
class DeadlinePolicy:
    # Seconds a notification may wait for delivery plus acknowledgment, per priority.
    critical_s: int
    high_s: int
    normal_s: int
    low_s: int

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "DeadlinePolicy":
        settings = settings or get_settings()
        return cls(
            critical_s=max(1, int(settings.notify_deadline_critical_s)),
            high_s=max(1, int(settings.notify_deadline_high_s)),
            normal_s=max(1, int(settings.notify_deadline_normal_s)),
            low_s=max(1, int(settings.notify_deadline_low_s)),
        )

    def seconds_for(self, priority: str) -> int:
        return {
            PRIORITY_CRITICAL: self.critical_s,
            PRIORITY_HIGH: self.high_s,
            PRIORITY_NORMAL: self.normal_s,
            PRIORITY_LOW: self.low_s,
        }.get(priority, self.normal_s)

    def deadline_for(self, priority: str, created_at: datetime) -> datetime:
        return created_at + timedelta(seconds=self.seconds_for(priority))


def escalation_priorities(settings: Settings | None = None) -> frozenset[str]:
    settings = settings or get_settings()
    return frozenset(split_csv(settings.notify_escalation_priorities))


class EscalationTargetResolver(Protocol):
    async def resolve(self, notification: Notification) -> str | None: ...


class StaticEscalationTarget:
    # One configured supervisor/admin receives every escalation.
    def __init__(self, target_id: str | None) -> None:
        self._target_id = (target_id or "").strip() or None

    async def resolve(self, notification: Notification) -> str | None:
        if self._target_id is None or self._target_id == notification.recipient_id:
            return None
        return self._target_id


class DirectoryEscalationTarget:
    # Direct supervisor first, then a contact in the recipient's company, then the static fallback.
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        fallback: EscalationTargetResolver | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._fallback = fallback

    async def resolve(self, notification: Notification) -> str | None:
        async with self._session_factory() as session:
            assignment = await contacts_repo.get_supervisor(session, notification.recipient_id)
            if assignment is not None and assignment.supervisor_id != notification.recipient_id:
                return assignment.supervisor_id
            if notification.company_id:
                for contact in await contacts_repo.list_company_contacts(session, notification.company_id):
                    if contact.contact_id != notification.recipient_id:
                        return contact.contact_id
        if self._fallback is None:
            logger.warning("escalation_target_missing recipient_id=%s", notification.recipient_id)
            return None
        return await self._fallback.resolve(notification)


def escalation_text(
    *,
    notification: Notification,
    original_title: str,
    reason: str,
    deadline_s: int,
    title_max_length: int,
) -> tuple[str, str]:
    # Compose the supervisor-facing message without copying the original body.
    title = f"Escalation: {original_title}"
    if len(title) > title_max_length:
        title = title[: title_max_length - 3] + "..."
    if reason == REASON_ACK_TIMEOUT:
        detail = f"was not acknowledged within {deadline_s}s"
    elif reason == REASON_MANUAL:
        detail = "was escalated by an operator"
    else:
        detail = "could not be delivered"
    message = (
        f"{notification.priority} {notification.type} notification {notification.id} "
        f"for recipient {notification.recipient_id} {detail}."
    )
    return title, message
