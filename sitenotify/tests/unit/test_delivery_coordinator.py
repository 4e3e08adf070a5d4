from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest
from sqlalchemy import update

from sitenotify.core.errors import (
    AccessDeniedError,
    ContentIntegrityError,
    NotificationNotFoundError,
    NotificationStateError,
    NotificationValidationError,
    TransportError,
)
from sitenotify.domain.models import Notification
from sitenotify.persistence.repos import notifications as notifications_repo
from sitenotify.services.notifications import NotificationFilters
from sitenotify.tests.utils.actors import admin, supervisor, worker


def _provider_down() -> TransportError:
    return TransportError("gateway unavailable", code="PROVIDER_UNAVAILABLE")


class _RecordingQueue:
    def __init__(self) -> None:
        self.ids: list[str] = []

    async def __call__(self, notification_id: str) -> bool:
        self.ids.append(notification_id)
        return True


async def _load(session_factory, notification_id: str) -> Notification:
    async with session_factory() as session:
        return await notifications_repo.get(session, notification_id)


async def _create(engine, *, recipients=("worker-1",), priority="NORMAL", **kwargs):
    kwargs.setdefault("notification_type", "TASK_UPDATE")
    kwargs.setdefault("title", "Pour moved")
    kwargs.setdefault("message", "Slab pour moved to 10:00")
    return await engine.coordinator.create_notification(
        supervisor(),
        recipients=list(recipients),
        priority=priority,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_inline_create_delivers_and_seals_content(notify_engine, push, session_factory) -> None:
    result = await _create(notify_engine, recipients=["worker-1", "worker-2"])

    assert [item.recipient_id for item in result.created] == ["worker-1", "worker-2"]
    assert {item.status for item in result.created} == {"DELIVERED"}
    assert result.skipped == [] and result.failed == []
    assert [recipient for recipient, _payload in push.sent] == ["worker-1", "worker-2"]
    assert push.sent[0][1]["title"] == "Pour moved"

    notification_id = result.created[0].notification_id
    row = await _load(session_factory, notification_id)
    assert "Pour moved" not in str(row.title_sealed)
    assert "Slab pour" not in str(row.message_sealed)
    assert row.delivered_via == "PUSH"
    assert row.delivery_attempts == 1

    records, path = await notify_engine.coordinator.get_audit_trail(supervisor(), notification_id)
    assert [record.event for record in records] == ["CREATED", "ATTEMPT", "DELIVERED"]
    assert path == ["PENDING", "DELIVERED"]


@pytest.mark.asyncio
async def test_daily_limit_skips_eleventh_notification(make_engine, push) -> None:
    engine = make_engine(notify_daily_limit=10)
    for index in range(10):
        result = await _create(engine, title=f"Update {index}")
        assert result.created[0].status == "DELIVERED"

    assert await engine.coordinator.get_daily_count("worker-1") == 10

    result = await _create(engine, recipients=["worker-1", "worker-2"], title="Update 11")

    assert [item.recipient_id for item in result.skipped] == ["worker-1"]
    assert result.skipped[0].reason == "DAILY_LIMIT_EXCEEDED"
    assert [item.recipient_id for item in result.created] == ["worker-2"]
    assert await engine.coordinator.get_daily_count("worker-1") == 10
    assert await engine.coordinator.get_daily_count("worker-2") == 1
    assert len(push.sent) == 11

    skipped = await engine.audit.list_events(event="SKIPPED")
    assert len(skipped) == 1
    assert skipped[0].worker_id == "worker-1"
    assert skipped[0].notification_id is None


@pytest.mark.asyncio
async def test_critical_limit_exemption_is_opt_in(make_engine) -> None:
    engine = make_engine(notify_daily_limit=1, notify_daily_limit_exempt_critical=True)
    await _create(engine, priority="NORMAL")
    result = await _create(engine, priority="CRITICAL", notification_type="SITE_CHANGE")
    assert result.created and not result.skipped

    strict = make_engine(notify_daily_limit=1)
    result = await _create(strict, priority="CRITICAL", notification_type="SITE_CHANGE")
    assert result.skipped and not result.created


@pytest.mark.asyncio
async def test_critical_ack_timeout_escalates_with_elapsed_wait(make_engine, clock) -> None:
    queue = _RecordingQueue()
    engine = make_engine(enqueue=queue, notify_delivery_mode="queue")
    coordinator = engine.coordinator

    result = await _create(
        engine,
        priority="CRITICAL",
        notification_type="SITE_CHANGE",
        title="Zone B closed",
        message="Crane lift over zone B",
        requires_acknowledgment=True,
    )
    notification_id = result.created[0].notification_id
    assert result.created[0].status == "PENDING"
    assert queue.ids == [notification_id]

    clock.advance(5)
    outcome = await coordinator.deliver(notification_id)
    assert outcome.status == "DELIVERED"

    clock.advance(24)
    assert await coordinator.check_acknowledgment_deadlines() == []

    clock.advance(6)
    outcomes = await coordinator.check_acknowledgment_deadlines()
    assert len(outcomes) == 1
    escalation = outcomes[0]
    assert escalation.reason == "ACKNOWLEDGMENT_TIMEOUT"
    assert escalation.target_id == "supervisor-1"
    assert escalation.escalation_status == "QUEUED"
    assert escalation.elapsed_wait_s == pytest.approx(35.0)
    assert queue.ids[-1] == escalation.escalation_notification_id

    records, path = await coordinator.get_audit_trail(supervisor(), notification_id)
    assert path == ["PENDING", "DELIVERED", "ESCALATED"]
    audit = [record for record in records if record.event == "ESCALATION"][0]
    assert audit.metadata_json["elapsed_wait_s"] == pytest.approx(35.0)
    assert audit.metadata_json["since_delivery_s"] == pytest.approx(30.0)
    assert audit.metadata_json["deadline_s"] == 30

    assert await coordinator.check_acknowledgment_deadlines() == []

    ack = await coordinator.acknowledge(notification_id, "worker-1")
    assert ack.status == "ACKNOWLEDGED"
    assert ack.already_acknowledged is False


@pytest.mark.asyncio
async def test_escalation_children_are_not_escalated_again(make_engine, clock, session_factory) -> None:
    queue = _RecordingQueue()
    engine = make_engine(enqueue=queue, notify_delivery_mode="queue")
    coordinator = engine.coordinator
    result = await _create(engine, priority="CRITICAL", notification_type="SITE_CHANGE", requires_acknowledgment=True)
    await coordinator.deliver(result.created[0].notification_id)
    clock.advance(31)
    (escalation,) = await coordinator.check_acknowledgment_deadlines()

    child = await _load(session_factory, escalation.escalation_notification_id)
    assert child.recipient_id == "supervisor-1"
    assert child.escalation_of == result.created[0].notification_id
    assert child.requires_acknowledgment is True

    await coordinator.deliver(child.id)
    clock.advance(600)
    assert await coordinator.check_acknowledgment_deadlines() == []


@pytest.mark.asyncio
async def test_acknowledge_is_idempotent(notify_engine, clock) -> None:
    coordinator = notify_engine.coordinator
    result = await _create(notify_engine, priority="HIGH", requires_acknowledgment=True)
    notification_id = result.created[0].notification_id

    clock.advance(12)
    first = await coordinator.acknowledge(notification_id, "worker-1")
    clock.advance(5)
    second = await coordinator.acknowledge(notification_id, "worker-1")

    assert first.already_acknowledged is False
    assert second.already_acknowledged is True
    assert second.acknowledged_at == first.acknowledged_at

    acks = [record for record in await notify_engine.audit.trail(notification_id) if record.event == "ACK"]
    assert len(acks) == 1
    assert acks[0].metadata_json["response_time_s"] == pytest.approx(12.0)

    with pytest.raises(AccessDeniedError):
        await coordinator.acknowledge(notification_id, "worker-2")
    with pytest.raises(NotificationNotFoundError):
        await coordinator.acknowledge("missing", "worker-1")


@pytest.mark.asyncio
async def test_acknowledge_rejects_pending_and_failed(make_engine, push) -> None:
    queued = make_engine(enqueue=_RecordingQueue(), notify_delivery_mode="queue")
    pending = await _create(queued)
    with pytest.raises(NotificationStateError):
        await queued.coordinator.acknowledge(pending.created[0].notification_id, "worker-1")

    push.fail_always(_provider_down())
    failed = await _create(make_engine(), priority="LOW")
    assert failed.failed[0].status == "FAILED"
    with pytest.raises(NotificationStateError):
        await queued.coordinator.acknowledge(failed.failed[0].notification_id, "worker-1")


@pytest.mark.asyncio
async def test_delivery_failure_escalates_to_supervisor(notify_engine, push, sleeper) -> None:
    push.fail_next(_provider_down(), _provider_down(), _provider_down())

    result = await _create(notify_engine, priority="HIGH", title="Gate code changed")

    assert result.created == []
    failure = result.failed[0]
    assert failure.status == "ESCALATED"
    assert failure.error_code == "PROVIDER_UNAVAILABLE"
    assert len(sleeper.calls) == 2
    assert push.calls == 4
    assert push.sent[0][0] == "supervisor-1"
    assert push.sent[0][1]["title"] == "Escalation: Gate code changed"

    records, path = await notify_engine.coordinator.get_audit_trail(supervisor(), failure.notification_id)
    assert path == ["PENDING", "FAILED", "ESCALATED"]
    assert [record.event for record in records].count("ATTEMPT") == 3
    escalated, notified = [record for record in records if record.event == "ESCALATION"]
    assert escalated.status == "ESCALATED"
    assert escalated.metadata_json["reason"] == "DELIVERY_FAILED"
    assert "since_delivery_s" not in escalated.metadata_json
    assert notified.status is None
    assert notified.metadata_json["action"] == "TARGET_NOTIFIED"
    assert notified.metadata_json["escalation_status"] == "SUCCESS"


@pytest.mark.asyncio
async def test_escalation_without_target_raises_alert(make_engine, push) -> None:
    engine = make_engine(notify_escalation_target_id="")
    push.fail_always(_provider_down())

    result = await _create(engine, priority="CRITICAL", notification_type="SITE_CHANGE")

    assert result.failed[0].status == "ESCALATED"
    assert [alert.type for alert in result.alerts] == ["ESCALATION_FAILED"]
    assert result.alerts[0].data["escalation_status"] == "NO_TARGET"
    assert (await engine.tracker.get_recent_alerts())[0].type == "ESCALATION_FAILED"


@pytest.mark.asyncio
async def test_normal_priority_failure_stays_failed(notify_engine, push) -> None:
    push.fail_always(_provider_down())

    result = await _create(notify_engine, priority="NORMAL")

    assert result.failed[0].status == "FAILED"
    _records, path = await notify_engine.coordinator.get_audit_trail(supervisor(), result.failed[0].notification_id)
    assert path == ["PENDING", "FAILED"]


@pytest.mark.asyncio
async def test_non_retryable_error_fails_after_one_attempt(notify_engine, push) -> None:
    push.fail_next(TransportError("unknown device token", code="INVALID_TOKEN", retryable=False))

    result = await _create(notify_engine, priority="LOW")

    assert push.calls == 1
    assert result.failed[0].error_code == "INVALID_TOKEN"


@pytest.mark.asyncio
async def test_sms_fallback_delivers_high_priority(make_engine, push, sms, session_factory) -> None:
    engine = make_engine(notify_sms_fallback_enabled=True)
    push.fail_always(_provider_down())

    result = await _create(engine, priority="CRITICAL", notification_type="SITE_CHANGE")

    assert result.created[0].status == "DELIVERED"
    assert [recipient for recipient, _payload in sms.sent] == ["worker-1"]
    row = await _load(session_factory, result.created[0].notification_id)
    assert row.delivered_via == "SMS"
    assert row.delivery_attempts == 4


@pytest.mark.asyncio
async def test_sms_fallback_skips_normal_priority(make_engine, push, sms) -> None:
    engine = make_engine(notify_sms_fallback_enabled=True)
    push.fail_always(_provider_down())

    result = await _create(engine, priority="NORMAL")

    assert result.failed[0].status == "FAILED"
    assert sms.calls == 0


@pytest.mark.asyncio
async def test_expired_notification_fails_without_sending(make_engine, push, clock) -> None:
    engine = make_engine(enqueue=_RecordingQueue(), notify_delivery_mode="queue")
    expires_at = datetime.fromtimestamp(clock.now + 10, timezone.utc)
    result = await _create(engine, priority="CRITICAL", notification_type="SITE_CHANGE", expires_at=expires_at)
    notification_id = result.created[0].notification_id

    clock.advance(11)
    outcome = await engine.coordinator.deliver(notification_id)

    assert outcome.status == "FAILED"
    assert outcome.error_code == "NOTIFICATION_EXPIRED"
    assert push.calls == 0
    _records, path = await engine.coordinator.get_audit_trail(supervisor(), notification_id)
    assert path == ["PENDING", "FAILED"]


@pytest.mark.asyncio
async def test_second_delivery_run_does_not_resend(make_engine, push) -> None:
    engine = make_engine(enqueue=_RecordingQueue(), notify_delivery_mode="queue")
    result = await _create(engine)
    notification_id = result.created[0].notification_id

    first = await engine.coordinator.deliver(notification_id)
    second = await engine.coordinator.deliver(notification_id)

    assert first.status == "DELIVERED"
    assert second.claimed is False
    assert push.calls == 1


@pytest.mark.asyncio
async def test_requeue_unclaimed_hands_off_stale_pending(make_engine, clock) -> None:
    queue = _RecordingQueue()
    engine = make_engine(enqueue=queue, notify_delivery_mode="queue")
    result = await _create(engine)

    assert await engine.coordinator.requeue_unclaimed(older_than_s=30) == 0
    clock.advance(31)
    assert await engine.coordinator.requeue_unclaimed(older_than_s=30) == 1
    assert queue.ids == [result.created[0].notification_id] * 2


@pytest.mark.asyncio
async def test_workers_cannot_create_notifications(notify_engine) -> None:
    with pytest.raises(AccessDeniedError):
        await notify_engine.coordinator.create_notification(
            worker(),
            notification_type="TASK_UPDATE",
            recipients=["worker-2"],
            title="Hi",
            message="Hello",
        )


@pytest.mark.asyncio
async def test_invalid_input_persists_nothing(notify_engine) -> None:
    with pytest.raises(NotificationValidationError):
        await _create(notify_engine, title="<script>alert(1)</script>")
    assert await notify_engine.coordinator.get_daily_count("worker-1") == 0


@pytest.mark.asyncio
async def test_read_scoping_by_role(notify_engine) -> None:
    coordinator = notify_engine.coordinator
    await _create(notify_engine, recipients=["worker-1", "worker-2"])
    await notify_engine.coordinator.create_notification(
        supervisor("supervisor-9", company_id="company-2"),
        notification_type="TASK_UPDATE",
        recipients=["worker-9"],
        title="Other site",
        message="Other company",
    )

    own = await coordinator.get_notifications(worker("worker-1"))
    assert [view.recipient_id for view in own] == ["worker-1"]
    assert own[0].content.title == "Pour moved"

    with pytest.raises(AccessDeniedError):
        await coordinator.get_notifications(worker("worker-1"), "worker-2")

    company = await coordinator.get_notifications(supervisor(), all_recipients=True)
    assert sorted(view.recipient_id for view in company) == ["worker-1", "worker-2"]

    everyone = await coordinator.get_notifications(admin(), all_recipients=True)
    assert len(everyone) == 3

    filtered = await coordinator.get_notifications(
        supervisor(), "worker-2", NotificationFilters(status="FAILED")
    )
    assert filtered == []


@pytest.mark.asyncio
async def test_unacknowledged_and_expired_filters(notify_engine, clock) -> None:
    coordinator = notify_engine.coordinator
    expires_at = datetime.fromtimestamp(clock.now + 60, timezone.utc)
    await _create(notify_engine, title="Short lived", expires_at=expires_at)
    needs_ack = await _create(notify_engine, priority="HIGH", title="Sign off", requires_acknowledgment=True)

    pending_ack = await coordinator.get_notifications(worker(), filters=NotificationFilters(unacknowledged_only=True))
    assert [view.id for view in pending_ack] == [needs_ack.created[0].notification_id]

    clock.advance(61)
    visible = await coordinator.get_notifications(worker())
    assert [view.content.title for view in visible] == ["Sign off"]
    with_expired = await coordinator.get_notifications(worker(), filters=NotificationFilters(include_expired=True))
    assert len(with_expired) == 2


@pytest.mark.asyncio
async def test_tampered_content_hash_is_rejected(notify_engine, session_factory) -> None:
    result = await _create(notify_engine)
    async with session_factory() as session:
        await session.execute(
            update(Notification)
            .where(Notification.id == result.created[0].notification_id)
            .values(content_hash="0" * 64)
        )
        await session.commit()

    with pytest.raises(ContentIntegrityError):
        await notify_engine.coordinator.get_notifications(worker())


async def _claim_as_dead_run(session_factory, coordinator, notification_id: str) -> None:
    # A worker that claimed the row and then died without releasing it.
    async with session_factory() as session:
        assert await notifications_repo.claim_delivery(session, notification_id, now=coordinator.now())
        await session.commit()


@pytest.mark.asyncio
async def test_cancelled_delivery_hands_its_claim_back(make_engine, push, clock, session_factory) -> None:
    queue = _RecordingQueue()
    engine = make_engine(enqueue=queue, notify_delivery_mode="queue")
    coordinator = engine.coordinator
    result = await _create(engine, priority="CRITICAL", notification_type="SITE_CHANGE")
    notification_id = result.created[0].notification_id

    push.fail_next(asyncio.CancelledError())
    with pytest.raises(asyncio.CancelledError):
        await coordinator.deliver(notification_id)

    row = await _load(session_factory, notification_id)
    assert row.status == "PENDING"
    assert row.delivery_started_at is None

    clock.advance(10)
    assert await coordinator.requeue_unclaimed(older_than_s=5) == 1
    assert queue.ids[-1] == notification_id
    outcome = await coordinator.deliver(notification_id)
    assert outcome.status == "DELIVERED"


@pytest.mark.asyncio
async def test_stale_claim_is_requeued_after_the_lease(make_engine, clock, session_factory) -> None:
    queue = _RecordingQueue()
    engine = make_engine(enqueue=queue, notify_delivery_mode="queue", notify_delivery_lease_s=300)
    coordinator = engine.coordinator
    result = await _create(engine, priority="LOW")
    notification_id = result.created[0].notification_id
    await _claim_as_dead_run(session_factory, coordinator, notification_id)

    assert (await coordinator.deliver(notification_id)).claimed is False
    clock.advance(60)
    assert await coordinator.requeue_unclaimed(older_than_s=30) == 0

    clock.advance(241)
    assert await coordinator.requeue_unclaimed(older_than_s=30) == 1
    assert queue.ids[-1] == notification_id
    outcome = await coordinator.deliver(notification_id)
    assert outcome.claimed is True
    assert outcome.status == "DELIVERED"


@pytest.mark.asyncio
async def test_undelivered_critical_past_deadline_fails_then_escalates(make_engine, clock, session_factory) -> None:
    queue = _RecordingQueue()
    engine = make_engine(enqueue=queue, notify_delivery_mode="queue")
    coordinator = engine.coordinator
    result = await _create(engine, priority="CRITICAL", notification_type="SITE_CHANGE")
    notification_id = result.created[0].notification_id
    await _claim_as_dead_run(session_factory, coordinator, notification_id)

    clock.advance(29)
    assert await coordinator.check_acknowledgment_deadlines() == []

    clock.advance(2)
    (escalation,) = await coordinator.check_acknowledgment_deadlines()
    assert escalation.reason == "DELIVERY_FAILED"
    assert escalation.escalation_status == "QUEUED"

    row = await _load(session_factory, notification_id)
    assert row.status == "ESCALATED"
    assert row.last_error == "DELIVERY_DEADLINE_EXCEEDED"
    _records, path = await coordinator.get_audit_trail(supervisor(), notification_id)
    assert path == ["PENDING", "FAILED", "ESCALATED"]
    assert await coordinator.check_acknowledgment_deadlines() == []


@pytest.mark.asyncio
async def test_escalation_is_audited_when_notifying_the_target_breaks(make_engine, clock, session_factory) -> None:
    engine = make_engine(enqueue=_RecordingQueue(), notify_delivery_mode="queue")
    coordinator = engine.coordinator
    result = await _create(engine, priority="CRITICAL", notification_type="SITE_CHANGE", requires_acknowledgment=True)
    notification_id = result.created[0].notification_id
    await coordinator.deliver(notification_id)
    # The escalation message copies the original title, so a tampered row cannot be opened.
    async with session_factory() as session:
        await session.execute(
            update(Notification).where(Notification.id == notification_id).values(content_hash="0" * 64)
        )
        await session.commit()

    clock.advance(31)
    (escalation,) = await coordinator.check_acknowledgment_deadlines()

    assert escalation.escalation_status == "FAILED"
    assert escalation.escalation_notification_id is None
    assert [alert.type for alert in escalation.alerts] == ["ESCALATION_FAILED"]
    trail = [record for record in await engine.audit.trail(notification_id) if record.event == "ESCALATION"]
    assert [record.metadata_json["action"] for record in trail] == ["ESCALATED", "TARGET_NOTIFIED"]
    assert trail[0].status == "ESCALATED"
    assert trail[0].metadata_json["reason"] == "ACKNOWLEDGMENT_TIMEOUT"
    assert trail[1].metadata_json["escalation_status"] == "FAILED"


@pytest.mark.asyncio
async def test_concurrent_creates_never_exceed_the_daily_limit(make_engine, push) -> None:
    engine = make_engine(enqueue=_RecordingQueue(), notify_delivery_mode="queue", notify_daily_limit=3)
    for _ in range(2):
        await _create(engine)

    results = await asyncio.gather(*(_create(engine, title=f"Crew call {index}") for index in range(6)))

    created = [item for result in results for item in result.created]
    skipped = [item for result in results for item in result.skipped]
    assert len(created) == 1
    assert len(skipped) == 5
    assert {item.reason for item in skipped} == {"DAILY_LIMIT_EXCEEDED"}
    assert await engine.coordinator.get_daily_count("worker-1") == 3
