from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from sitenotify.apps.api.deps import get_access_context, get_notification_engine, require_capability
from sitenotify.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from sitenotify.apps.api.response import SuccessEnvelope, success_response
from sitenotify.services.audit import serialize_record
from sitenotify.services.authz import AccessContext, Capability
from sitenotify.services.engine import NotificationEngine
from sitenotify.services.notifications.coordinator import NotificationFilters


router = APIRouter(prefix="/notifications", tags=["notifications"], responses=DEFAULT_ERROR_RESPONSES)


class CreateNotificationRequest(BaseModel):
    # Priority may be omitted; the coordinator classifies it from type and content.
    type: str
    recipients: list[str] = Field(min_length=1)
    title: str
    message: str
    priority: str | None = None
    requires_acknowledgment: bool = False
    expires_at: datetime | None = None
    action_data: dict[str, Any] | None = None


class RecipientOutcomeResponse(BaseModel):
    recipient_id: str
    outcome: str
    notification_id: str | None = None
    status: str | None = None
    reason: str | None = None
    error_code: str | None = None


class CreateNotificationResponse(BaseModel):
    created: list[RecipientOutcomeResponse]
    skipped: list[RecipientOutcomeResponse]
    failed: list[RecipientOutcomeResponse]
    alerts: list[dict[str, Any]]


class NotificationListResponse(BaseModel):
    items: list[dict[str, Any]]
    limit: int
    offset: int


class AcknowledgeResponse(BaseModel):
    notification_id: str
    status: str
    acknowledged_at: datetime | None
    already_acknowledged: bool


class AuditTrailResponse(BaseModel):
    notification_id: str
    records: list[dict[str, Any]]
    status_path: list[str]


@router.post("", status_code=201, response_model=SuccessEnvelope[CreateNotificationResponse])
async def create_notification(
    request: Request,
    body: CreateNotificationRequest,
    actor: AccessContext = Depends(require_capability(Capability.CREATE_NOTIFICATION)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    result = await engine.coordinator.create_notification(
        actor,
        notification_type=body.type,
        recipients=body.recipients,
        title=body.title,
        message=body.message,
        priority=body.priority,
        requires_acknowledgment=body.requires_acknowledgment,
        expires_at=body.expires_at,
        action_data=body.action_data,
    )
    return success_response(request=request, data=result.as_dict())


@router.get("", response_model=SuccessEnvelope[NotificationListResponse])
async def list_notifications(
    request: Request,
    recipient_id: str | None = Query(default=None),
    all_recipients: bool = Query(default=False),
    status: str | None = Query(default=None),
    notification_type: str | None = Query(default=None, alias="type"),
    priority: str | None = Query(default=None),
    unacknowledged_only: bool = Query(default=False),
    include_expired: bool = Query(default=False),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    actor: AccessContext = Depends(get_access_context),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    # Capability checks depend on whose notifications are requested, so the coordinator enforces them.
    filters = NotificationFilters(
        status=status.upper() if status else None,
        notification_type=notification_type.upper() if notification_type else None,
        priority=priority.upper() if priority else None,
        unacknowledged_only=unacknowledged_only,
        include_expired=include_expired,
        limit=limit,
        offset=offset,
    )
    views = await engine.coordinator.get_notifications(
        actor, recipient_id, filters, all_recipients=all_recipients
    )
    payload = NotificationListResponse(items=[view.as_dict() for view in views], limit=limit, offset=offset)
    return success_response(request=request, data=payload)


@router.post("/{notification_id}/acknowledge", response_model=SuccessEnvelope[AcknowledgeResponse])
async def acknowledge_notification(
    request: Request,
    notification_id: str,
    actor: AccessContext = Depends(require_capability(Capability.ACKNOWLEDGE_NOTIFICATION)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    result = await engine.coordinator.acknowledge(notification_id, actor.user_id)
    payload = AcknowledgeResponse(
        notification_id=result.notification_id,
        status=result.status,
        acknowledged_at=result.acknowledged_at,
        already_acknowledged=result.already_acknowledged,
    )
    return success_response(request=request, data=payload)


@router.get("/{notification_id}/audit", response_model=SuccessEnvelope[AuditTrailResponse])
async def notification_audit_trail(
    request: Request,
    notification_id: str,
    actor: AccessContext = Depends(require_capability(Capability.VIEW_AUDIT)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    records, status_path = await engine.coordinator.get_audit_trail(actor, notification_id)
    payload = AuditTrailResponse(
        notification_id=notification_id,
        records=[serialize_record(record) for record in records],
        status_path=status_path,
    )
    return success_response(request=request, data=payload)
