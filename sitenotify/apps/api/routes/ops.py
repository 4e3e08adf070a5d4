from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from sitenotify.apps.api.deps import get_notification_engine, require_capability
from sitenotify.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from sitenotify.apps.api.response import SuccessEnvelope, success_response
from sitenotify.services.authz import AccessContext, Capability
from sitenotify.services.engine import NotificationEngine

router = APIRouter(prefix="/ops", tags=["ops"], responses=DEFAULT_ERROR_RESPONSES)


class CircuitBreakerListResponse(BaseModel):
    items: list[dict[str, Any]]
    summary: dict[str, int]


class CircuitBreakerResetResponse(BaseModel):
    service_name: str
    state: str
    reset: bool


class AlertListResponse(BaseModel):
    items: list[dict[str, Any]]
    counts: dict[str, int]


class AlertAcknowledgeResponse(BaseModel):
    alert_id: str
    acknowledged: bool


@router.get("/circuit-breakers", response_model=SuccessEnvelope[CircuitBreakerListResponse])
async def circuit_breakers(
    request: Request,
    actor: AccessContext = Depends(require_capability(Capability.MANAGE_CIRCUIT_BREAKERS)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    statuses = await engine.breakers.get_all_statuses()
    summary = {"total": len(statuses), "closed": 0, "open": 0, "half_open": 0}
    for snapshot in statuses.values():
        key = snapshot.state.lower()
        summary[key] = summary.get(key, 0) + 1
    payload = CircuitBreakerListResponse(
        items=[snapshot.as_dict() for snapshot in statuses.values()],
        summary=summary,
    )
    return success_response(request=request, data=payload)


@router.post(
    "/circuit-breakers/{service_name}/reset",
    response_model=SuccessEnvelope[CircuitBreakerResetResponse],
)
async def reset_circuit_breaker(
    request: Request,
    service_name: str,
    actor: AccessContext = Depends(require_capability(Capability.MANAGE_CIRCUIT_BREAKERS)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    normalized = service_name.strip().upper()
    reset = await engine.breakers.reset(normalized, actor_id=actor.user_id)
    if not reset:
        raise HTTPException(
            status_code=404,
            detail={"code": "UNKNOWN_SERVICE", "message": f"no circuit breaker for {normalized}"},
        )
    snapshot = await engine.breakers.get_status(normalized)
    payload = CircuitBreakerResetResponse(service_name=normalized, state=snapshot.state, reset=True)
    return success_response(request=request, data=payload)


@router.get("/health", response_model=SuccessEnvelope[dict[str, Any]])
async def ops_health(
    request: Request,
    actor: AccessContext = Depends(require_capability(Capability.VIEW_HEALTH)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    summary = await engine.tracker.get_health_summary()
    return success_response(request=request, data=summary)


@router.get("/alerts", response_model=SuccessEnvelope[AlertListResponse])
async def admin_alerts(
    request: Request,
    limit: int = Query(default=10, ge=1, le=100),
    actor: AccessContext = Depends(require_capability(Capability.MANAGE_ADMIN_ALERTS)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    alerts = await engine.tracker.get_recent_alerts(limit)
    payload = AlertListResponse(items=[alert.as_dict() for alert in alerts], counts=await engine.alerts.counts())
    return success_response(request=request, data=payload)


@router.post("/alerts/{alert_id}/acknowledge", response_model=SuccessEnvelope[AlertAcknowledgeResponse])
async def acknowledge_admin_alert(
    request: Request,
    alert_id: str,
    actor: AccessContext = Depends(require_capability(Capability.MANAGE_ADMIN_ALERTS)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    if not await engine.tracker.acknowledge_alert(alert_id):
        raise HTTPException(
            status_code=404,
            detail={"code": "ALERT_NOT_FOUND", "message": f"alert {alert_id} not found"},
        )
    payload = AlertAcknowledgeResponse(alert_id=alert_id, acknowledged=True)
    return success_response(request=request, data=payload)


@router.get("/error-statistics", response_model=SuccessEnvelope[dict[str, Any]])
async def error_statistics(
    request: Request,
    hours: int = Query(default=24, ge=1, le=168),
    actor: AccessContext = Depends(require_capability(Capability.VIEW_ERROR_STATISTICS)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    stats = await engine.tracker.get_error_statistics(hours)
    return success_response(request=request, data=stats)


class EscalationCheckResponse(BaseModel):
    escalated: int
    items: list[dict[str, Any]]


class SupervisorAssignmentRequest(BaseModel):
    supervisor_id: str = Field(min_length=1)
    company_id: str | None = None


class CompanyContactRequest(BaseModel):
    contact_id: str = Field(min_length=1)
    role: str = "supervisor"


@router.get("/escalations/stats", response_model=SuccessEnvelope[dict[str, Any]])
async def escalation_stats(
    request: Request,
    days: int = Query(default=7, ge=1, le=90),
    actor: AccessContext = Depends(require_capability(Capability.VIEW_ESCALATION_STATS)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    stats = await engine.coordinator.get_escalation_stats(actor, days=days)
    return success_response(request=request, data=stats)


@router.post("/escalations/check", response_model=SuccessEnvelope[EscalationCheckResponse])
async def trigger_escalation_check(
    request: Request,
    actor: AccessContext = Depends(require_capability(Capability.TRIGGER_ESCALATION)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    outcomes = await engine.coordinator.trigger_escalation_check(actor)
    payload = EscalationCheckResponse(escalated=len(outcomes), items=[outcome.as_dict() for outcome in outcomes])
    return success_response(request=request, data=payload)


@router.post("/notifications/{notification_id}/escalate", response_model=SuccessEnvelope[dict[str, Any]])
async def force_escalation(
    request: Request,
    notification_id: str,
    actor: AccessContext = Depends(require_capability(Capability.TRIGGER_ESCALATION)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    outcome = await engine.coordinator.force_escalate(actor, notification_id)
    return success_response(request=request, data=outcome.as_dict())


@router.put("/escalation-contacts/workers/{recipient_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def assign_supervisor(
    request: Request,
    recipient_id: str,
    body: SupervisorAssignmentRequest,
    actor: AccessContext = Depends(require_capability(Capability.MANAGE_ESCALATION_CONTACTS)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    assignment = await engine.coordinator.assign_supervisor(
        actor, recipient_id, body.supervisor_id, company_id=body.company_id
    )
    return success_response(request=request, data=assignment)


@router.post("/escalation-contacts/companies/{company_id}", response_model=SuccessEnvelope[dict[str, Any]])
async def add_company_contact(
    request: Request,
    company_id: str,
    body: CompanyContactRequest,
    actor: AccessContext = Depends(require_capability(Capability.MANAGE_ESCALATION_CONTACTS)),
    engine: NotificationEngine = Depends(get_notification_engine),
) -> dict:
    contact = await engine.coordinator.add_company_contact(actor, company_id, body.contact_id, role=body.role)
    return success_response(request=request, data=contact)
