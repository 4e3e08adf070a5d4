from __future__ import annotations


TYPE_TASK_UPDATE = "TASK_UPDATE"
TYPE_SITE_CHANGE = "SITE_CHANGE"
TYPE_ATTENDANCE_ALERT = "ATTENDANCE_ALERT"
TYPE_APPROVAL_STATUS = "APPROVAL_STATUS"
NOTIFICATION_TYPES = frozenset(
    {TYPE_TASK_UPDATE, TYPE_SITE_CHANGE, TYPE_ATTENDANCE_ALERT, TYPE_APPROVAL_STATUS}
)

PRIORITY_CRITICAL = "CRITICAL"
PRIORITY_HIGH = "HIGH"
PRIORITY_NORMAL = "NORMAL"
PRIORITY_LOW = "LOW"
PRIORITIES = (PRIORITY_CRITICAL, PRIORITY_HIGH, PRIORITY_NORMAL, PRIORITY_LOW)

STATUS_PENDING = "PENDING"
STATUS_DELIVERED = "DELIVERED"
STATUS_FAILED = "FAILED"
STATUS_ESCALATED = "ESCALATED"
STATUS_ACKNOWLEDGED = "ACKNOWLEDGED"

# Forward-only lifecycle; anything not listed here is an illegal transition.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_DELIVERED, STATUS_FAILED}),
    STATUS_DELIVERED: frozenset({STATUS_ESCALATED, STATUS_ACKNOWLEDGED}),
    STATUS_FAILED: frozenset({STATUS_ESCALATED}),
    STATUS_ESCALATED: frozenset({STATUS_ACKNOWLEDGED}),
    STATUS_ACKNOWLEDGED: frozenset(),
}
NOTIFICATION_STATUSES = frozenset(ALLOWED_TRANSITIONS)


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def source_statuses(target: str) -> frozenset[str]:
    # Statuses from which the target status may be reached in one step.
    return frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if target in targets)


EVENT_CREATED = "CREATED"
EVENT_ATTEMPT = "ATTEMPT"
EVENT_DELIVERED = "DELIVERED"
EVENT_ERROR = "ERROR"
EVENT_CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
EVENT_RETRY = "RETRY"
EVENT_ESCALATION = "ESCALATION"
EVENT_ADMIN_ALERT = "ADMIN_ALERT"
EVENT_ADMIN_ALERT_ACK = "ADMIN_ALERT_ACK"
EVENT_ACK = "ACK"
EVENT_SKIPPED = "SKIPPED"
AUDIT_EVENTS = frozenset(
    {
        EVENT_CREATED,
        EVENT_ATTEMPT,
        EVENT_DELIVERED,
        EVENT_ERROR,
        EVENT_CIRCUIT_BREAKER,
        EVENT_RETRY,
        EVENT_ESCALATION,
        EVENT_ADMIN_ALERT,
        EVENT_ADMIN_ALERT_ACK,
        EVENT_ACK,
        EVENT_SKIPPED,
    }
)

CB_CLOSED = "CLOSED"
CB_OPEN = "OPEN"
CB_HALF_OPEN = "HALF_OPEN"

SEVERITY_LOW = "LOW"
SEVERITY_MEDIUM = "MEDIUM"
SEVERITY_HIGH = "HIGH"
SEVERITY_CRITICAL = "CRITICAL"
SEVERITIES = (SEVERITY_LOW, SEVERITY_MEDIUM, SEVERITY_HIGH, SEVERITY_CRITICAL)

SERVICE_PUSH = "PUSH"
SERVICE_SMS = "SMS"
SERVICE_STORAGE = "STORAGE"
SERVICE_EXTERNAL_API = "EXTERNAL_API"

OUTCOME_CREATED = "created"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
SKIP_DAILY_LIMIT = "DAILY_LIMIT_EXCEEDED"
