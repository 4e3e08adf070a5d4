from __future__ import annotations

from datetime import datetime
import html
import re
from typing import Any

from sitenotify.core.config import Settings, get_settings
from sitenotify.core.errors import NotificationValidationError
from sitenotify.domain.state import (
    NOTIFICATION_TYPES,
    PRIORITIES,
    PRIORITY_CRITICAL,
    PRIORITY_HIGH,
    PRIORITY_NORMAL,
    TYPE_APPROVAL_STATUS,
    TYPE_ATTENDANCE_ALERT,
    TYPE_SITE_CHANGE,
    TYPE_TASK_UPDATE,
)


_SUSPICIOUS_PATTERNS = (
    re.compile(r"<\s*/?\s*[a-z!]", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\bon\w+\s*=", re.IGNORECASE),
)
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_HIGH_PRIORITY_ATTENDANCE_ALERTS = frozenset({"GEOFENCE_VIOLATION", "MISSED_LOGIN", "MISSED_LOGOUT"})
_URGENT_TASK_WORDS = ("overtime", "urgent", "emergency")


def sanitize_text(value: str) -> str:
    # Strip control characters and escape markup before the text is sealed.
    cleaned = _CONTROL_CHARS.sub("", value).strip()
    return html.escape(cleaned, quote=False)


def _check_text(field_name: str, value: Any, max_length: int) -> str:
    if not isinstance(value, str) or not value.strip():
        raise NotificationValidationError(f"{field_name} is required", field=field_name)
    # Limits apply to the stored form, after escaping.
    if len(sanitize_text(value)) > max_length:
        raise NotificationValidationError(
            f"{field_name} must be at most {max_length} characters", field=field_name
        )
    for pattern in _SUSPICIOUS_PATTERNS:
        if pattern.search(value):
            raise NotificationValidationError(f"{field_name} contains disallowed content", field=field_name)
    return value


def classify_priority(
    notification_type: str,
    message: str,
    action_data: dict[str, Any] | None = None,
) -> str:
    # Derive a priority when the sender does not pick one.
    action_data = action_data or {}
    if notification_type == TYPE_SITE_CHANGE:
        return PRIORITY_CRITICAL
    if notification_type == TYPE_ATTENDANCE_ALERT:
        if str(action_data.get("alert_type", "")).upper() in _HIGH_PRIORITY_ATTENDANCE_ALERTS:
            return PRIORITY_HIGH
    if notification_type == TYPE_TASK_UPDATE:
        lowered = message.lower()
        if any(word in lowered for word in _URGENT_TASK_WORDS):
            return PRIORITY_HIGH
    if notification_type == TYPE_APPROVAL_STATUS:
        if str(action_data.get("status", "")).upper() == "REJECTED":
            return PRIORITY_HIGH
    return PRIORITY_NORMAL


def validate_notification_input(
    *,
    notification_type: str,
    priority: str | None,
    recipients: list[str],
    title: str,
    message: str,
    expires_at: datetime | None,
    now: datetime,
    settings: Settings | None = None,
) -> tuple[str, str | None, list[str]]:
    # Returns normalized (type, priority, recipients); priority stays None when it must be classified.
    settings = settings or get_settings()
    normalized_type = (notification_type or "").strip().upper()
    if normalized_type not in NOTIFICATION_TYPES:
        raise NotificationValidationError(f"unsupported notification type: {notification_type}", field="type")
    normalized_priority = priority.strip().upper() if priority else None
    if normalized_priority is not None and normalized_priority not in PRIORITIES:
        raise NotificationValidationError(f"unsupported priority: {priority}", field="priority")
    _check_text("title", title, settings.notify_title_max_length)
    _check_text("message", message, settings.notify_message_max_length)
    unique_recipients: list[str] = []
    for recipient in recipients:
        candidate = (recipient or "").strip()
        if candidate and candidate not in unique_recipients:
            unique_recipients.append(candidate)
    if not unique_recipients:
        raise NotificationValidationError("at least one recipient is required", field="recipients")
    if expires_at is not None and expires_at <= now:
        raise NotificationValidationError("expires_at must be in the future", field="expires_at")
    return normalized_type, normalized_priority, unique_recipients
