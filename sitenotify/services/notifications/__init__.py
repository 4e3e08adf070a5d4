from sitenotify.services.notifications.content import (
    ContentCipher,
    NotificationContent,
    SealedText,
    content_hash,
)
from sitenotify.services.notifications.coordinator import (
    AcknowledgeResult,
    CreateNotificationResult,
    DeliveryCoordinator,
    DeliveryOutcome,
    EscalationOutcome,
    NotificationFilters,
    NotificationView,
    RecipientOutcome,
)
from sitenotify.services.notifications.escalation import (
    DeadlinePolicy,
    DirectoryEscalationTarget,
    EscalationTargetResolver,
    StaticEscalationTarget,
)
from sitenotify.services.notifications.transport import (
    DeliveryReceipt,
    FakeTransport,
    NoopTransport,
    TransportAdapter,
    TransportRegistry,
    build_transport_registry,
)
from sitenotify.services.notifications.validation import (
    classify_priority,
    sanitize_text,
    validate_notification_input,
)

__all__ = [
    "ContentCipher",
    "NotificationContent",
    "SealedText",
    "content_hash",
    "AcknowledgeResult",
    "CreateNotificationResult",
    "DeliveryCoordinator",
    "DeliveryOutcome",
    "EscalationOutcome",
    "NotificationFilters",
    "NotificationView",
    "RecipientOutcome",
    "DeadlinePolicy",
    "DirectoryEscalationTarget",
    "EscalationTargetResolver",
    "StaticEscalationTarget",
    "DeliveryReceipt",
    "FakeTransport",
    "NoopTransport",
    "TransportAdapter",
    "TransportRegistry",
    "build_transport_registry",
    "classify_priority",
    "sanitize_text",
    "validate_notification_input",
]
