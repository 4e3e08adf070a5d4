from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging
from typing import Any, Protocol
from uuid import uuid4

from sitenotify.core.config import Settings, get_settings
from sitenotify.core.errors import TransportError
from sitenotify.domain.state import SERVICE_PUSH, SERVICE_SMS


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DeliveryReceipt:
    service_name: str
    provider_message_id: str


class TransportAdapter(Protocol):
    service_name: str

    async def send(self, recipient_id: str, payload: dict[str, Any]) -> DeliveryReceipt: ...


class NoopTransport:
    # Accept every send without leaving the process; used for local runs.
    def __init__(self, service_name: str) -> None:
        self.service_name = service_name

    async def send(self, recipient_id: str, payload: dict[str, Any]) -> DeliveryReceipt:
        logger.info(
            "noop_transport_send service=%s recipient_id=%s notification_id=%s",
            self.service_name,
            recipient_id,
            payload.get("notification_id"),
        )
        return DeliveryReceipt(service_name=self.service_name, provider_message_id=f"noop-{uuid4().hex}")


@dataclass
class FakeTransport:
    # Scripted adapter: queued errors are raised in order, then sends succeed.
    service_name: str
    outcomes: deque[BaseException | None] = field(default_factory=deque)
    sent: list[tuple[str, dict[str, Any]]] = field(default_factory=list)
    calls: int = 0

    def fail_next(self, *errors: BaseException) -> None:
        self.outcomes.extend(errors)

    def fail_always(self, error: TransportError, times: int = 1000) -> None:
        self.outcomes.extend([error] * times)

    async def send(self, recipient_id: str, payload: dict[str, Any]) -> DeliveryReceipt:
        self.calls += 1
        if self.outcomes:
            outcome = self.outcomes.popleft()
            if outcome is not None:
                raise outcome
        self.sent.append((recipient_id, payload))
        return DeliveryReceipt(service_name=self.service_name, provider_message_id=f"fake-{self.calls}")


class TransportRegistry:
    def __init__(self, adapters: dict[str, TransportAdapter] | None = None) -> None:
        self._adapters: dict[str, TransportAdapter] = dict(adapters or {})

    def register(self, adapter: TransportAdapter) -> None:
        self._adapters[adapter.service_name] = adapter

    def get(self, service_name: str) -> TransportAdapter:
        adapter = self._adapters.get(service_name)
        if adapter is None:
            raise TransportError(
                f"no transport adapter registered for {service_name}",
                code="TRANSPORT_NOT_CONFIGURED",
                retryable=False,
            )
        return adapter

    def has(self, service_name: str) -> bool:
        return service_name in self._adapters


def _build_adapter(kind: str, service_name: str) -> TransportAdapter:
    normalized = (kind or "noop").strip().lower()
    if normalized == "noop":
        return NoopTransport(service_name)
    if normalized == "fake":
        return FakeTransport(service_name)
    raise ValueError(f"unsupported transport adapter: {kind}")


def build_transport_registry(settings: Settings | None = None) -> TransportRegistry:
    # Resolve adapters per channel from settings.
    settings = settings or get_settings()
    registry = TransportRegistry()
    registry.register(_build_adapter(settings.notify_push_adapter, SERVICE_PUSH))
    registry.register(_build_adapter(settings.notify_sms_adapter, SERVICE_SMS))
    return registry
