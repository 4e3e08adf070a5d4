from __future__ import annotations

import os

# Point module-level engines at SQLite before any sitenotify import builds them.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./sitenotify-test.db")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402

from sitenotify.apps.api.deps import get_notification_engine  # noqa: E402
from sitenotify.apps.api.main import create_app  # noqa: E402
from sitenotify.core.config import Settings, get_settings  # noqa: E402
from sitenotify.domain.state import SERVICE_PUSH, SERVICE_SMS  # noqa: E402
from sitenotify.persistence.db import create_schema  # noqa: E402
from sitenotify.services.engine import build_engine, reset_engine  # noqa: E402
from sitenotify.services.notifications.transport import FakeTransport, TransportRegistry  # noqa: E402
from sitenotify.services.resilience import LocalResilienceState  # noqa: E402
from sitenotify.services.telemetry import reset_telemetry  # noqa: E402
from sitenotify.tests.utils.clock import FakeClock, RecordingSleep  # noqa: E402

TEST_CONTENT_KEY = "11" * 32
SUPERVISOR_ID = "supervisor-1"


@pytest.fixture(autouse=True)
def isolate_process_state():
    # Telemetry and the engine singleton are process-wide; reset them around every test.
    reset_telemetry()
    reset_engine()
    yield
    reset_engine()
    get_settings.cache_clear()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'sitenotify.db'}",
        notify_content_key=TEST_CONTENT_KEY,
        notify_escalation_target_id=SUPERVISOR_ID,
        notify_delivery_concurrency=1,
        retry_attempt_timeout_ms=2000,
    )


@pytest.fixture
async def session_factory(settings: Settings):
    db_engine = create_async_engine(settings.database_url)
    await create_schema(target=db_engine)
    yield async_sessionmaker(db_engine, expire_on_commit=False)
    await db_engine.dispose()


@pytest.fixture
def push() -> FakeTransport:
    return FakeTransport(SERVICE_PUSH)


@pytest.fixture
def sms() -> FakeTransport:
    return FakeTransport(SERVICE_SMS)


@pytest.fixture
def make_engine(settings, session_factory, push, sms, clock, sleeper):
    # Build engines against the per-test database with scripted transports and a fake clock.
    def _make(enqueue=None, **overrides):
        engine_settings = settings.model_copy(update=overrides) if overrides else settings
        return build_engine(
            engine_settings,
            session_factory=session_factory,
            state=LocalResilienceState(),
            transports=TransportRegistry({SERVICE_PUSH: push, SERVICE_SMS: sms}),
            time_source=clock,
            sleep=sleeper,
            rng=lambda: 0.5,
            enqueue=enqueue,
        )

    return _make


@pytest.fixture
def notify_engine(make_engine):
    return make_engine()


@pytest.fixture
async def api_client(notify_engine):
    # Route handlers resolve the engine through the dependency, so tests inject a fake-backed one.
    app = create_app()
    app.dependency_overrides[get_notification_engine] = lambda: notify_engine
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
