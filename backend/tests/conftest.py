"""
Test configuration and fixtures for StellarRec Submission Monitoring.

Provides a file-backed SQLite store (aiosqlite), the monitoring services
wired against it, scripted channel adapters and an HTTP client for the
operator API.
"""

import asyncio
import random
from typing import Any, AsyncGenerator, Dict, List, Optional, Union
from uuid import uuid4

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel

from stellarrec.config.settings import Settings, get_settings
from stellarrec.domain.retry_policy import RetryPolicy
from stellarrec.domain.submission import DeliveryChannel, DeliveryResult, SubmissionStatus
from stellarrec.infrastructure.db import models  # noqa: F401  (registers tables)
from stellarrec.infrastructure.db.database import create_session_factory
from stellarrec.infrastructure.db.models import ErrorLogEntry, Submission, utc_now
from stellarrec.infrastructure.services.analytics_service import SubmissionAnalyticsService
from stellarrec.infrastructure.services.channel_dispatcher import (
    ChannelDispatcher,
    ManualChannelAdapter,
)
from stellarrec.infrastructure.services.delivery_queue import DeliveryQueue
from stellarrec.infrastructure.services.error_logging_service import ErrorLoggingService
from stellarrec.infrastructure.services.monitoring_orchestrator import (
    build_monitoring_orchestrator,
)
from stellarrec.infrastructure.services.notification_executors import BroadcastHub
from stellarrec.infrastructure.services.notification_rule_engine import NotificationRuleEngine
from stellarrec.infrastructure.services.submission_processor import SubmissionProcessor


ADMIN_KEY = "test-admin-key"


# =============================================================================
# Test Doubles
# =============================================================================

class ScriptedAdapter:
    """Channel adapter that replays queued results, then a default."""

    def __init__(
        self,
        default: Optional[Union[DeliveryResult, Exception]] = None,
        delay: float = 0.0,
    ):
        self.results: List[Union[DeliveryResult, Exception]] = []
        self.default = default or DeliveryResult.success(external_reference="uni-ref")
        self.calls: List[Any] = []
        self.delay = delay

    async def send(self, submission, application_context: Dict[str, Any]) -> DeliveryResult:
        self.calls.append(submission.id)
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        return result


class RecordingEmailSender:
    def __init__(self):
        self.sent: List[Dict[str, Any]] = []

    async def send(self, recipients, template, data) -> None:
        self.sent.append({"recipients": recipients, "template": template, "data": data})


class RecordingWebhookCaller:
    def __init__(self, error: Optional[Exception] = None):
        self.calls: List[Dict[str, Any]] = []
        self.error = error

    async def call(self, method, url, headers, body) -> None:
        self.calls.append({"method": method, "url": url, "body": body})
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        pass


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with the monitoring tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'stellarrec.db'}",
        poolclass=NullPool,
    )

    # Let SQLAlchemy emit BEGIN itself so SAVEPOINTs behave on SQLite
    @event.listens_for(engine.sync_engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def make_submission(session_factory):
    """Insert a submission row directly, bypassing the queue."""

    async def _make(**overrides: Any) -> Submission:
        now = utc_now()
        values: Dict[str, Any] = {
            "application_id": uuid4(),
            "university_id": uuid4(),
            "channel": DeliveryChannel.API.value,
            "status": SubmissionStatus.PENDING.value,
            "priority": 5,
            "next_attempt_at": now,
        }
        values.update(overrides)
        submission = Submission(**values)
        async with session_factory() as session, session.begin():
            session.add(submission)
        return submission

    return _make


@pytest.fixture
def fetch_submission(session_factory):
    async def _fetch(submission_id) -> Optional[Submission]:
        async with session_factory() as session:
            return await session.get(Submission, submission_id)

    return _fetch


@pytest.fixture
def fetch_error_logs(session_factory):
    async def _fetch() -> List[ErrorLogEntry]:
        from sqlalchemy import select

        async with session_factory() as session:
            result = await session.execute(
                select(ErrorLogEntry).order_by(ErrorLogEntry.occurred_at.asc())
            )
            return list(result.scalars().all())

    return _fetch


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        _env_file=None,
        environment="testing",
        admin_api_key=ADMIN_KEY,
        queue_interval_seconds=3600,
        rule_evaluation_interval_seconds=3600,
        maintenance_interval_seconds=3600,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Zero base delay so retried submissions are due again immediately."""
    return RetryPolicy(base_delay_seconds=0, rng=random.Random(7))


@pytest.fixture
def api_adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def error_log(session_factory) -> ErrorLoggingService:
    return ErrorLoggingService(session_factory)


@pytest.fixture
def queue(session_factory) -> DeliveryQueue:
    return DeliveryQueue(session_factory)


@pytest.fixture
def processor(session_factory, queue, api_adapter, retry_policy) -> SubmissionProcessor:
    dispatcher = ChannelDispatcher(
        {
            DeliveryChannel.API: api_adapter,
            DeliveryChannel.MANUAL: ManualChannelAdapter(),
        },
        timeout_seconds=5,
    )
    return SubmissionProcessor(session_factory, queue, dispatcher, retry_policy, batch_size=50)


@pytest.fixture
def analytics(session_factory) -> SubmissionAnalyticsService:
    return SubmissionAnalyticsService(session_factory)


@pytest.fixture
def hub() -> BroadcastHub:
    return BroadcastHub()


@pytest.fixture
def email_sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def webhook_caller() -> RecordingWebhookCaller:
    return RecordingWebhookCaller()


@pytest.fixture
def rule_engine(
    session_factory, analytics, error_log, email_sender, webhook_caller, hub
) -> NotificationRuleEngine:
    return NotificationRuleEngine(
        session_factory,
        analytics,
        error_log,
        email_sender=email_sender,
        webhook_caller=webhook_caller,
        push_publisher=hub,
    )


@pytest.fixture
def orchestrator(test_settings, session_factory, api_adapter, hub, retry_policy):
    return build_monitoring_orchestrator(
        test_settings,
        session_factory,
        adapters={
            DeliveryChannel.API: api_adapter,
            DeliveryChannel.MANUAL: ManualChannelAdapter(),
        },
        hub=hub,
        retry_policy=retry_policy,
    )


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app():
    """Get the FastAPI application."""
    from stellarrec.main import app
    return app


@pytest.fixture
async def client(app, orchestrator, session_factory, monkeypatch) -> AsyncGenerator[AsyncClient, None]:
    """Operator API client authenticated with the admin key."""
    from stellarrec.api.dependencies import get_monitoring_orchestrator
    from stellarrec.infrastructure.db.database import get_session

    async def override_get_session():
        async with session_factory() as session:
            yield session
            await session.commit()

    monkeypatch.setattr(get_settings(), "admin_api_key", ADMIN_KEY)
    app.dependency_overrides[get_monitoring_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_session] = override_get_session

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Admin-Key": ADMIN_KEY},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
