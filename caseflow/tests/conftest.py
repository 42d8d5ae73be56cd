from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from caseflow.core.config import get_settings
from caseflow.domain.models import Base
from caseflow.providers.classifier.fake import FakeClassifier
from caseflow.providers.commerce.fake import FakeCommerce
from caseflow.providers.email.fake import FakeEmailSender
from caseflow.services.container import build_engine
from caseflow.services.telemetry import reset_telemetry
from caseflow.tests.utils.factories import Clock


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    # Fake collaborators and no Redis so tests never leave the process.
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite://")
    monkeypatch.setenv("CLASSIFIER_PROVIDER", "fake")
    monkeypatch.setenv("COMMERCE_PROVIDER", "fake")
    monkeypatch.setenv("EMAIL_PROVIDER", "fake")
    monkeypatch.setenv("REDIS_COORDINATION_ENABLED", "false")
    monkeypatch.setenv("QUOTA_TESTING_LIMITS", "false")
    monkeypatch.delenv("ADMIN_TOKEN", raising=False)
    get_settings.cache_clear()
    reset_telemetry()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def session_factory():
    # One in-memory database per test; StaticPool keeps every session on the same connection.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def clock() -> Clock:
    return Clock(datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def email() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def classifier() -> FakeClassifier:
    return FakeClassifier()


@pytest.fixture
def commerce() -> FakeCommerce:
    return FakeCommerce()


@pytest.fixture
def engine(session_factory, email, classifier, commerce, clock):
    return build_engine(
        session_factory=session_factory,
        email=email,
        classifier=classifier,
        commerce=commerce,
        settings=get_settings(),
        time_provider=clock,
    )
