from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Any, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from caseflow.core.config import Settings, get_settings
from caseflow.providers.classifier.base import ClassifierProvider
from caseflow.providers.classifier.factory import get_classifier
from caseflow.providers.commerce.factory import get_commerce_client
from caseflow.providers.email.base import EmailSender
from caseflow.providers.email.factory import get_email_sender
from caseflow.services.actions import ActionExecutor
from caseflow.services.conversations import ConversationManager
from caseflow.services.extraction import Extractor
from caseflow.services.notifications import NotificationDispatcher
from caseflow.services.quota import QuotaService
from caseflow.services.safety import BusinessSafetyGuard


@dataclass(frozen=True)
class Engine:
    """Wired collaborators shared by the API, the worker and the scripts."""

    session_factory: async_sessionmaker[AsyncSession]
    email: EmailSender
    classifier: ClassifierProvider
    commerce: Any
    dispatcher: NotificationDispatcher
    quota: QuotaService
    extractor: Extractor
    executor: ActionExecutor
    safety: BusinessSafetyGuard
    manager: ConversationManager


def build_engine(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    email: EmailSender | None = None,
    classifier: ClassifierProvider | None = None,
    commerce: Any | None = None,
    settings: Settings | None = None,
    time_provider: Callable[[], datetime] | None = None,
) -> Engine:
    # Anything not passed in comes from the configured provider factories.
    settings = settings or get_settings()
    if session_factory is None:
        from caseflow.persistence.db import get_sessionmaker

        session_factory = get_sessionmaker()
    email = email or get_email_sender()
    classifier = classifier or get_classifier()
    commerce = commerce or get_commerce_client()

    dispatcher = NotificationDispatcher(
        session_factory=session_factory,
        sender=email,
        time_provider=time_provider,
        claim_ttl_s=settings.notify_claim_ttl_s,
    )
    quota = QuotaService(
        session_factory=session_factory,
        dispatcher=dispatcher,
        time_provider=time_provider,
        settings=settings,
    )
    extractor = Extractor(classifier=classifier, quota=quota)
    executor = ActionExecutor(
        refunds=commerce,
        subscriptions=commerce,
        session_factory=session_factory,
        timeout_ms=settings.action_timeout_ms,
        time_provider=time_provider,
    )
    safety = BusinessSafetyGuard(session_factory=session_factory)
    manager = ConversationManager(
        session_factory=session_factory,
        extractor=extractor,
        orders=commerce,
        executor=executor,
        quota=quota,
        dispatcher=dispatcher,
        safety=safety,
        settings=settings,
        time_provider=time_provider,
    )
    return Engine(
        session_factory=session_factory,
        email=email,
        classifier=classifier,
        commerce=commerce,
        dispatcher=dispatcher,
        quota=quota,
        extractor=extractor,
        executor=executor,
        safety=safety,
        manager=manager,
    )


@lru_cache
def get_engine() -> Engine:
    return build_engine()
