from __future__ import annotations

from caseflow.core.config import get_settings
from caseflow.core.errors import ProviderConfigError
from caseflow.providers.email.base import EmailSender
from caseflow.providers.email.fake import FakeEmailSender
from caseflow.providers.email.sendgrid import SendGridEmailSender


def get_email_sender() -> EmailSender:
    settings = get_settings()
    provider = (settings.email_provider or "sendgrid").lower()

    if provider == "fake":
        return FakeEmailSender()
    if provider == "sendgrid":
        return SendGridEmailSender()

    raise ProviderConfigError(f"Unsupported email provider: {provider}")
