from __future__ import annotations

from caseflow.core.config import get_settings
from caseflow.core.errors import ProviderConfigError
from caseflow.providers.classifier.base import ClassifierProvider
from caseflow.providers.classifier.fake import FakeClassifier
from caseflow.providers.classifier.openai import OpenAIClassifier


def get_classifier() -> ClassifierProvider:
    settings = get_settings()
    provider = (settings.classifier_provider or "openai").lower()

    if provider == "fake":
        return FakeClassifier()
    if provider == "openai":
        return OpenAIClassifier()

    raise ProviderConfigError(f"Unsupported classifier provider: {provider}")
