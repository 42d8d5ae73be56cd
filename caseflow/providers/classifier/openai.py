from __future__ import annotations

import json
from typing import Any

import httpx

from caseflow.core.config import get_settings
from caseflow.core.errors import ClassifierUnavailableError, ProviderConfigError
from caseflow.services.resilience import CallPolicy, CollaboratorGuard


_SYSTEM_PROMPT = (
    "You classify customer service emails for an online store. "
    "Return only the JSON object described by the schema. "
    "confidence is an integer from 0 to 100. Leave fields empty when the email does not state them."
)


class OpenAIClassifier:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._guard = CollaboratorGuard("classifier.openai")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def classify(self, text: str, schema: dict[str, Any]) -> dict[str, Any]:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for the OpenAI classifier")

        payload = {
            "model": self._settings.openai_classifier_model,
            "temperature": 0,
            "messages": [
                {"role": "system", "content": _SYSTEM_PROMPT},
                {"role": "user", "content": text[:8000]},
            ],
            "response_format": {
                "type": "json_schema",
                "json_schema": {"name": "classification", "strict": True, "schema": schema},
            },
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(
                f"{self._settings.openai_base_url.rstrip('/')}/chat/completions",
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
            return response

        response = await self._guard.run(
            _call,
            policy=CallPolicy.retrying(self._settings),
            unavailable=ClassifierUnavailableError,
            message="OpenAI classification request failed",
        )
        try:
            content = response.json()["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (KeyError, IndexError, TypeError, ValueError):
            # Malformed output is validated downstream into an unknown intent.
            return {}
        return parsed if isinstance(parsed, dict) else {}
