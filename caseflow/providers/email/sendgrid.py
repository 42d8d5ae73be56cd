from __future__ import annotations

import httpx

from caseflow.core.config import get_settings
from caseflow.core.errors import NotificationDeliveryError, ProviderConfigError
from caseflow.providers.email.base import OutboundEmail
from caseflow.services.resilience import CallPolicy, CollaboratorGuard, is_transient


_SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"


def _retryable(exc: Exception) -> bool:
    # Retry only when the request provably never reached the provider or was throttled.
    if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 429
    return False


class SendGridEmailSender:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client
        self._guard = CollaboratorGuard("email.sendgrid")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(timeout=timeout_s)
        return self._client

    async def send(self, message: OutboundEmail) -> str:
        api_key = self._settings.sendgrid_api_key
        if not api_key:
            raise ProviderConfigError("SENDGRID_API_KEY is required for SendGrid delivery")

        payload = {
            "personalizations": [{"to": [{"email": message.to}]}],
            "from": {
                "email": self._settings.email_from_address,
                "name": self._settings.email_from_name,
            },
            "subject": message.subject,
            "content": [{"type": "text/plain", "value": message.body}],
            "categories": [message.template_tag],
            "custom_args": {"tenant_id": message.tenant_id},
        }
        headers = {"Authorization": f"Bearer {api_key}"}
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(_SENDGRID_URL, json=payload, headers=headers)
            response.raise_for_status()
            return response

        try:
            response = await self._guard.run(
                _call,
                policy=CallPolicy.retrying(self._settings),
                should_retry=_retryable,
                counts_as_failure=is_transient,
            )
        except (httpx.HTTPError, TimeoutError) as exc:
            status = exc.response.status_code if isinstance(exc, httpx.HTTPStatusError) else None
            raise NotificationDeliveryError(f"SendGrid delivery failed (status={status})") from exc
        return response.headers.get("X-Message-Id", "")
