from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class OutboundEmail:
    tenant_id: str
    to: str
    subject: str
    body: str
    template_tag: str


class EmailSender(Protocol):
    async def send(self, message: OutboundEmail) -> str:
        """Deliver one message and return the transport's message id.

        Raises NotificationDeliveryError when the transport rejects or fails.
        """
        ...
