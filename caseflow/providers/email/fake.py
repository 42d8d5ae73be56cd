from __future__ import annotations

from caseflow.core.errors import NotificationDeliveryError
from caseflow.providers.email.base import OutboundEmail


class FakeEmailSender:
    def __init__(self, *, fail_times: int = 0) -> None:
        # Outbox is inspected by tests; fail_times makes the next N sends fail.
        self.outbox: list[OutboundEmail] = []
        self.fail_times = fail_times
        self.attempts = 0

    async def send(self, message: OutboundEmail) -> str:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise NotificationDeliveryError(f"fake transport refused {message.template_tag}")
        self.outbox.append(message)
        return f"fake-{len(self.outbox)}"

    def sent_with_tag(self, template_tag: str) -> list[OutboundEmail]:
        return [message for message in self.outbox if message.template_tag == template_tag]
