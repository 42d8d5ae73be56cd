from __future__ import annotations

from typing import Any

from caseflow.core.errors import ClassifierUnavailableError


class FakeClassifier:
    def __init__(
        self,
        response: dict[str, Any] | None = None,
        *,
        responses: list[dict[str, Any]] | None = None,
        fail: bool = False,
    ) -> None:
        # Queued responses are returned in order, then the default response repeats.
        self._response = response or {"intent": "unknown", "confidence": 0, "fields": {}}
        self._responses = list(responses or [])
        self.fail = fail
        self.calls: list[str] = []

    async def classify(self, text: str, schema: dict[str, Any]) -> dict[str, Any]:
        _ = schema
        self.calls.append(text)
        if self.fail:
            raise ClassifierUnavailableError("fake classifier is down")
        if self._responses:
            return self._responses.pop(0)
        return dict(self._response)
