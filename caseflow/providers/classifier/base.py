from __future__ import annotations

from typing import Any, Protocol


class ClassifierProvider(Protocol):
    async def classify(self, text: str, schema: dict[str, Any]) -> dict[str, Any]:
        """Return the raw JSON object produced under ``schema``; callers validate it."""
        ...
