from __future__ import annotations

from typing import Protocol


class PromptLLMProvider(Protocol):
    async def complete(self, instruction: str) -> str:
        ...
