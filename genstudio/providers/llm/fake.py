from __future__ import annotations


class FakeLLMProvider:
    def __init__(self, response: str = "A cinematic portrait, soft rim light, 85mm, highly detailed") -> None:
        # Deterministic response keeps tests stable without external calls.
        self.response = response
        self.instructions: list[str] = []

    async def complete(self, instruction: str) -> str:
        self.instructions.append(instruction)
        return self.response
