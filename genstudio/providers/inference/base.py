from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Protocol

from genstudio.core.errors import (
    ProviderConfigError,
    ProviderError,
    ProviderRejectedError,
    ProviderUnavailableError,
)


# Provider messages that indicate a content-policy or input rejection.
_REJECTION_MARKERS = ("nsfw", "sensitive", "content policy", "e005")


@dataclass(frozen=True)
class Prediction:
    # Provider-side run (prediction or training) in the provider's own status vocabulary.
    id: str
    status: str
    output: Any = None
    logs: str | None = None
    error: str | None = None
    metrics: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ModelRef:
    owner: str
    name: str
    version: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, identifier: str) -> "ModelRef":
        # Accepts "owner/name" or "owner/name:version".
        base, _, version = identifier.partition(":")
        owner, sep, name = base.partition("/")
        if not sep or not owner or not name:
            raise ProviderConfigError(f"Invalid model identifier: {identifier!r}")
        return cls(owner=owner, name=name, version=version or None)


class ProviderFile:
    """Lazy file handle returned by some model families instead of a URL."""

    def __init__(self, name: str, resolver: Callable[[], Awaitable[str]]) -> None:
        self.name = name
        self._resolver = resolver

    async def url(self) -> str:
        return await self._resolver()

    def __repr__(self) -> str:
        return f"ProviderFile(name={self.name!r})"


class InferenceProvider(Protocol):
    async def run(self, model_identifier: str, input: dict[str, Any]) -> Any:
        ...

    async def create_prediction(
        self,
        model_identifier: str,
        input: dict[str, Any],
        *,
        webhook_url: str | None = None,
    ) -> Prediction:
        ...

    async def get_prediction(self, prediction_id: str) -> Prediction:
        ...

    async def create_model(self, owner: str, name: str, *, description: str | None = None) -> str:
        ...

    async def create_training(
        self,
        *,
        destination: str,
        input: dict[str, Any],
        webhook_url: str | None = None,
    ) -> Prediction:
        ...

    async def get_training(self, training_id: str) -> Prediction:
        ...


def is_rejection_message(message: str | None) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _REJECTION_MARKERS)


def classify_failure(message: str | None, *, status_code: int | None = None) -> ProviderError | ProviderConfigError:
    # Map a provider-reported failure onto the error taxonomy.
    text = message or "Provider request failed"
    if status_code == 422 or is_rejection_message(message):
        return ProviderRejectedError(text)
    if status_code in {401, 403}:
        return ProviderConfigError(text)
    if status_code is not None and (status_code == 429 or status_code >= 500):
        return ProviderUnavailableError(text)
    return ProviderError(text)


def prediction_from_payload(payload: dict[str, Any]) -> Prediction:
    # Shared by API responses and pushed completion webhooks.
    error = payload.get("error")
    return Prediction(
        id=str(payload.get("id") or ""),
        status=str(payload.get("status") or "starting"),
        output=payload.get("output"),
        logs=payload.get("logs"),
        error=str(error) if error else None,
        metrics=payload.get("metrics") or {},
    )
