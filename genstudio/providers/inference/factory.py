from __future__ import annotations

from genstudio.core.config import get_settings
from genstudio.core.errors import ProviderConfigError
from genstudio.providers.inference.base import InferenceProvider
from genstudio.providers.inference.fake import FakeInferenceProvider
from genstudio.providers.inference.replicate import ReplicateInferenceProvider


_instances: dict[str, InferenceProvider] = {}


def get_inference_provider() -> InferenceProvider:
    settings = get_settings()
    provider = (settings.inference_provider or "replicate").lower()
    if provider in _instances:
        return _instances[provider]

    if provider == "fake":
        instance: InferenceProvider = FakeInferenceProvider()
    elif provider == "replicate":
        instance = ReplicateInferenceProvider()
    else:
        raise ProviderConfigError(f"Unsupported inference provider: {provider}")
    # Keep one instance per process so HTTP clients and breakers are shared.
    _instances[provider] = instance
    return instance


def reset_inference_provider() -> None:
    _instances.clear()
