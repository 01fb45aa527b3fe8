from __future__ import annotations

from genstudio.core.config import get_settings
from genstudio.core.errors import ProviderConfigError
from genstudio.providers.llm.base import PromptLLMProvider
from genstudio.providers.llm.fake import FakeLLMProvider
from genstudio.providers.llm.openai import OpenAIPromptProvider


_instances: dict[str, PromptLLMProvider] = {}


def get_prompt_llm() -> PromptLLMProvider:
    settings = get_settings()
    provider = (settings.llm_provider or "openai").lower()
    if provider in _instances:
        return _instances[provider]

    if provider == "fake":
        instance: PromptLLMProvider = FakeLLMProvider()
    elif provider == "openai":
        instance = OpenAIPromptProvider()
    else:
        raise ProviderConfigError(f"Unsupported LLM provider: {provider}")
    _instances[provider] = instance
    return instance


def reset_prompt_llm() -> None:
    _instances.clear()
