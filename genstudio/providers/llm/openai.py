from __future__ import annotations

import httpx

from genstudio.core.config import get_settings
from genstudio.core.errors import (
    IntegrationUnavailableError,
    ProviderConfigError,
    ProviderError,
    ProviderUnavailableError,
)
from genstudio.services.resilience import guarded_call


_INTEGRATION = "llm.openai"
_CHAT_COMPLETIONS_URL = "https://api.openai.com/v1/chat/completions"


class _UpstreamBusy(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"OpenAI error: {status_code}")
        self.status_code = status_code


def _retryable(exc: Exception) -> bool:
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, _UpstreamBusy))


class OpenAIPromptProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def complete(self, instruction: str) -> str:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise ProviderConfigError("OPENAI_API_KEY is required for prompt assist")
        payload = {
            "model": self._settings.openai_prompt_model,
            "messages": [{"role": "user", "content": instruction}],
            "temperature": 0.5,
            "max_tokens": 200,
        }
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.post(
                _CHAT_COMPLETIONS_URL, json=payload, headers={"Authorization": f"Bearer {api_key}"}
            )
            if response.status_code == 429 or response.status_code >= 500:
                raise _UpstreamBusy(response.status_code)
            return response

        try:
            response = await guarded_call(
                _INTEGRATION, _call, failures=(httpx.HTTPError, _UpstreamBusy), retryable=_retryable
            )
        except IntegrationUnavailableError as exc:
            raise ProviderUnavailableError("Prompt assist is temporarily unavailable") from exc

        if response.status_code in {401, 403}:
            raise ProviderConfigError("OpenAI auth error: check OPENAI_API_KEY.")
        if response.status_code >= 400:
            raise ProviderError(f"OpenAI error: {response.status_code}")
        choices = response.json().get("choices") or []
        if not choices:
            return ""
        return ((choices[0].get("message") or {}).get("content") or "").strip()
