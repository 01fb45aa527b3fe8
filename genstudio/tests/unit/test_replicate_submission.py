from __future__ import annotations

import httpx
import pytest

from genstudio.core.config import get_settings
from genstudio.core.errors import ProviderUnavailableError
from genstudio.providers.inference.replicate import ReplicateInferenceProvider


def _provider(handler, monkeypatch) -> ReplicateInferenceProvider:
    monkeypatch.setenv("REPLICATE_API_TOKEN", "r8_test")
    monkeypatch.setenv("EXT_RETRY_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("EXT_RETRY_BACKOFF_MS", "1")
    get_settings.cache_clear()
    client = httpx.AsyncClient(
        base_url="https://replicate.test/v1", transport=httpx.MockTransport(handler)
    )
    return ReplicateInferenceProvider(client=client)


@pytest.mark.asyncio
async def test_prediction_submit_is_not_resent_after_read_timeout(monkeypatch) -> None:
    posts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request.url.path)
        if len(posts) == 1:
            raise httpx.ReadTimeout("timed out after send", request=request)
        return httpx.Response(201, json={"id": f"pred-{len(posts)}", "status": "starting"})

    provider = _provider(handler, monkeypatch)
    with pytest.raises(ProviderUnavailableError):
        await provider.create_prediction("owner/model:abc123", {"prompt": "a fox"})
    assert posts == ["/v1/predictions"]


@pytest.mark.asyncio
async def test_prediction_submit_is_resent_when_connection_never_opened(monkeypatch) -> None:
    posts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request.url.path)
        if len(posts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(201, json={"id": "pred-2", "status": "starting"})

    provider = _provider(handler, monkeypatch)
    prediction = await provider.create_prediction("owner/model:abc123", {"prompt": "a fox"})
    assert prediction.id == "pred-2"
    assert len(posts) == 2


@pytest.mark.asyncio
async def test_training_submit_is_not_resent_after_server_error(monkeypatch) -> None:
    posts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posts.append(request.url.path)
        return httpx.Response(502, text="bad gateway")

    provider = _provider(handler, monkeypatch)
    with pytest.raises(ProviderUnavailableError):
        await provider.create_training(destination="genstudio-test/ws", input={"trigger_word": "TOK"})
    assert len(posts) == 1


@pytest.mark.asyncio
async def test_status_poll_retries_read_timeouts(monkeypatch) -> None:
    gets: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        gets.append(request.url.path)
        if len(gets) == 1:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(200, json={"id": "pred-1", "status": "processing"})

    provider = _provider(handler, monkeypatch)
    prediction = await provider.get_prediction("pred-1")
    assert prediction.status == "processing"
    assert gets == ["/v1/predictions/pred-1", "/v1/predictions/pred-1"]
