from __future__ import annotations

from datetime import timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from genstudio.apps.api.deps import get_inference, get_store
from genstudio.apps.api.main import create_app
from genstudio.core.config import get_settings
from genstudio.providers.inference.fake import FakeInferenceProvider
from genstudio.providers.storage.memory import MemoryObjectStore
from genstudio.tests.utils.factories import (
    bearer_headers,
    payment_webhook,
    principal_id,
    provider_webhook,
    seed_balance,
    seed_trained_workspace,
)


def _client(provider: FakeInferenceProvider | None = None, store: MemoryObjectStore | None = None) -> AsyncClient:
    app = create_app()
    if provider is not None:
        app.dependency_overrides[get_inference] = lambda: provider
    if store is not None:
        app.dependency_overrides[get_store] = lambda: store
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_public_and_echoes_request_id() -> None:
    async with _client() as client:
        response = await client.get("/v1/health", headers={"X-Request-Id": "req-health-1"})
        details = await client.get("/v1/health/details")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok"}
    assert response.json()["meta"]["request_id"] == "req-health-1"
    assert response.headers["X-Request-Id"] == "req-health-1"
    assert details.status_code == 200
    assert "counters" in details.json()["data"]


@pytest.mark.asyncio
async def test_credits_inquiry_grants_welcome_once() -> None:
    principal = principal_id()
    headers = {"X-Principal-Id": principal}
    async with _client() as client:
        first = await client.get("/v1/credits", headers=headers)
        second = await client.get("/v1/credits", headers=headers)
    assert first.status_code == 200
    assert first.json()["data"] == {
        "principal_id": principal,
        "general_credits": 10,
        "aux_credits": 10,
        "is_new": True,
    }
    assert second.json()["data"]["is_new"] is False
    assert second.json()["data"]["general_credits"] == 10


@pytest.mark.asyncio
async def test_bearer_token_authenticates() -> None:
    principal = principal_id()
    async with _client() as client:
        response = await client.get("/v1/credits", headers=bearer_headers(principal))
        expired = await client.get(
            "/v1/credits", headers=bearer_headers(principal, expires_in=timedelta(minutes=-5))
        )
    assert response.status_code == 200
    assert response.json()["data"]["principal_id"] == principal
    assert expired.status_code == 401
    assert expired.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_missing_credentials_are_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AUTH_DEV_BYPASS", "false")
    get_settings.cache_clear()
    async with _client() as client:
        response = await client.get("/v1/credits", headers={"X-Principal-Id": principal_id()})
    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_tool_run_and_insufficient_credits_envelope() -> None:
    principal = principal_id()
    await seed_balance(principal, 1)
    provider = FakeInferenceProvider(output=["https://fake.provider/outputs/tool.webp"])
    store = MemoryObjectStore()
    headers = {"X-Principal-Id": principal}

    async with _client(provider, store) as client:
        ok = await client.post("/v1/tools/ai-image/text-to-image", json={"prompt": "red fox"}, headers=headers)
        denied = await client.post("/v1/tools/ai-image/text-to-image", json={"prompt": "red fox"}, headers=headers)
        catalog = await client.get("/v1/tools", headers=headers)

    assert ok.status_code == 200
    data = ok.json()["data"]
    assert data["credits_charged"] == 1
    assert data["credits_remaining"] == 0
    assert store.is_durable(data["url"])
    assert data["artifact_id"] is not None

    assert denied.status_code == 402
    error = denied.json()["error"]
    assert error["code"] == "INSUFFICIENT_CREDITS"
    assert error["details"] == {"required": 1, "available": 0, "credit_type": "general"}
    assert provider.count("run") == 1
    assert catalog.status_code == 200
    assert catalog.json()["data"] == []


@pytest.mark.asyncio
async def test_tool_run_rejects_unknown_fields() -> None:
    async with _client() as client:
        response = await client.post(
            "/v1/tools/ai-image/text-to-image",
            json={"prompt": "x", "credits": 0},
            headers={"X-Principal-Id": principal_id()},
        )
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_shot_lifecycle_over_http() -> None:
    principal = principal_id()
    await seed_balance(principal, 3)
    workspace_id = await seed_trained_workspace(principal)
    provider = FakeInferenceProvider()
    store = MemoryObjectStore()
    headers = {"X-Principal-Id": principal}
    base = f"/v1/workspaces/{workspace_id}/shots"

    async with _client(provider, store) as client:
        created = await client.post(base, json={"prompt": "@me on a beach", "seed": 42}, headers=headers)
        assert created.status_code == 202
        shot = created.json()["data"]
        assert shot["state"] == "starting"
        assert shot["credits_charged"] == 1
        assert shot["credits_remaining"] == 2

        submitted = provider.calls[-1]
        assert "TOK woman" in submitted.input["prompt"]
        provider.complete(
            next(iter(provider.predictions)),
            output=["https://fake.provider/outputs/shot.png"],
            logs="Using seed: 42\n",
        )
        polled = await client.get(f"{base}/{shot['id']}", headers=headers)
        assert polled.status_code == 200
        assert polled.json()["data"]["state"] == "succeeded"
        assert store.is_durable(polled.json()["data"]["output_url"])
        assert polled.json()["data"]["seed"] == 42

        patched = await client.patch(f"{base}/{shot['id']}", json={"bookmarked": True}, headers=headers)
        assert patched.json()["data"]["bookmarked"] is True

        listed = await client.get(base, headers=headers)
        assert [item["id"] for item in listed.json()["data"]] == [shot["id"]]

        foreign = await client.get(f"{base}/{shot['id']}", headers={"X-Principal-Id": principal_id()})
        assert foreign.status_code == 404
        assert foreign.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_artifacts_crud_over_http() -> None:
    principal = principal_id()
    store = MemoryObjectStore()
    headers = {"X-Principal-Id": principal}
    async with _client(store=store) as client:
        created = await client.post(
            "/v1/artifacts",
            json={"url": "https://uploads.test/cat.png", "source_tag": "upload"},
            headers=headers,
        )
        again = await client.post("/v1/artifacts", json={"url": "https://uploads.test/cat.png"}, headers=headers)
        listed = await client.get("/v1/artifacts", params={"limit": 5}, headers=headers)
        artifact_id = created.json()["data"]["id"]
        deleted = await client.delete(f"/v1/artifacts/{artifact_id}", headers=headers)
        missing = await client.delete(f"/v1/artifacts/{artifact_id}", headers=headers)

    assert created.status_code == 201
    assert again.json()["data"]["id"] == artifact_id
    assert listed.json()["meta"]["limit"] == 5
    assert len(listed.json()["data"]) == 1
    assert deleted.status_code == 204
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_provider_webhook_route_verifies_signature() -> None:
    store = MemoryObjectStore()
    headers, body = provider_webhook({"id": "unknown-prediction", "status": "succeeded", "output": "x"})
    async with _client(store=store) as client:
        accepted = await client.post("/v1/webhooks/provider", content=body, headers=headers)
        forged = await client.post(
            "/v1/webhooks/provider",
            content=body,
            headers={**headers, "webhook-signature": "v1,AAAA"},
        )
    assert accepted.status_code == 200
    assert accepted.json()["data"] == {"status": "unknown_job", "job_id": None}
    assert forged.status_code == 400
    assert forged.json()["error"]["code"] == "INVALID_SIGNATURE"


@pytest.mark.asyncio
async def test_payments_webhook_route_applies_top_up() -> None:
    principal = principal_id()
    event = {
        "id": "evt_http_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_http_1",
                "payment_status": "paid",
                "metadata": {"principal_id": principal, "general_credits": "25", "purpose": "top_up"},
            }
        },
    }
    signature, body = payment_webhook(event)
    async with _client() as client:
        response = await client.post(
            "/v1/webhooks/payments",
            content=body,
            headers={"Stripe-Signature": signature, "content-type": "application/json"},
        )
        balance = await client.get("/v1/credits", headers={"X-Principal-Id": principal})
    assert response.json()["data"]["status"] == "applied"
    assert balance.json()["data"]["general_credits"] == 25
    assert balance.json()["data"]["is_new"] is False
