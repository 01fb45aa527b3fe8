from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import select

from genstudio.core.errors import (
    InsufficientCreditsError,
    ProviderRejectedError,
    UnrecognizedOutputShapeError,
)
from genstudio.domain.models import Artifact, AuditEvent, CreditBalance
from genstudio.persistence.db import SessionLocal
from genstudio.persistence.repos import tool_configs as tool_configs_repo
from genstudio.providers.inference.fake import FakeInferenceProvider
from genstudio.providers.storage.local import LocalObjectStore
from genstudio.providers.storage.memory import MemoryObjectStore
from genstudio.services import credits
from genstudio.services.engine import invoke_tool
from genstudio.services.tools import ToolRequest
from genstudio.tests.utils.factories import principal_id, seed_balance


async def _balance(principal: str) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(CreditBalance.general_credits).where(CreditBalance.principal_id == principal)
        )
        return int(result.scalar_one())


async def _artifacts(principal: str) -> list[Artifact]:
    async with SessionLocal() as session:
        result = await session.execute(select(Artifact).where(Artifact.principal_id == principal))
        return list(result.scalars().all())


@pytest.mark.asyncio
async def test_successful_tool_run_charges_once_and_persists_artifact() -> None:
    principal = principal_id()
    await seed_balance(principal, 1)
    provider = FakeInferenceProvider(output={"url": "p"})
    store = MemoryObjectStore()

    async with SessionLocal() as session:
        result = await invoke_tool(
            session,
            provider,
            store,
            principal_id=principal,
            slug="ai-image/text-to-image",
            request=ToolRequest(prompt="a lighthouse at dusk"),
        )

    assert result.credits_charged == 1
    assert result.credits_remaining == 0
    assert result.billing_error is None
    assert await _balance(principal) == 0
    artifacts = await _artifacts(principal)
    assert len(artifacts) == 1
    assert artifacts[0].original_url == "p"
    assert store.is_durable(artifacts[0].url)
    assert artifacts[0].source_tag == "tool:ai-image/text-to-image"
    assert artifacts[0].prompt == "a lighthouse at dusk"
    assert result.url == artifacts[0].url
    assert provider.count("run") == 1


@pytest.mark.asyncio
async def test_malformed_output_url_keeps_paid_result(tmp_path) -> None:
    principal = principal_id()
    await seed_balance(principal, 1)
    malformed = "http://[::1/x.png"
    provider = FakeInferenceProvider(output={"url": malformed})
    store = LocalObjectStore(root=str(tmp_path), base_url="http://media.test/files")

    async with SessionLocal() as session:
        result = await invoke_tool(
            session,
            provider,
            store,
            principal_id=principal,
            slug="ai-image/text-to-image",
            request=ToolRequest(prompt="a lighthouse at dusk"),
        )

    # The copy fails, so the provider URL is kept as-is.
    assert result.credits_charged == 1
    assert result.url == malformed
    assert await _balance(principal) == 0
    artifacts = await _artifacts(principal)
    assert [artifact.url for artifact in artifacts] == [malformed]
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_empty_balance_never_reaches_provider() -> None:
    principal = principal_id()
    await seed_balance(principal, 0)
    provider = FakeInferenceProvider()

    async with SessionLocal() as session:
        with pytest.raises(InsufficientCreditsError) as excinfo:
            await invoke_tool(
                session,
                provider,
                MemoryObjectStore(),
                principal_id=principal,
                slug="ai-image/text-to-image",
                request=ToolRequest(prompt="x"),
            )

    assert excinfo.value.required == 1
    assert excinfo.value.available == 0
    assert provider.calls == []
    assert await _balance(principal) == 0
    assert await _artifacts(principal) == []


@pytest.mark.asyncio
async def test_catalog_entry_sets_model_and_cost() -> None:
    principal = principal_id()
    await seed_balance(principal, 5)
    async with SessionLocal() as session:
        await tool_configs_repo.upsert_tool_config(
            session,
            slug="ai-photo-filter/ai-anime-filter",
            model_identifier="google/nano-banana",
            prompt_template="Transform this photo into anime art.",
            credit_cost=3,
        )
        await session.commit()

    provider = FakeInferenceProvider(output=["https://replicate.delivery/anime.png"])
    async with SessionLocal() as session:
        result = await invoke_tool(
            session,
            provider,
            MemoryObjectStore(),
            principal_id=principal,
            slug="ai-photo-filter/ai-anime-filter",
            request=ToolRequest(image_url="https://img.test/me.jpg"),
        )

    call = provider.calls[0]
    assert call.model_identifier == "google/nano-banana"
    assert call.input["image_input"] == ["https://img.test/me.jpg"]
    assert call.input["prompt"] == "Transform this photo into anime art."
    assert result.credits_charged == 3
    assert await _balance(principal) == 2


@pytest.mark.asyncio
async def test_rejected_input_is_not_charged() -> None:
    principal = principal_id()
    await seed_balance(principal, 2)
    provider = FakeInferenceProvider(error=ProviderRejectedError("NSFW content detected"))

    async with SessionLocal() as session:
        with pytest.raises(ProviderRejectedError):
            await invoke_tool(
                session,
                provider,
                MemoryObjectStore(),
                principal_id=principal,
                slug="ai-image/text-to-image",
                request=ToolRequest(prompt="x"),
            )
    assert await _balance(principal) == 2


@pytest.mark.asyncio
async def test_unrecognized_output_is_not_charged() -> None:
    principal = principal_id()
    await seed_balance(principal, 2)
    provider = FakeInferenceProvider(output={"unexpected": True})

    async with SessionLocal() as session:
        with pytest.raises(UnrecognizedOutputShapeError):
            await invoke_tool(
                session,
                provider,
                MemoryObjectStore(),
                principal_id=principal,
                slug="ai-image/text-to-image",
                request=ToolRequest(prompt="x"),
            )
    assert await _balance(principal) == 2
    assert await _artifacts(principal) == []


class _DrainingProvider(FakeInferenceProvider):
    """Spends the caller's balance elsewhere while the run is in flight."""

    def __init__(self, principal: str) -> None:
        super().__init__(output="https://replicate.delivery/out.png")
        self.principal = principal

    async def run(self, model_identifier: str, input: dict[str, Any]) -> Any:
        async with SessionLocal() as other:
            await credits.deduct(other, self.principal, 1)
        return await super().run(model_identifier, input)


@pytest.mark.asyncio
async def test_billing_failure_after_provider_work_is_reported() -> None:
    principal = principal_id()
    await seed_balance(principal, 1)
    store = MemoryObjectStore()

    async with SessionLocal() as session:
        result = await invoke_tool(
            session,
            _DrainingProvider(principal),
            store,
            principal_id=principal,
            slug="ai-image/text-to-image",
            request=ToolRequest(prompt="x"),
        )

    assert result.billing_error is not None
    assert result.credits_charged == 0
    assert result.credits_remaining is None
    assert result.artifact is not None
    assert await _balance(principal) == 0
    async with SessionLocal() as session:
        events = await session.execute(
            select(AuditEvent).where(AuditEvent.event_type == "billing.deduct_failed")
        )
        rows = list(events.scalars().all())
    assert len(rows) == 1
    assert rows[0].principal_id == principal
    assert rows[0].error_code == "InsufficientCreditsError"
