from __future__ import annotations

import pytest
from sqlalchemy import func, select

from genstudio.core.errors import NotFoundError
from genstudio.domain.models import Artifact
from genstudio.persistence.db import SessionLocal
from genstudio.providers.storage.memory import MemoryObjectStore
from genstudio.services import artifacts
from genstudio.tests.utils.factories import principal_id


async def _count(principal: str) -> int:
    async with SessionLocal() as session:
        result = await session.execute(
            select(func.count()).select_from(Artifact).where(Artifact.principal_id == principal)
        )
        return int(result.scalar() or 0)


@pytest.mark.asyncio
async def test_persist_is_idempotent_per_original_url() -> None:
    principal = principal_id()
    store = MemoryObjectStore()
    url = "https://replicate.delivery/abc/out.png"

    async with SessionLocal() as session:
        first = await artifacts.persist(session, store, principal_id=principal, url=url, source_tag="tool:x")
        second = await artifacts.persist(session, store, principal_id=principal, url=url, source_tag="tool:x")

    assert first.id == second.id
    assert first.original_url == url
    assert store.is_durable(first.url)
    assert first.url.endswith(".png")
    assert store.uploads == 1
    assert await _count(principal) == 1


@pytest.mark.asyncio
async def test_same_url_is_separate_per_principal() -> None:
    store = MemoryObjectStore()
    url = "https://replicate.delivery/shared.png"
    async with SessionLocal() as session:
        a = await artifacts.persist(session, store, principal_id=principal_id(), url=url, source_tag="t")
        b = await artifacts.persist(session, store, principal_id=principal_id(), url=url, source_tag="t")
    assert a.id != b.id


@pytest.mark.asyncio
async def test_already_owned_url_is_not_copied() -> None:
    principal = principal_id()
    store = MemoryObjectStore()
    owned = await store.put(b"data", "image/png", key="media/owned.png")
    async with SessionLocal() as session:
        artifact = await artifacts.persist(session, store, principal_id=principal, url=owned, source_tag="upload")
    assert artifact.url == owned
    assert artifact.original_url == owned
    assert store.uploads == 1


@pytest.mark.asyncio
async def test_failed_copy_keeps_provider_url_then_upgrades_once() -> None:
    principal = principal_id()
    store = MemoryObjectStore()
    url = "https://replicate.delivery/flaky.mp4"
    store.failing_urls.add(url)

    async with SessionLocal() as session:
        first = await artifacts.persist(session, store, principal_id=principal, url=url, source_tag="tool:video")
        assert first.url == url

        store.failing_urls.clear()
        upgraded = await artifacts.persist(session, store, principal_id=principal, url=url, source_tag="tool:video")
        again = await artifacts.persist(session, store, principal_id=principal, url=url, source_tag="tool:video")

    assert upgraded.id == first.id
    assert store.is_durable(upgraded.url)
    assert upgraded.url.endswith(".mp4")
    assert again.url == upgraded.url
    assert store.uploads == 1
    assert await _count(principal) == 1


@pytest.mark.asyncio
async def test_persist_validates_inputs() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ValueError):
            await artifacts.persist(session, MemoryObjectStore(), principal_id="", url="x", source_tag="t")
        with pytest.raises(ValueError):
            await artifacts.persist(session, MemoryObjectStore(), principal_id="u", url="  ", source_tag="t")


@pytest.mark.asyncio
async def test_attach_hd_url_and_delete_cleans_owned_objects() -> None:
    principal = principal_id()
    store = MemoryObjectStore()
    async with SessionLocal() as session:
        artifact = await artifacts.persist(
            session, store, principal_id=principal, url="https://replicate.delivery/a.png", source_tag="job"
        )
        hd_url = await artifacts.attach_hd_url(
            session, store, artifact_id=artifact.id, hd_url="https://replicate.delivery/a-hd.png"
        )
        assert store.is_durable(hd_url)
        assert len(store.objects) == 2

        await artifacts.delete(session, store, principal_id=principal, artifact_id=artifact.id)
        with pytest.raises(NotFoundError):
            await artifacts.delete(session, store, principal_id=principal, artifact_id=artifact.id)

    assert store.objects == {}
    assert await _count(principal) == 0


@pytest.mark.asyncio
async def test_delete_is_scoped_to_owner() -> None:
    store = MemoryObjectStore()
    owner = principal_id()
    async with SessionLocal() as session:
        artifact = await artifacts.persist(
            session, store, principal_id=owner, url="https://replicate.delivery/b.png", source_tag="job"
        )
        with pytest.raises(NotFoundError):
            await artifacts.delete(session, store, principal_id=principal_id(), artifact_id=artifact.id)
    assert await _count(owner) == 1
