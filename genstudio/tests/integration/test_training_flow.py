from __future__ import annotations

import io
import zipfile

import pytest

from genstudio.core.errors import PreconditionFailedError, ProviderUnavailableError, StorageError
from genstudio.domain.states import (
    JOB_KIND_TRAINING,
    JOB_SUCCEEDED,
    PAYMENT_PURPOSE_WORKSPACE_UNLOCK,
    WORKSPACE_FAILED,
    WORKSPACE_NOT_CREATED,
    WORKSPACE_PROCESSING,
    WORKSPACE_SUCCEEDED,
)
from genstudio.persistence.db import SessionLocal
from genstudio.persistence.repos import jobs as jobs_repo
from genstudio.persistence.repos import workspaces as workspaces_repo
from genstudio.providers.inference.fake import FakeInferenceProvider
from genstudio.providers.payments.fake import FakePaymentProvider
from genstudio.providers.storage.memory import MemoryObjectStore
from genstudio.services import engine, ingestor, payments
from genstudio.tests.utils.factories import principal_id, provider_webhook

IMAGES = ["https://uploads.test/one.jpg", "https://uploads.test/two.png"]


async def _workspace(store: MemoryObjectStore, principal: str) -> str:
    async with SessionLocal() as session:
        workspace = await engine.create_workspace(
            session,
            store,
            principal_id=principal,
            name="Headshots",
            instance_name="Grace",
            instance_class="woman",
            image_urls=IMAGES,
        )
    return workspace.id


async def _unlock(principal: str, workspace_id: str) -> None:
    provider = FakePaymentProvider()
    provider.add_session(
        f"cs_{workspace_id}",
        metadata={
            "principal_id": principal,
            "purpose": PAYMENT_PURPOSE_WORKSPACE_UNLOCK,
            "workspace_id": workspace_id,
        },
    )
    async with SessionLocal() as session:
        outcome = await payments.confirm_workspace_unlock(
            session,
            provider,
            principal_id=principal,
            workspace_id=workspace_id,
            session_id=f"cs_{workspace_id}",
        )
    assert outcome.applied is True


async def _train(provider: FakeInferenceProvider, principal: str, workspace_id: str):
    async with SessionLocal() as session:
        return await engine.start_training(session, provider, principal_id=principal, workspace_id=workspace_id)


@pytest.mark.asyncio
async def test_create_workspace_uploads_training_archive() -> None:
    store = MemoryObjectStore()
    principal = principal_id()
    workspace_id = await _workspace(store, principal)

    async with SessionLocal() as session:
        workspace = await workspaces_repo.get_workspace(session, workspace_id, principal_id=principal)
    assert workspace is not None
    assert workspace.status == WORKSPACE_NOT_CREATED
    assert workspace.images_zip_url == f"https://media.test/training/{workspace_id}.zip"
    archive = zipfile.ZipFile(io.BytesIO(store.objects[f"training/{workspace_id}.zip"].data))
    assert archive.namelist() == ["image_000.jpg", "image_001.png"]


@pytest.mark.asyncio
async def test_create_workspace_requires_images_and_reachable_uploads() -> None:
    store = MemoryObjectStore()
    async with SessionLocal() as session:
        with pytest.raises(PreconditionFailedError):
            await engine.create_workspace(
                session, store, principal_id=principal_id(), name="n", instance_name="i",
                instance_class="man", image_urls=[],
            )
        store.failing_urls.add(IMAGES[0])
        with pytest.raises(StorageError):
            await engine.create_workspace(
                session, store, principal_id="u1", name="n", instance_name="i",
                instance_class="man", image_urls=IMAGES,
            )
        assert await workspaces_repo.list_workspaces(session, principal_id="u1") == []


@pytest.mark.asyncio
async def test_training_requires_unlock_payment() -> None:
    store = MemoryObjectStore()
    principal = principal_id()
    workspace_id = await _workspace(store, principal)
    provider = FakeInferenceProvider()
    with pytest.raises(PreconditionFailedError):
        await _train(provider, principal, workspace_id)
    assert provider.calls == []


@pytest.mark.asyncio
async def test_training_completion_unlocks_generation() -> None:
    store = MemoryObjectStore()
    principal = principal_id()
    workspace_id = await _workspace(store, principal)
    await _unlock(principal, workspace_id)
    provider = FakeInferenceProvider()

    workspace = await _train(provider, principal, workspace_id)
    assert workspace.status == WORKSPACE_PROCESSING
    assert workspace.provider_model_name == f"genstudio-test/{workspace_id}"
    assert workspace.training_job_id is not None
    training_call = provider.calls[-1]
    assert training_call.method == "create_training"
    assert training_call.input == {
        "trigger_word": "TOK",
        "input_images": f"https://media.test/training/{workspace_id}.zip",
    }

    with pytest.raises(PreconditionFailedError):
        await _train(provider, principal, workspace_id)

    async with SessionLocal() as session:
        job = await jobs_repo.get_job(session, workspace.training_job_id)
    assert job is not None and job.kind == JOB_KIND_TRAINING
    headers, body = provider_webhook(
        {
            "id": job.provider_job_id,
            "status": "succeeded",
            "output": {"version": f"genstudio-test/{workspace_id}:f00dcafe", "weights": "https://x.test/w.tar"},
        }
    )
    async with SessionLocal() as session:
        result = await ingestor.ingest_webhook(session, store, headers=headers, body=body)
        assert result.state == JOB_SUCCEEDED
        trained = await workspaces_repo.get_workspace(session, workspace_id)
    assert trained is not None
    assert trained.status == WORKSPACE_SUCCEEDED
    assert trained.model_version == "f00dcafe"


@pytest.mark.asyncio
async def test_failed_training_marks_workspace_failed() -> None:
    store = MemoryObjectStore()
    principal = principal_id()
    workspace_id = await _workspace(store, principal)
    await _unlock(principal, workspace_id)
    provider = FakeInferenceProvider()
    workspace = await _train(provider, principal, workspace_id)

    async with SessionLocal() as session:
        job = await jobs_repo.get_job(session, workspace.training_job_id)
        assert job is not None
        provider.complete(job.provider_job_id, status="failed", error="bad images")
        polled = await ingestor.poll_job(session, provider, store, principal_id=principal, job_id=job.id)
        assert polled.error_message == "bad images"
        failed = await workspaces_repo.get_workspace(session, workspace_id)
    assert failed is not None and failed.status == WORKSPACE_FAILED
    assert provider.count("get_training") == 1


@pytest.mark.asyncio
async def test_provider_failure_releases_workspace_reservation() -> None:
    store = MemoryObjectStore()
    principal = principal_id()
    workspace_id = await _workspace(store, principal)
    await _unlock(principal, workspace_id)
    provider = FakeInferenceProvider(error=ProviderUnavailableError("trainer down"))

    with pytest.raises(ProviderUnavailableError):
        await _train(provider, principal, workspace_id)
    async with SessionLocal() as session:
        workspace = await workspaces_repo.get_workspace(session, workspace_id)
    assert workspace is not None and workspace.status == WORKSPACE_NOT_CREATED
