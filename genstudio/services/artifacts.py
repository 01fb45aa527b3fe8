from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.errors import NotFoundError, StorageError
from genstudio.domain.models import Artifact
from genstudio.persistence.repos import artifacts as artifacts_repo
from genstudio.providers.storage.base import ObjectStore, new_media_key, resolve_media_type
from genstudio.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


async def rehome(store: ObjectStore, url: str) -> str | None:
    # Copy a provider-hosted object into owned storage; None means keep the original URL.
    try:
        fetched = await store.get(url)
        extension, content_type = resolve_media_type(fetched.content_type, url)
        return await store.put(fetched.data, content_type, key=new_media_key(extension))
    except StorageError as exc:
        increment_counter("artifact_rehome_failures_total")
        logger.warning("artifact_rehome_failed url=%s", url, exc_info=exc)
        return None


async def _discard_upload(store: ObjectStore, url: str | None) -> None:
    if not url:
        return
    try:
        await store.delete(url)
    except StorageError as exc:
        logger.warning("artifact_orphan_delete_failed url=%s", url, exc_info=exc)


async def persist(
    session: AsyncSession,
    store: ObjectStore,
    *,
    principal_id: str,
    url: str,
    source_tag: str,
    prompt: str | None = None,
    job_id: str | None = None,
) -> Artifact:
    """Persist one artifact reference per (principal, original URL).

    Idempotent under retries and duplicate completions: an existing record is
    returned (and upgraded to a durable URL at most once) instead of creating
    a second row. Commits its own unit of work.
    """
    original_url = (url or "").strip()
    if not principal_id:
        raise ValueError("principal_id is required")
    if not original_url:
        raise ValueError("url is required")

    # A record that already carries a durable URL needs no second upload.
    existing = await artifacts_repo.find_by_urls(session, principal_id=principal_id, urls=[original_url])
    if existing is not None and store.is_durable(existing.url):
        return existing

    durable_url: str | None = None
    if not store.is_durable(original_url):
        durable_url = await rehome(store, original_url)
    final_url = durable_url or original_url

    existing = await artifacts_repo.find_by_urls(
        session, principal_id=principal_id, urls=[original_url, final_url]
    )
    if existing is not None:
        return await _upgrade_existing(session, store, existing, durable_url)

    artifact = await artifacts_repo.create_artifact(
        session,
        principal_id=principal_id,
        url=final_url,
        original_url=original_url,
        source_tag=source_tag,
        prompt=prompt,
        job_id=job_id,
    )
    try:
        await session.commit()
    except IntegrityError:
        # A concurrent writer created the row between lookup and insert.
        await session.rollback()
        increment_counter("artifact_dedupe_races_total")
        existing = await artifacts_repo.find_by_urls(
            session, principal_id=principal_id, urls=[original_url, final_url]
        )
        if existing is None:
            raise
        return await _upgrade_existing(session, store, existing, durable_url)
    logger.info(
        "artifact_persisted artifact_id=%s principal_id=%s source=%s durable=%s",
        artifact.id,
        principal_id,
        source_tag,
        durable_url is not None or store.is_durable(original_url),
    )
    return artifact


async def _upgrade_existing(
    session: AsyncSession,
    store: ObjectStore,
    existing: Artifact,
    durable_url: str | None,
) -> Artifact:
    if durable_url is None or store.is_durable(existing.url):
        # Another call already upgraded it; drop the object we just uploaded.
        if durable_url is not None and durable_url != existing.url:
            await _discard_upload(store, durable_url)
        return existing
    upgraded = await artifacts_repo.upgrade_url(
        session, existing.id, expected_url=existing.url, durable_url=durable_url
    )
    await session.commit()
    if not upgraded:
        await _discard_upload(store, durable_url)
    refreshed = await artifacts_repo.get_artifact(session, existing.id)
    if refreshed is None:
        raise NotFoundError(f"Artifact {existing.id} disappeared during upgrade")
    if upgraded:
        logger.info("artifact_url_upgraded artifact_id=%s", existing.id)
    return refreshed


async def attach_hd_url(
    session: AsyncSession,
    store: ObjectStore,
    *,
    artifact_id: str,
    hd_url: str,
) -> str:
    # Adds the upscaled rendition to an existing artifact, rehomed when possible.
    final_url = hd_url
    if not store.is_durable(hd_url):
        final_url = await rehome(store, hd_url) or hd_url
    await artifacts_repo.set_hd_url(session, artifact_id, final_url)
    await session.commit()
    return final_url


async def delete(
    session: AsyncSession,
    store: ObjectStore,
    *,
    principal_id: str,
    artifact_id: str,
) -> None:
    artifact = await artifacts_repo.get_artifact(session, artifact_id, principal_id=principal_id)
    if artifact is None:
        raise NotFoundError(f"Artifact {artifact_id} not found")
    owned = [url for url in (artifact.url, artifact.hd_url) if url and store.is_durable(url)]
    await artifacts_repo.delete_artifact(session, artifact.id)
    await session.commit()
    # Object cleanup is best-effort once the record is gone.
    for url in owned:
        await _discard_upload(store, url)
    logger.info("artifact_deleted artifact_id=%s principal_id=%s", artifact_id, principal_id)
