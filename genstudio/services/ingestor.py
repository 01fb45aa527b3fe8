from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
import logging
from typing import Any, Mapping

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.config import get_settings
from genstudio.core.errors import (
    GenStudioError,
    InvalidSignatureError,
    MalformedWebhookError,
    NotFoundError,
    StateConflictError,
    StorageError,
    UnrecognizedOutputShapeError,
)
from genstudio.domain.models import Job
from genstudio.domain.states import (
    JOB_FAILED,
    JOB_KIND_GENERATION,
    JOB_KIND_TRAINING,
    JOB_KIND_UPSCALE,
    JOB_SUCCEEDED,
    JOB_TERMINAL_STATES,
    PROVIDER_STATUS_MAP,
    UPSCALE_NO,
    UPSCALE_PENDING,
    UPSCALE_PROCESSED,
    WORKSPACE_FAILED,
    WORKSPACE_PROCESSING,
    WORKSPACE_SUCCEEDED,
)
from genstudio.persistence.repos import jobs as jobs_repo
from genstudio.persistence.repos import workspaces as workspaces_repo
from genstudio.providers.inference.base import InferenceProvider, Prediction, prediction_from_payload
from genstudio.providers.storage.base import ObjectStore
from genstudio.services import artifacts
from genstudio.services.audit import record_event
from genstudio.services.jobs import extract_seed, transition_job, transition_upscale, transition_workspace
from genstudio.services.normalizer import jsonable_output, normalize
from genstudio.services.telemetry import increment_counter
from genstudio.services.webhook_signatures import verify_signed_webhook


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    job_id: str | None
    state: str | None
    applied: bool
    artifact_id: str | None = None


@dataclass(frozen=True)
class ReconcileSummary:
    scanned: int
    applied: int
    repaired: int
    failed: int


def _needs_artifact_repair(job: Job) -> bool:
    # A crash between the terminal write and persist leaves a succeeded job without its artifact.
    return (
        job.kind == JOB_KIND_GENERATION
        and job.state == JOB_SUCCEEDED
        and job.artifact_id is None
        and bool(job.output_url)
    )


async def _persist_job_artifact(session: AsyncSession, store: ObjectStore, job: Job) -> str | None:
    assert job.output_url is not None
    job_id = job.id
    prompt = (job.input_json or {}).get("prompt")
    source_tag = f"workspace:{job.workspace_id}" if job.workspace_id else "job"
    try:
        artifact = await artifacts.persist(
            session,
            store,
            principal_id=job.principal_id,
            url=job.output_url,
            source_tag=source_tag,
            prompt=prompt,
            job_id=job_id,
        )
        await jobs_repo.link_artifact(session, job_id, artifact.id)
        await session.commit()
    except (StorageError, SQLAlchemyError) as exc:
        await session.rollback()
        logger.warning("job_artifact_persist_failed job_id=%s", job_id, exc_info=exc)
        return None
    return artifact.id


async def apply_prediction(
    session: AsyncSession,
    store: ObjectStore,
    job: Job,
    prediction: Prediction,
    *,
    source: str,
) -> IngestResult:
    """Apply a provider status report to a job; safe to call repeatedly."""
    if job.state in JOB_TERMINAL_STATES:
        if _needs_artifact_repair(job):
            job_id, state = job.id, job.state
            artifact_id = await _persist_job_artifact(session, store, job)
            logger.info("job_artifact_repaired job_id=%s source=%s", job_id, source)
            return IngestResult(job_id, state, False, artifact_id)
        increment_counter("completion_duplicates_total")
        logger.info("completion_duplicate job_id=%s state=%s source=%s", job.id, job.state, source)
        return IngestResult(job.id, job.state, False, job.artifact_id)

    target = PROVIDER_STATUS_MAP.get(prediction.status)
    if target is None:
        logger.warning(
            "completion_unknown_status job_id=%s status=%s source=%s", job.id, prediction.status, source
        )
        return IngestResult(job.id, job.state, False, job.artifact_id)

    if job.kind == JOB_KIND_TRAINING:
        return await _apply_training(session, job, prediction, target, source=source)
    if job.kind == JOB_KIND_UPSCALE:
        return await _apply_upscale(session, store, job, prediction, target, source=source)
    return await _apply_generation(session, store, job, prediction, target, source=source)


async def _transition(
    session: AsyncSession,
    job: Job,
    target: str,
    values: dict[str, Any],
    *,
    source: str,
) -> Job | None:
    # None means another writer got there first or the edge was a no-op.
    job_id = job.id
    principal_id = job.principal_id
    audit_metadata = {"kind": job.kind, "source": source, "provider_job_id": job.provider_job_id}
    try:
        result = await transition_job(session, job, target=target, values=values)
    except StateConflictError as exc:
        await session.rollback()
        logger.info("completion_race_lost job_id=%s actual=%s source=%s", job_id, exc.actual, source)
        return None
    await session.commit()
    if not result.applied:
        return None
    if target in JOB_TERMINAL_STATES:
        await record_event(
            principal_id=principal_id,
            event_type=f"job.{target}",
            outcome="success" if target == JOB_SUCCEEDED else "failure",
            resource_type="job",
            resource_id=job_id,
            metadata=audit_metadata,
        )
    return result.job


async def _apply_generation(
    session: AsyncSession,
    store: ObjectStore,
    job: Job,
    prediction: Prediction,
    target: str,
    *,
    source: str,
) -> IngestResult:
    job_id = job.id
    values: dict[str, Any] = {}
    if target == JOB_SUCCEEDED:
        try:
            normalized = await normalize(prediction.output)
        except UnrecognizedOutputShapeError as exc:
            target = JOB_FAILED
            values["error_message"] = str(exc)
        else:
            values["output_url"] = normalized.artifact_url
            values["raw_output_json"] = jsonable_output(prediction.output)
            values["seed"] = extract_seed(prediction.logs)
    elif target == JOB_FAILED:
        values["error_message"] = prediction.error or f"Provider run {prediction.status}"

    updated = await _transition(session, job, target, values, source=source)
    if updated is None:
        refreshed = await jobs_repo.get_job(session, job_id)
        return IngestResult(job_id, refreshed.state if refreshed else None, False)
    state = updated.state
    artifact_id = None
    if state == JOB_SUCCEEDED:
        artifact_id = await _persist_job_artifact(session, store, updated)
    return IngestResult(job_id, state, True, artifact_id)


def _training_version(output: Any) -> str | None:
    # Training output carries "owner/name:version"; only the version hash is stored.
    if not isinstance(output, Mapping):
        return None
    version = output.get("version")
    if not isinstance(version, str) or ":" not in version:
        return None
    return version.split(":")[1] or None


async def _apply_training(
    session: AsyncSession,
    job: Job,
    prediction: Prediction,
    target: str,
    *,
    source: str,
) -> IngestResult:
    job_id = job.id
    values: dict[str, Any] = {}
    version: str | None = None
    if target == JOB_SUCCEEDED:
        version = _training_version(prediction.output)
        if version is None:
            target = JOB_FAILED
            values["error_message"] = str(UnrecognizedOutputShapeError(prediction.output))
            logger.error("training_output_unrecognized job_id=%s", job_id)
        else:
            values["raw_output_json"] = jsonable_output(prediction.output)
    elif target == JOB_FAILED:
        values["error_message"] = prediction.error or f"Training {prediction.status}"

    updated = await _transition(session, job, target, values, source=source)
    if updated is None:
        refreshed = await jobs_repo.get_job(session, job_id)
        return IngestResult(job_id, refreshed.state if refreshed else None, False)
    if updated.state in JOB_TERMINAL_STATES and updated.workspace_id:
        workspace = await workspaces_repo.get_workspace(session, updated.workspace_id)
        if workspace is not None:
            workspace_id = workspace.id
            workspace_target = WORKSPACE_SUCCEEDED if updated.state == JOB_SUCCEEDED else WORKSPACE_FAILED
            workspace_values = {"model_version": version} if version else None
            try:
                await transition_workspace(
                    session,
                    workspace,
                    expected=WORKSPACE_PROCESSING,
                    target=workspace_target,
                    values=workspace_values,
                )
                await session.commit()
            except StateConflictError as exc:
                await session.rollback()
                logger.info("workspace_completion_race_lost workspace_id=%s actual=%s", workspace_id, exc.actual)
    return IngestResult(updated.id, updated.state, True)


async def _apply_upscale(
    session: AsyncSession,
    store: ObjectStore,
    job: Job,
    prediction: Prediction,
    target: str,
    *,
    source: str,
) -> IngestResult:
    job_id = job.id
    values: dict[str, Any] = {}
    if target == JOB_SUCCEEDED:
        try:
            normalized = await normalize(prediction.output)
        except UnrecognizedOutputShapeError as exc:
            target = JOB_FAILED
            values["error_message"] = str(exc)
        else:
            values["output_url"] = normalized.artifact_url
            values["raw_output_json"] = jsonable_output(prediction.output)
    elif target == JOB_FAILED:
        values["error_message"] = prediction.error or f"Upscale {prediction.status}"

    updated = await _transition(session, job, target, values, source=source)
    if updated is None:
        refreshed = await jobs_repo.get_job(session, job_id)
        return IngestResult(job_id, refreshed.state if refreshed else None, False)
    if updated.state not in JOB_TERMINAL_STATES or not updated.parent_job_id:
        return IngestResult(updated.id, updated.state, True)

    parent_id = updated.parent_job_id
    if updated.state == JOB_SUCCEEDED:
        applied = await transition_upscale(
            session,
            parent_id,
            expected=UPSCALE_PENDING,
            target=UPSCALE_PROCESSED,
            values={"upscale_output_url": updated.output_url},
        )
    else:
        # A failed run releases the reservation so the user can retry.
        applied = await transition_upscale(session, parent_id, expected=UPSCALE_PENDING, target=UPSCALE_NO)
    await session.commit()

    if applied and updated.state == JOB_SUCCEEDED and updated.output_url:
        parent = await jobs_repo.get_job(session, parent_id)
        if parent is not None and parent.artifact_id:
            try:
                await artifacts.attach_hd_url(
                    session, store, artifact_id=parent.artifact_id, hd_url=updated.output_url
                )
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.warning("artifact_hd_attach_failed job_id=%s", parent_id, exc_info=exc)
    return IngestResult(updated.id, updated.state, True)


async def _fetch_status(provider: InferenceProvider, job: Job) -> Prediction:
    assert job.provider_job_id is not None
    if job.kind == JOB_KIND_TRAINING:
        return await provider.get_training(job.provider_job_id)
    return await provider.get_prediction(job.provider_job_id)


async def poll_job(
    session: AsyncSession,
    provider: InferenceProvider,
    store: ObjectStore,
    *,
    principal_id: str,
    job_id: str,
    workspace_id: str | None = None,
) -> Job:
    """Caller-driven completion check: fetch provider status and apply it."""
    job = await jobs_repo.get_job(session, job_id, principal_id=principal_id, workspace_id=workspace_id)
    if job is None:
        raise NotFoundError(f"Job {job_id} not found")
    if job.provider_job_id is None:
        return job
    if job.state not in JOB_TERMINAL_STATES:
        prediction = await _fetch_status(provider, job)
        await apply_prediction(session, store, job, prediction, source="poll")
    elif _needs_artifact_repair(job):
        await _persist_job_artifact(session, store, job)
    refreshed = await jobs_repo.get_job(session, job.id)
    assert refreshed is not None
    return refreshed


async def ingest_prediction(
    session: AsyncSession,
    store: ObjectStore,
    prediction: Prediction,
    *,
    source: str,
) -> IngestResult:
    job = await jobs_repo.get_job_by_provider_id(session, prediction.id)
    if job is None:
        increment_counter("completion_unknown_job_total")
        logger.warning("completion_unknown_job provider_job_id=%s source=%s", prediction.id, source)
        return IngestResult(None, None, False)
    return await apply_prediction(session, store, job, prediction, source=source)


async def ingest_webhook(
    session: AsyncSession,
    store: ObjectStore,
    *,
    headers: Mapping[str, str],
    body: bytes,
    request_id: str | None = None,
) -> IngestResult:
    """Verify a pushed completion and run the same path as a poll."""
    settings = get_settings()
    try:
        verify_signed_webhook(
            secret=settings.replicate_webhook_secret,
            headers=headers,
            body=body,
            tolerance_s=settings.webhook_tolerance_s,
        )
    except InvalidSignatureError as exc:
        increment_counter("webhook_rejections_total")
        await record_event(
            principal_id=None,
            event_type="webhook.provider.rejected",
            outcome="failure",
            request_id=request_id,
            metadata={"reason": str(exc)},
            error_code="invalid_signature",
        )
        raise
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise MalformedWebhookError("Webhook body is not valid JSON") from exc
    if not isinstance(payload, dict) or not payload.get("id"):
        raise MalformedWebhookError("Webhook body is missing the job id")
    return await ingest_prediction(session, store, prediction_from_payload(payload), source="webhook")


async def reconcile_stale_jobs(
    session: AsyncSession,
    provider: InferenceProvider,
    store: ObjectStore,
    *,
    now: datetime | None = None,
    limit: int | None = None,
) -> ReconcileSummary:
    """Poll jobs whose completion webhook never arrived and repair missing artifacts."""
    settings = get_settings()
    current = now or datetime.now(timezone.utc)
    cutoff = current - timedelta(seconds=settings.reconcile_stale_after_s)
    stale = await jobs_repo.list_stale_jobs(
        session, updated_before=cutoff, limit=limit or settings.reconcile_batch_size
    )
    job_ids = [job.id for job in stale]
    applied = repaired = failed = 0
    for job_id in job_ids:
        # Re-read each job; earlier iterations may have rolled the session back.
        job = await jobs_repo.get_job(session, job_id)
        if job is None:
            continue
        try:
            if job.state in JOB_TERMINAL_STATES:
                if await _persist_job_artifact(session, store, job) is not None:
                    repaired += 1
                continue
            prediction = await _fetch_status(provider, job)
            result = await apply_prediction(session, store, job, prediction, source="reconcile")
            if result.applied:
                applied += 1
        except GenStudioError as exc:
            failed += 1
            logger.warning("reconcile_job_failed job_id=%s", job_id, exc_info=exc)
    increment_counter("reconcile_runs_total")
    logger.info(
        "reconcile_completed scanned=%s applied=%s repaired=%s failed=%s",
        len(job_ids),
        applied,
        repaired,
        failed,
    )
    return ReconcileSummary(scanned=len(job_ids), applied=applied, repaired=repaired, failed=failed)
