from __future__ import annotations

import asyncio
from dataclasses import dataclass
import io
import logging
from typing import Any
import zipfile

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.config import get_settings
from genstudio.core.errors import (
    GenStudioError,
    InsufficientCreditsError,
    NotFoundError,
    PreconditionFailedError,
    PrincipalUnknownError,
    ProviderConfigError,
    ProviderRejectedError,
    ProviderUnavailableError,
    StorageError,
)
from genstudio.domain.models import Artifact, Job, Workspace
from genstudio.domain.states import (
    JOB_KIND_GENERATION,
    JOB_KIND_TRAINING,
    JOB_KIND_UPSCALE,
    JOB_STARTING,
    PAYMENT_PURPOSE_WORKSPACE_UNLOCK,
    PROVIDER_STATUS_MAP,
    UPSCALE_NO,
    UPSCALE_PENDING,
    WORKSPACE_NOT_CREATED,
    WORKSPACE_PROCESSING,
    WORKSPACE_SUCCEEDED,
)
from genstudio.persistence.repos import jobs as jobs_repo
from genstudio.persistence.repos import payments as payments_repo
from genstudio.persistence.repos import workspaces as workspaces_repo
from genstudio.providers.inference.base import InferenceProvider
from genstudio.providers.llm.base import PromptLLMProvider
from genstudio.providers.storage.base import ObjectStore, resolve_media_type
from genstudio.services import artifacts, credits
from genstudio.services.audit import record_event
from genstudio.services.jobs import reserve_upscale, transition_upscale, transition_workspace
from genstudio.services.normalizer import normalize
from genstudio.services.prompt_assist import build_instruction
from genstudio.services.telemetry import increment_counter
from genstudio.services.tools import ToolRequest, build_tool_input, resolve_tool


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolRunResult:
    slug: str
    model_identifier: str
    url: str
    raw_output: Any
    credits_charged: int
    credits_remaining: int | None
    artifact: Artifact | None
    billing_error: str | None = None


@dataclass(frozen=True)
class SubmissionResult:
    job: Job
    credits_charged: int
    credits_remaining: int | None
    billing_error: str | None = None


def provider_webhook_url() -> str:
    return f"{get_settings().public_base_url.rstrip('/')}/v1/webhooks/provider"


def _initial_state(status: str) -> str:
    return PROVIDER_STATUS_MAP.get(status, JOB_STARTING)


async def _charge_after_side_effect(
    session: AsyncSession,
    *,
    principal_id: str,
    amount: int,
    resource_type: str,
    resource_id: str,
    request_id: str | None,
) -> tuple[int | None, str | None]:
    # The provider work cannot be undone; a failed deduction is a billing anomaly, not a job failure.
    try:
        deducted = await credits.deduct(session, principal_id, amount)
    except (InsufficientCreditsError, PrincipalUnknownError, SQLAlchemyError) as exc:
        await session.rollback()
        increment_counter("billing_deduct_failures_total")
        logger.error(
            "billing_deduct_failed principal_id=%s amount=%s resource_type=%s resource_id=%s",
            principal_id,
            amount,
            resource_type,
            resource_id,
            exc_info=exc,
        )
        await record_event(
            principal_id=principal_id,
            event_type="billing.deduct_failed",
            outcome="failure",
            resource_type=resource_type,
            resource_id=resource_id,
            request_id=request_id,
            metadata={"amount": amount, "error": str(exc)},
            error_code=type(exc).__name__,
        )
        return None, str(exc)
    return deducted.new_balance, None


async def invoke_tool(
    session: AsyncSession,
    provider: InferenceProvider,
    store: ObjectStore,
    *,
    principal_id: str,
    slug: str,
    request: ToolRequest,
    request_id: str | None = None,
) -> ToolRunResult:
    """Run a tool synchronously: check, call provider, normalize, deduct, persist."""
    settings = get_settings()
    tool = await resolve_tool(session, slug)
    decision = await credits.check(session, principal_id, tool.credit_cost)
    decision.raise_for_denial()

    provider_input = build_tool_input(tool, request)
    logger.info(
        "tool_invocation_started slug=%s model=%s catalog=%s has_image=%s",
        slug,
        tool.model_identifier,
        tool.from_catalog,
        "image" in provider_input or "image_input" in provider_input,
    )
    try:
        raw_output = await asyncio.wait_for(
            provider.run(tool.model_identifier, provider_input),
            timeout=settings.inference_timeout_s,
        )
    except asyncio.TimeoutError as exc:
        raise ProviderUnavailableError(f"Tool {slug} timed out") from exc
    except ProviderRejectedError:
        increment_counter("provider_rejections_total")
        logger.info("tool_invocation_rejected slug=%s principal_id=%s", slug, principal_id)
        raise

    normalized = await normalize(raw_output)

    remaining, billing_error = await _charge_after_side_effect(
        session,
        principal_id=principal_id,
        amount=tool.credit_cost,
        resource_type="tool",
        resource_id=slug,
        request_id=request_id,
    )

    artifact: Artifact | None = None
    try:
        artifact = await artifacts.persist(
            session,
            store,
            principal_id=principal_id,
            url=normalized.artifact_url,
            source_tag=f"tool:{slug}",
            prompt=request.prompt or None,
        )
    except (StorageError, SQLAlchemyError) as exc:
        # The paid-for result is still returned when the library write fails.
        await session.rollback()
        logger.warning("tool_artifact_persist_failed slug=%s principal_id=%s", slug, principal_id, exc_info=exc)

    return ToolRunResult(
        slug=slug,
        model_identifier=tool.model_identifier,
        url=artifact.url if artifact is not None else normalized.artifact_url,
        raw_output=normalized.raw_output,
        credits_charged=tool.credit_cost if billing_error is None else 0,
        credits_remaining=remaining,
        artifact=artifact,
        billing_error=billing_error,
    )


def replace_prompt_token(prompt: str, workspace: Workspace) -> str:
    # "@me" stands for the trained subject: trigger word plus its class noun.
    trigger = get_settings().training_trigger_word
    return prompt.replace("@me", f"{trigger} {workspace.instance_class}".strip())


async def build_training_archive(store: ObjectStore, image_urls: list[str]) -> bytes:
    # Trainer consumes a flat zip of the subject images.
    fetched = [await store.get(url) for url in image_urls]

    def _zip() -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
            for index, (url, item) in enumerate(zip(image_urls, fetched)):
                extension, _ = resolve_media_type(item.content_type, url)
                archive.writestr(f"image_{index:03d}.{extension}", item.data)
        return buffer.getvalue()

    return await asyncio.to_thread(_zip)


async def create_workspace(
    session: AsyncSession,
    store: ObjectStore,
    *,
    principal_id: str,
    name: str,
    instance_name: str,
    instance_class: str,
    image_urls: list[str],
) -> Workspace:
    if not image_urls:
        raise PreconditionFailedError("At least one training image is required")
    workspace = await workspaces_repo.create_workspace(
        session,
        principal_id=principal_id,
        name=name,
        instance_name=instance_name,
        instance_class=instance_class,
        image_urls=image_urls,
    )
    try:
        archive = await build_training_archive(store, image_urls)
        zip_url = await store.put(archive, "application/zip", key=f"training/{workspace.id}.zip")
    except StorageError:
        await session.rollback()
        raise
    await workspaces_repo.set_images_zip_url(session, workspace.id, zip_url)
    await session.commit()
    logger.info(
        "workspace_created workspace_id=%s principal_id=%s images=%s",
        workspace.id,
        principal_id,
        len(image_urls),
    )
    refreshed = await workspaces_repo.get_workspace(session, workspace.id)
    assert refreshed is not None
    return refreshed


async def submit_generation(
    session: AsyncSession,
    provider: InferenceProvider,
    *,
    principal_id: str,
    workspace_id: str,
    prompt: str,
    seed: int | None = None,
    image_url: str | None = None,
    refine: bool = False,
    llm: PromptLLMProvider | None = None,
    request_id: str | None = None,
) -> SubmissionResult:
    """Submit a workspace generation; credits are charged at submission."""
    settings = get_settings()
    workspace = await workspaces_repo.get_workspace(session, workspace_id, principal_id=principal_id)
    if workspace is None:
        raise NotFoundError(f"Workspace {workspace_id} not found")
    if workspace.status != WORKSPACE_SUCCEEDED or not workspace.model_version:
        raise PreconditionFailedError(f"Workspace {workspace_id} has no trained model yet")

    cost = settings.generation_credit_cost
    decision = await credits.check(session, principal_id, cost)
    decision.raise_for_denial()

    subject_prompt = prompt.strip()
    if refine and llm is not None:
        refined = (await llm.complete(build_instruction(subject_prompt, preset_limit=5))).strip()
        subject_prompt = refined or subject_prompt
    full_prompt = replace_prompt_token(
        f"{subject_prompt}. This a portrait of {workspace.instance_name} @me and not another person.",
        workspace,
    )
    provider_input: dict[str, Any] = {
        "prompt": full_prompt,
        "negative_prompt": settings.shot_negative_prompt,
    }
    if image_url:
        provider_input["image"] = image_url
    if seed is not None:
        provider_input["seed"] = seed

    model_identifier = f"{workspace.provider_model_name}:{workspace.model_version}"
    prediction = await provider.create_prediction(
        model_identifier, provider_input, webhook_url=provider_webhook_url()
    )
    job = await jobs_repo.create_job(
        session,
        principal_id=principal_id,
        kind=JOB_KIND_GENERATION,
        provider_job_id=prediction.id,
        state=_initial_state(prediction.status),
        workspace_id=workspace.id,
        input_json={"prompt": prompt, "seed": seed, "image_url": image_url, "provider_input": provider_input},
    )
    await session.commit()
    job_id = job.id
    logger.info(
        "generation_submitted job_id=%s provider_job_id=%s workspace_id=%s",
        job_id,
        prediction.id,
        workspace_id,
    )

    # Provider work is already committed, so the charge happens now rather than at completion.
    remaining, billing_error = await _charge_after_side_effect(
        session,
        principal_id=principal_id,
        amount=cost,
        resource_type="job",
        resource_id=job_id,
        request_id=request_id,
    )
    refreshed = await jobs_repo.get_job(session, job_id)
    assert refreshed is not None
    return SubmissionResult(
        job=refreshed,
        credits_charged=cost if billing_error is None else 0,
        credits_remaining=remaining,
        billing_error=billing_error,
    )


async def start_training(
    session: AsyncSession,
    provider: InferenceProvider,
    *,
    principal_id: str,
    workspace_id: str,
) -> Workspace:
    """Start fine-tuning once the workspace unlock payment is recorded."""
    settings = get_settings()
    workspace = await workspaces_repo.get_workspace(session, workspace_id, principal_id=principal_id)
    if workspace is None:
        raise NotFoundError(f"Workspace {workspace_id} not found")
    paid = await payments_repo.has_workspace_payment(
        session, workspace_id=workspace.id, purpose=PAYMENT_PURPOSE_WORKSPACE_UNLOCK
    )
    if not paid:
        raise PreconditionFailedError(f"Workspace {workspace_id} payment has not been confirmed")
    if workspace.status != WORKSPACE_NOT_CREATED:
        raise PreconditionFailedError(f"Workspace {workspace_id} training already started")
    if not workspace.images_zip_url:
        raise PreconditionFailedError(f"Workspace {workspace_id} has no training images archive")
    owner = settings.replicate_username
    if not owner:
        raise ProviderConfigError("REPLICATE_USERNAME is required to create workspace models")

    # Reserve the workspace before any provider side effect.
    workspace = await transition_workspace(
        session, workspace, expected=WORKSPACE_NOT_CREATED, target=WORKSPACE_PROCESSING
    )
    await session.commit()

    try:
        model_name = await provider.create_model(owner, workspace.id, description=workspace.name)
        training = await provider.create_training(
            destination=model_name,
            input={
                "trigger_word": settings.training_trigger_word,
                "input_images": workspace.images_zip_url,
            },
            webhook_url=provider_webhook_url(),
        )
    except GenStudioError:
        await transition_workspace(
            session, workspace, expected=WORKSPACE_PROCESSING, target=WORKSPACE_NOT_CREATED
        )
        await session.commit()
        logger.warning("training_submission_failed workspace_id=%s", workspace.id)
        raise

    job = await jobs_repo.create_job(
        session,
        principal_id=principal_id,
        kind=JOB_KIND_TRAINING,
        provider_job_id=training.id,
        state=_initial_state(training.status),
        workspace_id=workspace.id,
        input_json={"destination": model_name, "images_zip_url": workspace.images_zip_url},
    )
    await workspaces_repo.set_training_refs(
        session, workspace.id, training_job_id=job.id, provider_model_name=model_name
    )
    await session.commit()
    logger.info(
        "training_submitted workspace_id=%s job_id=%s provider_job_id=%s",
        workspace.id,
        job.id,
        training.id,
    )
    refreshed = await workspaces_repo.get_workspace(session, workspace.id)
    assert refreshed is not None
    return refreshed


async def submit_upscale(
    session: AsyncSession,
    provider: InferenceProvider,
    *,
    principal_id: str,
    workspace_id: str,
    job_id: str,
) -> tuple[Job, Job]:
    """Start an upscale sub-job for a succeeded generation; returns (parent, upscale job)."""
    settings = get_settings()
    parent = await jobs_repo.get_job(session, job_id, principal_id=principal_id, workspace_id=workspace_id)
    if parent is None or parent.kind != JOB_KIND_GENERATION:
        raise NotFoundError(f"Job {job_id} not found")
    if not settings.upscale_model_version:
        raise ProviderConfigError("UPSCALE_MODEL_VERSION is required for upscaling")

    parent = await reserve_upscale(session, parent)
    await session.commit()

    provider_input = {
        "image": parent.output_url,
        "upscale": 8,
        "face_upsample": True,
        "codeformer_fidelity": 1,
    }
    try:
        prediction = await provider.create_prediction(
            settings.upscale_model_version, provider_input, webhook_url=provider_webhook_url()
        )
    except GenStudioError:
        await transition_upscale(session, parent.id, expected=UPSCALE_PENDING, target=UPSCALE_NO)
        await session.commit()
        logger.warning("upscale_submission_failed job_id=%s", parent.id)
        raise

    upscale_job = await jobs_repo.create_job(
        session,
        principal_id=principal_id,
        kind=JOB_KIND_UPSCALE,
        provider_job_id=prediction.id,
        state=_initial_state(prediction.status),
        workspace_id=workspace_id,
        parent_job_id=parent.id,
        input_json=provider_input,
    )
    await jobs_repo.set_upscale_job_id(session, parent.id, upscale_job.id)
    await session.commit()
    logger.info(
        "upscale_submitted job_id=%s upscale_job_id=%s provider_job_id=%s",
        parent.id,
        upscale_job.id,
        prediction.id,
    )
    refreshed = await jobs_repo.get_job(session, parent.id)
    assert refreshed is not None
    return refreshed, upscale_job
