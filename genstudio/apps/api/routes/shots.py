from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    get_inference,
    get_llm,
    get_store,
)
from genstudio.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from genstudio.apps.api.response import SuccessEnvelope, get_request_id, success_response
from genstudio.core.errors import NotFoundError
from genstudio.domain.models import Job
from genstudio.domain.states import JOB_KIND_GENERATION
from genstudio.persistence.repos import jobs as jobs_repo
from genstudio.persistence.repos import workspaces as workspaces_repo
from genstudio.providers.inference.base import InferenceProvider
from genstudio.providers.llm.base import PromptLLMProvider
from genstudio.providers.storage.base import ObjectStore
from genstudio.services import engine, ingestor

router = APIRouter(prefix="/workspaces/{workspace_id}/shots", tags=["shots"], responses=DEFAULT_ERROR_RESPONSES)


class ShotCreateRequest(BaseModel):
    prompt: str = Field(min_length=1, max_length=4000)
    seed: int | None = Field(default=None, ge=0)
    image_url: str | None = None
    # Rewrite the prompt through prompt assist before submission.
    refine: bool = False

    model_config = {"extra": "forbid"}


class ShotPatchRequest(BaseModel):
    bookmarked: bool

    model_config = {"extra": "forbid"}


class ShotResponse(BaseModel):
    id: str
    workspace_id: str | None
    state: str
    prompt: str | None
    output_url: str | None
    hd_url: str | None
    artifact_id: str | None
    seed: int | None
    bookmarked: bool
    upscale_status: str
    error_message: str | None
    created_at: str | None
    completed_at: str | None


class ShotSubmitResponse(ShotResponse):
    credits_charged: int
    credits_remaining: int | None
    billing_error: str | None = None


class UpscaleResponse(BaseModel):
    job_id: str
    upscale_status: str
    upscale_job_id: str | None
    upscale_state: str | None
    hd_url: str | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _shot_fields(job: Job) -> dict:
    return {
        "id": job.id,
        "workspace_id": job.workspace_id,
        "state": job.state,
        "prompt": (job.input_json or {}).get("prompt"),
        "output_url": job.output_url,
        "hd_url": job.upscale_output_url,
        "artifact_id": job.artifact_id,
        "seed": job.seed,
        "bookmarked": job.bookmarked,
        "upscale_status": job.upscale_status,
        "error_message": job.error_message,
        "created_at": _iso(job.created_at),
        "completed_at": _iso(job.completed_at),
    }


async def _require_shot(db: AsyncSession, principal_id: str, workspace_id: str, job_id: str) -> Job:
    job = await jobs_repo.get_job(db, job_id, principal_id=principal_id, workspace_id=workspace_id)
    if job is None or job.kind != JOB_KIND_GENERATION:
        raise NotFoundError(f"Shot {job_id} not found")
    return job


@router.post("", status_code=202, response_model=SuccessEnvelope[ShotSubmitResponse])
async def create_shot(
    workspace_id: str,
    body: ShotCreateRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    provider: InferenceProvider = Depends(get_inference),
    llm: PromptLLMProvider = Depends(get_llm),
) -> dict:
    result = await engine.submit_generation(
        db,
        provider,
        principal_id=principal.principal_id,
        workspace_id=workspace_id,
        prompt=body.prompt,
        seed=body.seed,
        image_url=body.image_url,
        refine=body.refine,
        llm=llm if body.refine else None,
        request_id=get_request_id(request),
    )
    payload = ShotSubmitResponse(
        **_shot_fields(result.job),
        credits_charged=result.credits_charged,
        credits_remaining=result.credits_remaining,
        billing_error=result.billing_error,
    )
    return success_response(request=request, data=payload)


@router.get("", response_model=SuccessEnvelope[list[ShotResponse]])
async def list_shots(
    workspace_id: str,
    request: Request,
    limit: int = Query(default=50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    workspace = await workspaces_repo.get_workspace(db, workspace_id, principal_id=principal.principal_id)
    if workspace is None:
        raise NotFoundError(f"Workspace {workspace_id} not found")
    jobs = await jobs_repo.list_workspace_jobs(
        db, workspace_id=workspace_id, kind=JOB_KIND_GENERATION, limit=limit
    )
    payload = [ShotResponse(**_shot_fields(job)) for job in jobs]
    return success_response(request=request, data=payload, limit=limit)


@router.get("/{job_id}", response_model=SuccessEnvelope[ShotResponse])
async def poll_shot(
    workspace_id: str,
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    provider: InferenceProvider = Depends(get_inference),
    store: ObjectStore = Depends(get_store),
) -> dict:
    await _require_shot(db, principal.principal_id, workspace_id, job_id)
    job = await ingestor.poll_job(
        db,
        provider,
        store,
        principal_id=principal.principal_id,
        job_id=job_id,
        workspace_id=workspace_id,
    )
    return success_response(request=request, data=ShotResponse(**_shot_fields(job)))


@router.patch("/{job_id}", response_model=SuccessEnvelope[ShotResponse])
async def patch_shot(
    workspace_id: str,
    job_id: str,
    body: ShotPatchRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    job = await _require_shot(db, principal.principal_id, workspace_id, job_id)
    await jobs_repo.set_bookmark(db, job.id, body.bookmarked)
    await db.commit()
    refreshed = await _require_shot(db, principal.principal_id, workspace_id, job_id)
    return success_response(request=request, data=ShotResponse(**_shot_fields(refreshed)))


def _upscale_payload(parent: Job, upscale_job: Job | None) -> UpscaleResponse:
    return UpscaleResponse(
        job_id=parent.id,
        upscale_status=parent.upscale_status,
        upscale_job_id=parent.upscale_job_id,
        upscale_state=upscale_job.state if upscale_job is not None else None,
        hd_url=parent.upscale_output_url,
    )


@router.post("/{job_id}/upscale", status_code=202, response_model=SuccessEnvelope[UpscaleResponse])
async def create_upscale(
    workspace_id: str,
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    provider: InferenceProvider = Depends(get_inference),
) -> dict:
    parent, upscale_job = await engine.submit_upscale(
        db,
        provider,
        principal_id=principal.principal_id,
        workspace_id=workspace_id,
        job_id=job_id,
    )
    return success_response(request=request, data=_upscale_payload(parent, upscale_job))


@router.get("/{job_id}/upscale", response_model=SuccessEnvelope[UpscaleResponse])
async def poll_upscale(
    workspace_id: str,
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    provider: InferenceProvider = Depends(get_inference),
    store: ObjectStore = Depends(get_store),
) -> dict:
    parent = await _require_shot(db, principal.principal_id, workspace_id, job_id)
    upscale_job: Job | None = None
    if parent.upscale_job_id:
        upscale_job = await ingestor.poll_job(
            db,
            provider,
            store,
            principal_id=principal.principal_id,
            job_id=parent.upscale_job_id,
        )
        parent = await _require_shot(db, principal.principal_id, workspace_id, job_id)
    return success_response(request=request, data=_upscale_payload(parent, upscale_job))
