from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.apps.api.deps import Principal, get_current_principal, get_db, get_store
from genstudio.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from genstudio.apps.api.response import SuccessEnvelope, success_response
from genstudio.domain.models import Artifact
from genstudio.persistence.repos import artifacts as artifacts_repo
from genstudio.providers.storage.base import ObjectStore
from genstudio.services import artifacts

router = APIRouter(prefix="/artifacts", tags=["artifacts"], responses=DEFAULT_ERROR_RESPONSES)


class ArtifactCreateRequest(BaseModel):
    url: str = Field(min_length=1, max_length=2048)
    source_tag: str = Field(default="upload", max_length=200)
    prompt: str | None = Field(default=None, max_length=4000)

    model_config = {"extra": "forbid"}


class ArtifactResponse(BaseModel):
    id: str
    url: str
    original_url: str
    hd_url: str | None
    source_tag: str
    prompt: str | None
    job_id: str | None
    created_at: str | None


def _to_response(artifact: Artifact) -> ArtifactResponse:
    return ArtifactResponse(
        id=artifact.id,
        url=artifact.url,
        original_url=artifact.original_url,
        hd_url=artifact.hd_url,
        source_tag=artifact.source_tag,
        prompt=artifact.prompt,
        job_id=artifact.job_id,
        created_at=artifact.created_at.isoformat() if artifact.created_at else None,
    )


@router.get("", response_model=SuccessEnvelope[list[ArtifactResponse]])
async def list_artifacts(
    request: Request,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rows = await artifacts_repo.list_artifacts(
        db, principal_id=principal.principal_id, offset=offset, limit=limit
    )
    payload = [_to_response(row) for row in rows]
    return success_response(request=request, data=payload, offset=offset, limit=limit)


@router.post("", status_code=201, response_model=SuccessEnvelope[ArtifactResponse])
async def save_artifact(
    body: ArtifactCreateRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> dict:
    artifact = await artifacts.persist(
        db,
        store,
        principal_id=principal.principal_id,
        url=body.url,
        source_tag=body.source_tag,
        prompt=body.prompt,
    )
    return success_response(request=request, data=_to_response(artifact))


@router.delete("/{artifact_id}", status_code=204)
async def delete_artifact(
    artifact_id: str,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> Response:
    await artifacts.delete(db, store, principal_id=principal.principal_id, artifact_id=artifact_id)
    return Response(status_code=204)
