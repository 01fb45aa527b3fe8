from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.apps.api.deps import (
    Principal,
    get_current_principal,
    get_db,
    get_inference,
    get_store,
)
from genstudio.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from genstudio.apps.api.response import SuccessEnvelope, success_response
from genstudio.core.errors import NotFoundError
from genstudio.domain.models import Workspace
from genstudio.domain.states import PAYMENT_PURPOSE_WORKSPACE_UNLOCK
from genstudio.persistence.repos import payments as payments_repo
from genstudio.persistence.repos import workspaces as workspaces_repo
from genstudio.providers.inference.base import InferenceProvider
from genstudio.providers.storage.base import ObjectStore
from genstudio.services import engine

router = APIRouter(prefix="/workspaces", tags=["workspaces"], responses=DEFAULT_ERROR_RESPONSES)


class WorkspaceCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    instance_name: str = Field(min_length=1, max_length=100)
    # Class noun for the subject, e.g. "man", "woman", "dog".
    instance_class: str = Field(min_length=1, max_length=50)
    image_urls: list[str] = Field(min_length=1, max_length=50)

    model_config = {"extra": "forbid"}


class WorkspaceResponse(BaseModel):
    id: str
    name: str
    instance_name: str
    instance_class: str
    status: str
    paid: bool
    image_urls: list[str]
    model_version: str | None
    created_at: str | None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


async def _to_response(db: AsyncSession, workspace: Workspace) -> WorkspaceResponse:
    paid = await payments_repo.has_workspace_payment(
        db, workspace_id=workspace.id, purpose=PAYMENT_PURPOSE_WORKSPACE_UNLOCK
    )
    return WorkspaceResponse(
        id=workspace.id,
        name=workspace.name,
        instance_name=workspace.instance_name,
        instance_class=workspace.instance_class,
        status=workspace.status,
        paid=paid,
        image_urls=list(workspace.image_urls_json or []),
        model_version=workspace.model_version,
        created_at=_iso(workspace.created_at),
    )


@router.post("", status_code=201, response_model=SuccessEnvelope[WorkspaceResponse])
async def create_workspace(
    body: WorkspaceCreateRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> dict:
    workspace = await engine.create_workspace(
        db,
        store,
        principal_id=principal.principal_id,
        name=body.name,
        instance_name=body.instance_name,
        instance_class=body.instance_class,
        image_urls=body.image_urls,
    )
    return success_response(request=request, data=await _to_response(db, workspace))


@router.get("", response_model=SuccessEnvelope[list[WorkspaceResponse]])
async def list_workspaces(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    workspaces = await workspaces_repo.list_workspaces(db, principal_id=principal.principal_id)
    payload = [await _to_response(db, workspace) for workspace in workspaces]
    return success_response(request=request, data=payload)


@router.get("/{workspace_id}", response_model=SuccessEnvelope[WorkspaceResponse])
async def get_workspace(
    workspace_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    workspace = await workspaces_repo.get_workspace(db, workspace_id, principal_id=principal.principal_id)
    if workspace is None:
        raise NotFoundError(f"Workspace {workspace_id} not found")
    return success_response(request=request, data=await _to_response(db, workspace))


@router.post("/{workspace_id}/train", status_code=202, response_model=SuccessEnvelope[WorkspaceResponse])
async def train_workspace(
    workspace_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    provider: InferenceProvider = Depends(get_inference),
) -> dict:
    workspace = await engine.start_training(
        db,
        provider,
        principal_id=principal.principal_id,
        workspace_id=workspace_id,
    )
    return success_response(request=request, data=await _to_response(db, workspace))
