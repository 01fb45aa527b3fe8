from __future__ import annotations

from typing import Any

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
from genstudio.apps.api.response import SuccessEnvelope, get_request_id, success_response
from genstudio.persistence.repos import tool_configs as tool_configs_repo
from genstudio.providers.inference.base import InferenceProvider
from genstudio.providers.storage.base import ObjectStore
from genstudio.services.engine import invoke_tool
from genstudio.services.normalizer import jsonable_output
from genstudio.services.tools import ToolRequest

router = APIRouter(prefix="/tools", tags=["tools"], responses=DEFAULT_ERROR_RESPONSES)


class ToolSummary(BaseModel):
    slug: str
    model_identifier: str
    credit_cost: int
    default_aspect_ratio: str
    default_output_format: str


class ToolInvokeRequest(BaseModel):
    prompt: str = Field(default="", max_length=4000)
    image_url: str | None = None
    aspect_ratio: str | None = None
    output_format: str | None = None
    # Percent strength for image-to-image models (0-100).
    style_strength: float | None = Field(default=None, ge=0, le=100)

    model_config = {"extra": "forbid"}


class ToolInvokeResponse(BaseModel):
    slug: str
    model_identifier: str
    url: str
    artifact_id: str | None
    credits_charged: int
    credits_remaining: int | None
    billing_error: str | None = None
    output: Any = None


@router.get("", response_model=SuccessEnvelope[list[ToolSummary]])
async def list_tools(
    request: Request,
    _principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    configs = await tool_configs_repo.list_tool_configs(db)
    payload = [
        ToolSummary(
            slug=config.slug,
            model_identifier=config.model_identifier,
            credit_cost=config.credit_cost,
            default_aspect_ratio=config.default_aspect_ratio,
            default_output_format=config.default_output_format,
        )
        for config in configs
    ]
    return success_response(request=request, data=payload)


@router.post("/{slug:path}", response_model=SuccessEnvelope[ToolInvokeResponse])
async def run_tool(
    slug: str,
    body: ToolInvokeRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    provider: InferenceProvider = Depends(get_inference),
    store: ObjectStore = Depends(get_store),
) -> dict:
    result = await invoke_tool(
        db,
        provider,
        store,
        principal_id=principal.principal_id,
        slug=slug,
        request=ToolRequest(
            prompt=body.prompt,
            image_url=body.image_url,
            aspect_ratio=body.aspect_ratio,
            output_format=body.output_format,
            style_strength=body.style_strength,
        ),
        request_id=get_request_id(request),
    )
    payload = ToolInvokeResponse(
        slug=result.slug,
        model_identifier=result.model_identifier,
        url=result.url,
        artifact_id=result.artifact.id if result.artifact is not None else None,
        credits_charged=result.credits_charged,
        credits_remaining=result.credits_remaining,
        billing_error=result.billing_error,
        output=jsonable_output(result.raw_output),
    )
    return success_response(request=request, data=payload)
