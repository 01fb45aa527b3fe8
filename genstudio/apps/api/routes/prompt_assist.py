from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.apps.api.deps import Principal, get_current_principal, get_db, get_llm
from genstudio.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from genstudio.apps.api.response import SuccessEnvelope, success_response
from genstudio.providers.llm.base import PromptLLMProvider
from genstudio.services.prompt_assist import assist_prompt

router = APIRouter(prefix="/prompt-assist", tags=["prompt-assist"], responses=DEFAULT_ERROR_RESPONSES)


class PromptAssistRequest(BaseModel):
    keyword: str = Field(min_length=1, max_length=500)

    model_config = {"extra": "forbid"}


class PromptAssistResponse(BaseModel):
    prompt: str
    aux_credits: int


@router.post("", response_model=SuccessEnvelope[PromptAssistResponse])
async def prompt_assist(
    body: PromptAssistRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    llm: PromptLLMProvider = Depends(get_llm),
) -> dict:
    result = await assist_prompt(db, llm, principal_id=principal.principal_id, keyword=body.keyword)
    payload = PromptAssistResponse(prompt=result.prompt, aux_credits=result.aux_credits)
    return success_response(request=request, data=payload)
