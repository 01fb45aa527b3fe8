from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.apps.api.deps import Principal, get_current_principal, get_db
from genstudio.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from genstudio.apps.api.response import SuccessEnvelope, success_response
from genstudio.services import credits

router = APIRouter(prefix="/credits", tags=["credits"], responses=DEFAULT_ERROR_RESPONSES)


class CreditBalanceResponse(BaseModel):
    principal_id: str
    general_credits: int
    aux_credits: int
    # True only on the request that materialized the balance with the welcome grant.
    is_new: bool


@router.get("", response_model=SuccessEnvelope[CreditBalanceResponse])
async def get_credits(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await credits.ensure_balance(db, principal.principal_id, email=principal.email)
    payload = CreditBalanceResponse(
        principal_id=snapshot.principal_id,
        general_credits=snapshot.general_credits,
        aux_credits=snapshot.aux_credits,
        is_new=snapshot.is_new,
    )
    return success_response(request=request, data=payload)
