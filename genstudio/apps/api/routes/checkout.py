from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.apps.api.deps import (
    Principal,
    get_credit_events,
    get_current_principal,
    get_db,
    get_payments,
)
from genstudio.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from genstudio.apps.api.response import SuccessEnvelope, get_request_id, success_response
from genstudio.providers.payments.base import PaymentProvider
from genstudio.services import credits, payments
from genstudio.services.events import CreditEventBus

router = APIRouter(prefix="/checkout", tags=["checkout"], responses=DEFAULT_ERROR_RESPONSES)


class CheckoutConfirmRequest(BaseModel):
    session_id: str = Field(min_length=1, max_length=255)

    model_config = {"extra": "forbid"}


class TopUpConfirmResponse(BaseModel):
    session_id: str
    applied: bool
    general_credits: int
    aux_credits: int


class WorkspaceUnlockResponse(BaseModel):
    session_id: str
    workspace_id: str
    applied: bool
    paid: bool


@router.post("/credits/confirm", response_model=SuccessEnvelope[TopUpConfirmResponse])
async def confirm_credits(
    body: CheckoutConfirmRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
    bus: CreditEventBus = Depends(get_credit_events),
) -> dict:
    outcome = await payments.confirm_top_up(
        db,
        provider,
        principal_id=principal.principal_id,
        session_id=body.session_id,
        bus=bus,
        request_id=get_request_id(request),
    )
    # Repeated confirmations report the current balance without granting again.
    balance = outcome.balance or await credits.get_balance(db, principal.principal_id)
    payload = TopUpConfirmResponse(
        session_id=outcome.session_id,
        applied=outcome.applied,
        general_credits=balance.general_credits,
        aux_credits=balance.aux_credits,
    )
    return success_response(request=request, data=payload)


@router.post("/workspaces/{workspace_id}/confirm", response_model=SuccessEnvelope[WorkspaceUnlockResponse])
async def confirm_workspace(
    workspace_id: str,
    body: CheckoutConfirmRequest,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
    provider: PaymentProvider = Depends(get_payments),
) -> dict:
    outcome = await payments.confirm_workspace_unlock(
        db,
        provider,
        principal_id=principal.principal_id,
        workspace_id=workspace_id,
        session_id=body.session_id,
        request_id=get_request_id(request),
    )
    payload = WorkspaceUnlockResponse(
        session_id=outcome.session_id,
        workspace_id=workspace_id,
        applied=outcome.applied,
        paid=True,
    )
    return success_response(request=request, data=payload)
