from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.apps.api.deps import get_credit_events, get_db, get_store
from genstudio.apps.api.openapi import WEBHOOK_ERROR_RESPONSES
from genstudio.apps.api.response import SuccessEnvelope, get_request_id, success_response
from genstudio.providers.storage.base import ObjectStore
from genstudio.services import identity, ingestor, payments
from genstudio.services.events import CreditEventBus

# Webhooks authenticate by signature, not by bearer token.
router = APIRouter(prefix="/webhooks", tags=["webhooks"], responses=WEBHOOK_ERROR_RESPONSES)


class WebhookAck(BaseModel):
    status: str
    job_id: str | None = None


@router.post("/provider", response_model=SuccessEnvelope[WebhookAck])
async def provider_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    store: ObjectStore = Depends(get_store),
) -> dict:
    body = await request.body()
    result = await ingestor.ingest_webhook(
        db,
        store,
        headers=request.headers,
        body=body,
        request_id=get_request_id(request),
    )
    if result.job_id is None:
        status = "unknown_job"
    else:
        status = "applied" if result.applied else "duplicate"
    return success_response(request=request, data=WebhookAck(status=status, job_id=result.job_id))


@router.post("/payments", response_model=SuccessEnvelope[WebhookAck])
async def payments_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    bus: CreditEventBus = Depends(get_credit_events),
) -> dict:
    body = await request.body()
    status = await payments.handle_payment_webhook(
        db,
        signature_header=request.headers.get("Stripe-Signature"),
        payload=body,
        bus=bus,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=WebhookAck(status=status))


@router.post("/identity", response_model=SuccessEnvelope[WebhookAck])
async def identity_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await request.body()
    status = await identity.handle_identity_webhook(
        db,
        headers=request.headers,
        body=body,
        request_id=get_request_id(request),
    )
    return success_response(request=request, data=WebhookAck(status=status))
