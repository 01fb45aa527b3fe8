from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel

from genstudio.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from genstudio.apps.api.response import SuccessEnvelope, success_response
from genstudio.services.resilience import breaker_states
from genstudio.services.telemetry import counters_snapshot, external_call_summary, gauges_snapshot

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str


class HealthDetailsResponse(BaseModel):
    status: str
    counters: dict[str, int]
    gauges: dict[str, float]
    integrations: dict[str, dict[str, Any]]
    breakers: dict[str, str]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request) -> dict:
    return success_response(request=request, data=HealthResponse(status="ok"))


@router.get("/health/details", response_model=SuccessEnvelope[HealthDetailsResponse])
async def health_details(request: Request) -> dict:
    # Process-local view of integration latency and failure counters.
    payload = HealthDetailsResponse(
        status="ok",
        counters=counters_snapshot(),
        gauges=gauges_snapshot(),
        integrations=external_call_summary(),
        breakers=breaker_states(),
    )
    return success_response(request=request, data=payload)
