from __future__ import annotations

from typing import AsyncGenerator

from fastapi import HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.config import get_settings
from genstudio.core.errors import AuthenticationError
from genstudio.persistence.db import get_session
from genstudio.providers.inference.base import InferenceProvider
from genstudio.providers.inference.factory import get_inference_provider
from genstudio.providers.llm.base import PromptLLMProvider
from genstudio.providers.llm.factory import get_prompt_llm
from genstudio.providers.payments.base import PaymentProvider
from genstudio.providers.payments.factory import get_payment_provider
from genstudio.providers.storage.base import ObjectStore
from genstudio.providers.storage.factory import get_object_store
from genstudio.services.events import CreditEventBus
from genstudio.services.identity import decode_bearer_token


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; the context manager closes it on success or error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    principal_id: str
    email: str | None = None
    auth_method: str = "bearer"


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal | None:
    # Local development can skip the identity provider with an explicit header.
    principal_id = request.headers.get("X-Principal-Id")
    if not principal_id:
        return None
    return Principal(principal_id=principal_id, auth_method="dev_bypass")


async def get_current_principal(request: Request) -> Principal:
    settings = get_settings()
    token = _parse_bearer_token(request.headers.get("Authorization"))
    if token is not None:
        try:
            claims = decode_bearer_token(token)
        except AuthenticationError as exc:
            raise _auth_error(str(exc)) from exc
        principal = Principal(principal_id=claims.principal_id, email=claims.email)
    elif settings.auth_dev_bypass:
        dev_principal = _principal_from_dev_headers(request)
        if dev_principal is None:
            raise _auth_error("X-Principal-Id header is required in dev bypass mode")
        principal = dev_principal
    else:
        raise _auth_error("Missing or invalid bearer token")
    request.state.principal_id = principal.principal_id
    return principal


def get_inference() -> InferenceProvider:
    return get_inference_provider()


def get_store() -> ObjectStore:
    return get_object_store()


def get_payments() -> PaymentProvider:
    return get_payment_provider()


def get_llm() -> PromptLLMProvider:
    return get_prompt_llm()


def get_credit_events(request: Request) -> CreditEventBus:
    return request.app.state.credit_events

