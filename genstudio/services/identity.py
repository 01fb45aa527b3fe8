from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Mapping

import jwt
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.config import get_settings
from genstudio.core.errors import (
    AuthenticationError,
    InvalidSignatureError,
    MalformedWebhookError,
    ProviderConfigError,
)
from genstudio.services import credits
from genstudio.services.audit import record_event
from genstudio.services.telemetry import increment_counter
from genstudio.services.webhook_signatures import verify_signed_webhook


logger = logging.getLogger(__name__)

EVENT_USER_CREATED = "user.created"
EVENT_USER_UPDATED = "user.updated"


@dataclass(frozen=True)
class IdentityClaims:
    principal_id: str
    email: str | None = None


def decode_bearer_token(token: str) -> IdentityClaims:
    """Validate an identity-provider token and return the principal it names."""
    settings = get_settings()
    secret = settings.identity_jwt_secret
    if not secret:
        raise ProviderConfigError("IDENTITY_JWT_SECRET is required for bearer authentication")
    audience = settings.identity_jwt_audience
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=audience,
            options={"verify_aud": audience is not None, "require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError("Token has expired") from exc
    except jwt.PyJWTError as exc:
        raise AuthenticationError("Invalid bearer token") from exc
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError("Token has no subject")
    email = claims.get("email")
    return IdentityClaims(principal_id=subject, email=email if isinstance(email, str) else None)


def _primary_email(data: Mapping[str, Any]) -> str | None:
    # User payloads list addresses and point at the primary one by id.
    addresses = data.get("email_addresses") or []
    primary_id = data.get("primary_email_address_id")
    for entry in addresses:
        if isinstance(entry, Mapping) and entry.get("id") == primary_id:
            return entry.get("email_address")
    for entry in addresses:
        if isinstance(entry, Mapping) and entry.get("email_address"):
            return entry["email_address"]
    return None


async def handle_identity_webhook(
    session: AsyncSession,
    *,
    headers: Mapping[str, str],
    body: bytes,
    request_id: str | None = None,
) -> str:
    settings = get_settings()
    try:
        verify_signed_webhook(
            secret=settings.identity_webhook_secret,
            headers=headers,
            body=body,
            tolerance_s=settings.webhook_tolerance_s,
        )
    except InvalidSignatureError as exc:
        increment_counter("webhook_rejections_total")
        logger.warning("identity_webhook_rejected reason=%s", exc)
        await record_event(
            principal_id=None,
            event_type="webhook.identity.rejected",
            outcome="failure",
            request_id=request_id,
            metadata={"reason": str(exc)},
            error_code="invalid_signature",
        )
        raise
    try:
        event = json.loads(body)
    except ValueError as exc:
        raise MalformedWebhookError("Identity webhook body is not valid JSON") from exc

    event_type = event.get("type") if isinstance(event, dict) else None
    data = event.get("data") if isinstance(event, dict) else None
    if event_type not in {EVENT_USER_CREATED, EVENT_USER_UPDATED} or not isinstance(data, dict):
        logger.info("identity_webhook_ignored type=%s", event_type)
        return "ignored"
    principal_id = data.get("id")
    if not principal_id:
        logger.warning("identity_webhook_missing_id type=%s", event_type)
        return "ignored"

    email = _primary_email(data)
    snapshot = await credits.ensure_balance(session, principal_id, email=email)
    if not snapshot.is_new and email:
        await credits.update_email(session, principal_id, email)
    logger.info(
        "identity_event_applied type=%s principal_id=%s new_balance=%s",
        event_type,
        principal_id,
        snapshot.is_new,
    )
    return "created" if snapshot.is_new else "updated"
