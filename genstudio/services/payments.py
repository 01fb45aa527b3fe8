from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from genstudio.core.config import get_settings
from genstudio.core.errors import InvalidSignatureError, MalformedWebhookError, NotFoundError, PaymentError
from genstudio.domain.states import (
    PAYMENT_PURPOSE_TOP_UP,
    PAYMENT_PURPOSE_WORKSPACE_UNLOCK,
    PAYMENT_PURPOSES,
)
from genstudio.persistence.repos import payments as payments_repo
from genstudio.persistence.repos import workspaces as workspaces_repo
from genstudio.providers.payments.base import CheckoutSession, PaymentProvider
from genstudio.providers.payments.stripe import session_from_payload
from genstudio.services import credits
from genstudio.services.audit import record_event
from genstudio.services.credits import BalanceSnapshot
from genstudio.services.events import CreditEventBus, CreditsChanged
from genstudio.services.telemetry import increment_counter
from genstudio.services.webhook_signatures import verify_payment_signature


logger = logging.getLogger(__name__)

EVENT_SESSION_COMPLETED = "checkout.session.completed"
EVENT_ASYNC_SUCCEEDED = "checkout.session.async_payment_succeeded"
EVENT_ASYNC_FAILED = "checkout.session.async_payment_failed"


@dataclass(frozen=True)
class PaymentOutcome:
    session_id: str
    purpose: str
    principal_id: str
    applied: bool
    workspace_id: str | None = None
    balance: BalanceSnapshot | None = None


def _metadata_amount(metadata: dict[str, str], key: str) -> int:
    raw = metadata.get(key) or "0"
    try:
        amount = int(raw)
    except ValueError as exc:
        raise PaymentError(f"Checkout metadata {key} is not an integer") from exc
    if amount < 0:
        raise PaymentError(f"Checkout metadata {key} must be non-negative")
    return amount


async def apply_checkout_session(
    session: AsyncSession,
    checkout: CheckoutSession,
    *,
    source: str,
    bus: CreditEventBus | None = None,
    expected_principal_id: str | None = None,
    expected_purpose: str | None = None,
    expected_workspace_id: str | None = None,
    request_id: str | None = None,
) -> PaymentOutcome:
    """Record a paid checkout session once and apply its effect.

    The payment row and the credit grant share one transaction; the unique
    (session_id, purpose) key turns a repeated confirmation into a no-op.
    """
    if not checkout.paid:
        raise PaymentError(f"Checkout session {checkout.id} is not paid")
    metadata = checkout.metadata
    principal_id = metadata.get("principal_id")
    if not principal_id:
        raise PaymentError(f"Checkout session {checkout.id} has no principal")
    if expected_principal_id is not None and principal_id != expected_principal_id:
        raise PaymentError(f"Checkout session {checkout.id} belongs to another principal")
    purpose = metadata.get("purpose") or PAYMENT_PURPOSE_TOP_UP
    if purpose not in PAYMENT_PURPOSES:
        raise PaymentError(f"Unknown payment purpose {purpose!r}")
    if expected_purpose is not None and purpose != expected_purpose:
        raise PaymentError(f"Checkout session {checkout.id} is not a {expected_purpose} payment")

    workspace_id = metadata.get("workspace_id") or None
    if purpose == PAYMENT_PURPOSE_WORKSPACE_UNLOCK:
        if not workspace_id:
            raise PaymentError(f"Checkout session {checkout.id} has no workspace")
        if expected_workspace_id is not None and workspace_id != expected_workspace_id:
            raise PaymentError(f"Checkout session {checkout.id} is for another workspace")
        workspace = await workspaces_repo.get_workspace(session, workspace_id, principal_id=principal_id)
        if workspace is None:
            raise NotFoundError(f"Workspace {workspace_id} not found")
    general_credits = _metadata_amount(metadata, "general_credits")
    aux_credits = _metadata_amount(metadata, "aux_credits")

    existing = await payments_repo.get_payment(session, session_id=checkout.id, purpose=purpose)
    if existing is not None:
        increment_counter("payment_duplicates_total")
        logger.info("payment_already_applied session_id=%s purpose=%s source=%s", checkout.id, purpose, source)
        return PaymentOutcome(checkout.id, purpose, principal_id, False, workspace_id)

    snapshot: BalanceSnapshot | None = None
    try:
        await payments_repo.add_payment(
            session,
            session_id=checkout.id,
            purpose=purpose,
            principal_id=principal_id,
            workspace_id=workspace_id,
            general_credits=general_credits,
            aux_credits=aux_credits,
        )
        if purpose == PAYMENT_PURPOSE_TOP_UP:
            snapshot = await credits.grant(
                session, principal_id, general_credits, aux_credits, commit=False
            )
        await session.commit()
    except IntegrityError:
        # A concurrent confirmation recorded the same session first.
        await session.rollback()
        increment_counter("payment_duplicates_total")
        logger.info("payment_apply_race_lost session_id=%s purpose=%s", checkout.id, purpose)
        return PaymentOutcome(checkout.id, purpose, principal_id, False, workspace_id)

    logger.info(
        "payment_applied session_id=%s purpose=%s principal_id=%s general=%s aux=%s source=%s",
        checkout.id,
        purpose,
        principal_id,
        general_credits,
        aux_credits,
        source,
    )
    await record_event(
        principal_id=principal_id,
        event_type="payment.applied",
        outcome="success",
        resource_type="workspace" if workspace_id else "credits",
        resource_id=workspace_id or principal_id,
        request_id=request_id,
        metadata={
            "session_id": checkout.id,
            "purpose": purpose,
            "general_credits": general_credits,
            "aux_credits": aux_credits,
            "source": source,
        },
    )
    if snapshot is not None and bus is not None:
        await bus.publish(
            CreditsChanged(
                principal_id=principal_id,
                general_credits=snapshot.general_credits,
                aux_credits=snapshot.aux_credits,
                reason="payment",
            )
        )
    return PaymentOutcome(checkout.id, purpose, principal_id, True, workspace_id, snapshot)


async def confirm_top_up(
    session: AsyncSession,
    provider: PaymentProvider,
    *,
    principal_id: str,
    session_id: str,
    bus: CreditEventBus | None = None,
    request_id: str | None = None,
) -> PaymentOutcome:
    # The session is always re-fetched; client-supplied amounts are never trusted.
    checkout = await provider.retrieve_checkout_session(session_id)
    return await apply_checkout_session(
        session,
        checkout,
        source="confirm",
        bus=bus,
        expected_principal_id=principal_id,
        expected_purpose=PAYMENT_PURPOSE_TOP_UP,
        request_id=request_id,
    )


async def confirm_workspace_unlock(
    session: AsyncSession,
    provider: PaymentProvider,
    *,
    principal_id: str,
    workspace_id: str,
    session_id: str,
    request_id: str | None = None,
) -> PaymentOutcome:
    checkout = await provider.retrieve_checkout_session(session_id)
    return await apply_checkout_session(
        session,
        checkout,
        source="confirm",
        expected_principal_id=principal_id,
        expected_purpose=PAYMENT_PURPOSE_WORKSPACE_UNLOCK,
        expected_workspace_id=workspace_id,
        request_id=request_id,
    )


async def handle_payment_webhook(
    session: AsyncSession,
    *,
    signature_header: str | None,
    payload: bytes,
    bus: CreditEventBus | None = None,
    request_id: str | None = None,
) -> str:
    """Verify and dispatch a payment processor event; returns the handling outcome."""
    settings = get_settings()
    try:
        verify_payment_signature(
            secret=settings.stripe_webhook_secret,
            header=signature_header,
            payload=payload,
            tolerance_s=settings.webhook_tolerance_s,
        )
    except InvalidSignatureError as exc:
        increment_counter("webhook_rejections_total")
        logger.warning("payment_webhook_rejected reason=%s", exc)
        await record_event(
            principal_id=None,
            event_type="webhook.payments.rejected",
            outcome="failure",
            request_id=request_id,
            metadata={"reason": str(exc)},
            error_code="invalid_signature",
        )
        raise
    try:
        event: Any = json.loads(payload)
    except ValueError as exc:
        raise MalformedWebhookError("Payment webhook body is not valid JSON") from exc

    event_type = event.get("type") if isinstance(event, dict) else None
    data_object = ((event.get("data") or {}).get("object") or {}) if isinstance(event, dict) else {}
    if event_type in {EVENT_SESSION_COMPLETED, EVENT_ASYNC_SUCCEEDED}:
        checkout = session_from_payload(data_object)
        if not checkout.paid:
            # Delayed payment methods complete the session before funds settle.
            logger.info("payment_pending session_id=%s", checkout.id)
            return "pending"
        outcome = await apply_checkout_session(
            session, checkout, source="webhook", bus=bus, request_id=request_id
        )
        return "applied" if outcome.applied else "duplicate"
    if event_type == EVENT_ASYNC_FAILED:
        checkout = session_from_payload(data_object)
        logger.warning("payment_failed session_id=%s", checkout.id)
        await record_event(
            principal_id=checkout.metadata.get("principal_id"),
            event_type="payment.failed",
            outcome="failure",
            resource_type="checkout_session",
            resource_id=checkout.id,
            request_id=request_id,
        )
        return "failed"
    logger.info("payment_webhook_ignored type=%s", event_type)
    return "ignored"
