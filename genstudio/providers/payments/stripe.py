from __future__ import annotations

import logging
from typing import Any

import httpx

from genstudio.core.config import get_settings
from genstudio.core.errors import (
    IntegrationUnavailableError,
    NotFoundError,
    PaymentError,
    ProviderConfigError,
)
from genstudio.providers.payments.base import CheckoutSession
from genstudio.services.resilience import guarded_call


logger = logging.getLogger(__name__)

_INTEGRATION = "payments.stripe"


class _ProcessorError(Exception):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


def _retryable(exc: Exception) -> bool:
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, _ProcessorError))


def session_from_payload(payload: dict[str, Any]) -> CheckoutSession:
    metadata = payload.get("metadata") or {}
    return CheckoutSession(
        id=str(payload.get("id") or ""),
        payment_status=str(payload.get("payment_status") or "unpaid"),
        metadata={str(key): str(value) for key, value in metadata.items()},
    )


class StripePaymentProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        timeout_s = self._settings.ext_call_timeout_ms / 1000.0
        self._client = httpx.AsyncClient(base_url=self._settings.stripe_api_base, timeout=timeout_s)
        return self._client

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSession:
        api_key = self._settings.stripe_api_key
        if not api_key:
            raise ProviderConfigError("STRIPE_API_KEY is required for the stripe payment provider")
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.get(f"/checkout/sessions/{session_id}", auth=(api_key, ""))
            if response.status_code >= 500:
                raise _ProcessorError(response.status_code)
            return response

        try:
            response = await guarded_call(
                _INTEGRATION,
                _call,
                failures=(httpx.HTTPError, _ProcessorError),
                retryable=_retryable,
            )
        except IntegrationUnavailableError as exc:
            raise PaymentError("Payment processor is temporarily unavailable") from exc

        if response.status_code == 404:
            raise NotFoundError(f"Checkout session {session_id} not found")
        if response.status_code in {401, 403}:
            raise ProviderConfigError("Payment processor rejected the API key")
        if response.status_code >= 400:
            logger.warning(
                "stripe_session_fetch_failed session_id=%s status=%s", session_id, response.status_code
            )
            raise PaymentError(f"Payment processor error: {response.status_code}")
        return session_from_payload(response.json())
