from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

import httpx

from genstudio.core.config import get_settings
from genstudio.core.errors import (
    IntegrationUnavailableError,
    ProviderConfigError,
    ProviderUnavailableError,
)
from genstudio.domain.states import JOB_FAILED, JOB_SUCCEEDED, PROVIDER_STATUS_MAP
from genstudio.providers.inference.base import (
    ModelRef,
    Prediction,
    classify_failure,
    prediction_from_payload,
)
from genstudio.services.resilience import RetryPolicy, guarded_call


logger = logging.getLogger(__name__)

_INTEGRATION = "inference.replicate"


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status == 429 or status >= 500)


def _retryable_submit(exc: Exception) -> bool:
    # A POST that reached the provider may already have started a paid job; resend only when it never arrived.
    if isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout)):
        return True
    return getattr(exc, "status_code", None) == 429


class _StatusError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReplicateInferenceProvider:
    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._settings = get_settings()
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        timeout_s = max(self._settings.ext_call_timeout_ms / 1000.0, self._settings.replicate_sync_wait_s + 5)
        self._client = httpx.AsyncClient(base_url=self._settings.replicate_api_base, timeout=timeout_s)
        return self._client

    def _headers(self, *, wait: bool = False) -> dict[str, str]:
        token = self._settings.replicate_api_token
        if not token:
            raise ProviderConfigError("REPLICATE_API_TOKEN is required for the replicate provider")
        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        if wait:
            headers["Prefer"] = f"wait={self._settings.replicate_sync_wait_s}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        wait: bool = False,
        allow_status: frozenset[int] = frozenset(),
    ) -> httpx.Response:
        headers = self._headers(wait=wait)
        client = self._get_client()

        async def _call() -> httpx.Response:
            response = await client.request(method, path, json=json, headers=headers)
            if response.status_code == 429 or response.status_code >= 500:
                raise _StatusError(response.status_code, response.text[:200])
            return response

        # Sync waits can legitimately hold the connection open for the full wait window.
        policy = None
        if wait:
            policy = RetryPolicy(
                timeout_ms=(self._settings.replicate_sync_wait_s + 5) * 1000,
                max_attempts=self._settings.ext_retry_max_attempts,
                backoff_ms=self._settings.ext_retry_backoff_ms,
            )
        try:
            response = await guarded_call(
                _INTEGRATION,
                _call,
                failures=(httpx.HTTPError, _StatusError),
                retryable=_retryable if method == "GET" else _retryable_submit,
                policy=policy,
            )
        except IntegrationUnavailableError as exc:
            logger.warning("replicate_request_failed method=%s path=%s", method, path)
            raise ProviderUnavailableError("Inference provider is unavailable") from exc
        if response.status_code >= 400 and response.status_code not in allow_status:
            raise classify_failure(_error_detail(response), status_code=response.status_code)
        return response

    async def run(self, model_identifier: str, input: dict[str, Any]) -> Any:
        ref = ModelRef.parse(model_identifier)
        if ref.version:
            response = await self._request(
                "POST", "/predictions", json={"version": ref.version, "input": input}, wait=True
            )
        else:
            response = await self._request(
                "POST", f"/models/{ref.full_name}/predictions", json={"input": input}, wait=True
            )
        prediction = prediction_from_payload(response.json())
        deadline = time.monotonic() + self._settings.inference_timeout_s
        # Fall back to polling when the provider releases the request before completion.
        while PROVIDER_STATUS_MAP.get(prediction.status) not in {JOB_SUCCEEDED, JOB_FAILED}:
            if time.monotonic() >= deadline:
                raise ProviderUnavailableError(
                    f"Prediction {prediction.id} did not finish within {self._settings.inference_timeout_s}s"
                )
            await asyncio.sleep(self._settings.inference_poll_interval_s)
            prediction = await self.get_prediction(prediction.id)
        if PROVIDER_STATUS_MAP[prediction.status] == JOB_FAILED:
            raise classify_failure(prediction.error or f"Prediction {prediction.status}")
        return prediction.output

    async def create_prediction(
        self,
        model_identifier: str,
        input: dict[str, Any],
        *,
        webhook_url: str | None = None,
    ) -> Prediction:
        ref = ModelRef.parse(model_identifier)
        body: dict[str, Any] = {"input": input}
        if webhook_url:
            body["webhook"] = webhook_url
            body["webhook_events_filter"] = ["completed"]
        if ref.version:
            body["version"] = ref.version
            response = await self._request("POST", "/predictions", json=body)
        else:
            response = await self._request("POST", f"/models/{ref.full_name}/predictions", json=body)
        return prediction_from_payload(response.json())

    async def get_prediction(self, prediction_id: str) -> Prediction:
        response = await self._request("GET", f"/predictions/{prediction_id}")
        return prediction_from_payload(response.json())

    async def create_model(self, owner: str, name: str, *, description: str | None = None) -> str:
        body = {
            "owner": owner,
            "name": name,
            "visibility": "private",
            "hardware": self._settings.training_hardware,
            "description": description or name,
        }
        # 409 means the model container already exists from an earlier attempt.
        await self._request("POST", "/models", json=body, allow_status=frozenset({409}))
        return f"{owner}/{name}"

    async def create_training(
        self,
        *,
        destination: str,
        input: dict[str, Any],
        webhook_url: str | None = None,
    ) -> Prediction:
        settings = self._settings
        body: dict[str, Any] = {"destination": destination, "input": input}
        if webhook_url:
            body["webhook"] = webhook_url
            body["webhook_events_filter"] = ["completed"]
        path = (
            f"/models/{settings.trainer_owner}/{settings.trainer_name}"
            f"/versions/{settings.trainer_version}/trainings"
        )
        response = await self._request("POST", path, json=body)
        return prediction_from_payload(response.json())

    async def get_training(self, training_id: str) -> Prediction:
        response = await self._request("GET", f"/trainings/{training_id}")
        return prediction_from_payload(response.json())

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _error_detail(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(payload, dict):
        return str(payload.get("detail") or payload.get("title") or payload)[:500]
    return str(payload)[:500]

