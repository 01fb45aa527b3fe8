from __future__ import annotations

from typing import Any

from genstudio.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", "BAD_REQUEST", "Bad request"),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "Missing or invalid bearer token"),
    402: _response(
        "Insufficient credits",
        "INSUFFICIENT_CREDITS",
        "Insufficient general credits: need 1, have 0",
        details={"required": 1, "available": 0, "credit_type": "general"},
    ),
    404: _response("Not found", "NOT_FOUND", "Resource not found"),
    409: _response("Conflict", "ALREADY_IN_PROGRESS", "Upscale already in progress for job 3f2a"),
    422: _response("Rejected input", "PROVIDER_REJECTED", "Input flagged as sensitive (E005)"),
    500: _response("Internal server error", "INTERNAL_ERROR", "Internal server error"),
    502: _response("Upstream error", "PROVIDER_ERROR", "Provider request failed"),
    503: _response("Provider unavailable", "PROVIDER_UNAVAILABLE", "Provider timed out"),
}

WEBHOOK_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Signature rejected", "INVALID_SIGNATURE", "Webhook signature mismatch"),
    500: DEFAULT_ERROR_RESPONSES[500],
}
