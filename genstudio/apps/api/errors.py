from __future__ import annotations

import logging
from typing import Any, Mapping

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from genstudio.apps.api.response import error_response
from genstudio.core.errors import (
    AlreadyCompletedError,
    AlreadyInProgressError,
    AuthenticationError,
    BillingError,
    GenStudioError,
    InsufficientCreditsError,
    IntegrationUnavailableError,
    InvalidSignatureError,
    MalformedWebhookError,
    NotFoundError,
    PaymentError,
    PreconditionFailedError,
    PrincipalUnknownError,
    ProviderConfigError,
    ProviderError,
    ProviderRejectedError,
    ProviderUnavailableError,
    StateConflictError,
    StorageError,
    UnrecognizedOutputShapeError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "INSUFFICIENT_CREDITS",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; the first isinstance match wins.
_DOMAIN_ERROR_MAP: tuple[tuple[type[GenStudioError], int, str], ...] = (
    (InsufficientCreditsError, 402, "INSUFFICIENT_CREDITS"),
    (PrincipalUnknownError, 404, "PRINCIPAL_UNKNOWN"),
    (ProviderRejectedError, 422, "PROVIDER_REJECTED"),
    (ProviderUnavailableError, 503, "PROVIDER_UNAVAILABLE"),
    (IntegrationUnavailableError, 503, "INTEGRATION_UNAVAILABLE"),
    (UnrecognizedOutputShapeError, 502, "UNRECOGNIZED_OUTPUT"),
    (ProviderError, 502, "PROVIDER_ERROR"),
    (ProviderConfigError, 500, "PROVIDER_CONFIG_ERROR"),
    (StorageError, 502, "STORAGE_ERROR"),
    (StateConflictError, 409, "STATE_CONFLICT"),
    (AlreadyInProgressError, 409, "ALREADY_IN_PROGRESS"),
    (AlreadyCompletedError, 409, "ALREADY_COMPLETED"),
    (PreconditionFailedError, 409, "PRECONDITION_FAILED"),
    (InvalidSignatureError, 400, "INVALID_SIGNATURE"),
    (MalformedWebhookError, 400, "MALFORMED_WEBHOOK"),
    (PaymentError, 400, "PAYMENT_ERROR"),
    (NotFoundError, 404, "NOT_FOUND"),
    (AuthenticationError, 401, "AUTH_UNAUTHORIZED"),
    (BillingError, 500, "BILLING_ERROR"),
)


def _code_for(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _envelope(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: Mapping[str, str] | None = None,
) -> JSONResponse:
    return JSONResponse(
        content=error_response(request=request, code=code, message=message, details=details),
        status_code=status_code,
        headers=dict(headers) if headers else None,
    )


def classify_domain_error(exc: GenStudioError) -> tuple[int, str, dict[str, Any] | None]:
    status_code, code = next(
        ((status, name) for error_type, status, name in _DOMAIN_ERROR_MAP if isinstance(exc, error_type)),
        (500, "INTERNAL_ERROR"),
    )
    if isinstance(exc, InsufficientCreditsError):
        return status_code, code, {
            "required": exc.required,
            "available": exc.available,
            "credit_type": exc.credit_type,
        }
    if isinstance(exc, StateConflictError):
        return status_code, code, {"entity": exc.entity, "expected": exc.expected, "actual": exc.actual}
    return status_code, code, None


async def _on_domain_error(request: Request, exc: GenStudioError) -> JSONResponse:
    status_code, code, details = classify_domain_error(exc)
    if status_code >= 500:
        logger.error("request_failed path=%s code=%s", request.url.path, code, exc_info=exc)
    # Upstream failures keep their message; other 5xx stay opaque.
    opaque = status_code >= 500 and status_code not in {502, 503}
    return _envelope(
        request,
        status_code,
        code,
        "Internal server error" if opaque else str(exc),
        details,
        {"WWW-Authenticate": "Bearer"} if status_code == 401 else None,
    )


async def _on_http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    # Covers FastAPI's HTTPException and router-level 404/405 alike.
    detail = exc.detail
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in {"code", "message"}}
        return _envelope(
            request,
            exc.status_code,
            str(detail.get("code") or _code_for(exc.status_code)),
            str(detail.get("message") or "Request failed"),
            extra or None,
            exc.headers,
        )
    message = detail if isinstance(detail, str) and detail else "Request failed"
    return _envelope(request, exc.status_code, _code_for(exc.status_code), message, None, exc.headers)


async def _on_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return _envelope(
        request, 422, "REQUEST_VALIDATION_ERROR", "Validation error", {"errors": exc.errors()}
    )


async def _on_unhandled(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("request_unhandled_error path=%s", request.url.path, exc_info=exc)
    return _envelope(request, 500, "INTERNAL_ERROR", "Internal server error")


def install_exception_handlers(app: FastAPI) -> None:
    """Route every failure through the shared error envelope."""
    app.add_exception_handler(GenStudioError, _on_domain_error)  # type: ignore[arg-type]
    app.add_exception_handler(StarletteHTTPException, _on_http_error)  # type: ignore[arg-type]
    app.add_exception_handler(RequestValidationError, _on_validation_error)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _on_unhandled)
