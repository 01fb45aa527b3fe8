from __future__ import annotations

from typing import Any


class GenStudioError(Exception):
    """Base error for genstudio."""


class InsufficientCreditsError(GenStudioError):
    """Balance is below the amount required for the operation."""

    def __init__(self, required: int, available: int, *, credit_type: str = "general") -> None:
        super().__init__(
            f"Insufficient {credit_type} credits: need {required}, have {available}"
        )
        self.required = required
        self.available = available
        self.credit_type = credit_type


class PrincipalUnknownError(GenStudioError):
    """No credit balance exists and lazy creation was not requested."""


class ProviderError(GenStudioError):
    """Inference provider failure that is neither a rejection nor transient."""


class ProviderRejectedError(ProviderError):
    """Provider refused the input (content policy or validation)."""


class ProviderUnavailableError(ProviderError):
    """Provider timed out or is unreachable; safe to retry the invocation."""


class ProviderConfigError(GenStudioError):
    """Missing or invalid provider configuration."""


class UnrecognizedOutputShapeError(GenStudioError):
    """Provider output did not match any known shape."""

    def __init__(self, raw: Any) -> None:
        self.raw_repr = _safe_repr(raw)
        super().__init__(f"Unrecognized provider output shape: {self.raw_repr}")


class StateConflictError(GenStudioError):
    """Stored state no longer matches the expected prior state."""

    def __init__(self, entity: str, entity_id: str, expected: str, actual: str | None) -> None:
        super().__init__(
            f"{entity} {entity_id} expected state {expected!r} but found {actual!r}"
        )
        self.entity = entity
        self.entity_id = entity_id
        self.expected = expected
        self.actual = actual


class AlreadyInProgressError(GenStudioError):
    """A sub-job of this kind is already running."""


class AlreadyCompletedError(GenStudioError):
    """A sub-job of this kind has already completed."""


class InvalidSignatureError(GenStudioError):
    """Webhook signature verification failed."""


class MalformedWebhookError(GenStudioError):
    """A correctly signed webhook body could not be decoded."""


class PreconditionFailedError(GenStudioError):
    """The target entity is not in a state that allows the operation."""


class NotFoundError(GenStudioError):
    """Entity not found for this principal."""


class StorageError(GenStudioError):
    """Object storage read/write failure."""


class BillingError(GenStudioError):
    """Credit deduction failed after a provider side effect was committed."""


class PaymentError(GenStudioError):
    """Checkout session missing, unpaid, or not owned by the caller."""


class AuthenticationError(GenStudioError):
    """Bearer token missing, malformed, expired, or signed with the wrong key."""


class IntegrationUnavailableError(GenStudioError):
    """Circuit breaker is open for an external integration."""


def _safe_repr(raw: Any, limit: int = 512) -> str:
    # Keep diagnostics bounded so large payloads do not flood logs.
    try:
        text = repr(raw)
    except Exception:  # noqa: BLE001 - repr of foreign objects can fail
        text = f"<unrepresentable {type(raw).__name__}>"
    if len(text) > limit:
        return text[:limit] + "..."
    return text
