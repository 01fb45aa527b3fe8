from __future__ import annotations

import pytest

from genstudio.apps.api.errors import classify_domain_error
from genstudio.core.errors import (
    AlreadyCompletedError,
    AlreadyInProgressError,
    GenStudioError,
    InsufficientCreditsError,
    InvalidSignatureError,
    MalformedWebhookError,
    NotFoundError,
    ProviderRejectedError,
    ProviderUnavailableError,
    StateConflictError,
    UnrecognizedOutputShapeError,
)


@pytest.mark.parametrize(
    ("error", "status_code", "code"),
    [
        (ProviderRejectedError("nsfw"), 422, "PROVIDER_REJECTED"),
        (ProviderUnavailableError("timeout"), 503, "PROVIDER_UNAVAILABLE"),
        (UnrecognizedOutputShapeError(42), 502, "UNRECOGNIZED_OUTPUT"),
        (AlreadyInProgressError("busy"), 409, "ALREADY_IN_PROGRESS"),
        (AlreadyCompletedError("done"), 409, "ALREADY_COMPLETED"),
        (InvalidSignatureError("bad"), 400, "INVALID_SIGNATURE"),
        (MalformedWebhookError("not json"), 400, "MALFORMED_WEBHOOK"),
        (NotFoundError("missing"), 404, "NOT_FOUND"),
        (GenStudioError("other"), 500, "INTERNAL_ERROR"),
    ],
)
def test_domain_errors_map_to_status_and_code(error, status_code, code) -> None:
    assert classify_domain_error(error)[:2] == (status_code, code)


def test_insufficient_credits_carries_amounts() -> None:
    status_code, code, details = classify_domain_error(InsufficientCreditsError(2, 1))
    assert (status_code, code) == (402, "INSUFFICIENT_CREDITS")
    assert details == {"required": 2, "available": 1, "credit_type": "general"}


def test_state_conflict_carries_states() -> None:
    _, code, details = classify_domain_error(StateConflictError("job", "j1", "starting", "succeeded"))
    assert code == "STATE_CONFLICT"
    assert details == {"entity": "job", "expected": "starting", "actual": "succeeded"}
