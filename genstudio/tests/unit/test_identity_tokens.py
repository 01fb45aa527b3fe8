from __future__ import annotations

from datetime import datetime, timedelta, timezone

import jwt
import pytest

from genstudio.core.config import get_settings
from genstudio.core.errors import AuthenticationError
from genstudio.services.identity import _primary_email, decode_bearer_token


def _token(claims: dict, *, secret: str | None = None) -> str:
    return jwt.encode(claims, secret or get_settings().identity_jwt_secret, algorithm="HS256")


def _exp(delta: timedelta) -> datetime:
    return datetime.now(timezone.utc) + delta


def test_decode_returns_subject_and_email() -> None:
    claims = decode_bearer_token(_token({"sub": "user_1", "email": "a@b.test", "exp": _exp(timedelta(minutes=5))}))
    assert claims.principal_id == "user_1"
    assert claims.email == "a@b.test"


def test_expired_token_is_rejected() -> None:
    with pytest.raises(AuthenticationError, match="expired"):
        decode_bearer_token(_token({"sub": "user_1", "exp": _exp(timedelta(minutes=-5))}))


def test_wrong_key_is_rejected() -> None:
    token = _token({"sub": "user_1", "exp": _exp(timedelta(minutes=5))}, secret="another-secret-of-sufficient-size")
    with pytest.raises(AuthenticationError):
        decode_bearer_token(token)


def test_subject_and_expiry_are_required() -> None:
    with pytest.raises(AuthenticationError):
        decode_bearer_token(_token({"exp": _exp(timedelta(minutes=5))}))
    with pytest.raises(AuthenticationError):
        decode_bearer_token(_token({"sub": "user_1"}))


def test_primary_email_prefers_flagged_address() -> None:
    data = {
        "primary_email_address_id": "e2",
        "email_addresses": [
            {"id": "e1", "email_address": "old@example.com"},
            {"id": "e2", "email_address": "new@example.com"},
        ],
    }
    assert _primary_email(data) == "new@example.com"
    assert _primary_email({"email_addresses": [{"id": "x", "email_address": "only@example.com"}]}) == "only@example.com"
    assert _primary_email({}) is None
