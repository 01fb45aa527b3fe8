from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import time
from typing import Callable, Mapping

from genstudio.core.errors import InvalidSignatureError


def _now() -> float:
    return time.time()


def _check_timestamp(raw: str | None, *, tolerance_s: int, now: Callable[[], float]) -> int:
    if not raw:
        raise InvalidSignatureError("Missing webhook timestamp")
    try:
        timestamp = int(raw)
    except ValueError as exc:
        raise InvalidSignatureError("Malformed webhook timestamp") from exc
    if abs(now() - timestamp) > tolerance_s:
        raise InvalidSignatureError("Webhook timestamp outside tolerance")
    return timestamp


def _decode_signing_secret(secret: str) -> bytes:
    # Signed-webhook secrets are "whsec_" followed by base64 key material.
    material = secret[len("whsec_"):] if secret.startswith("whsec_") else secret
    try:
        return base64.b64decode(material, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidSignatureError("Webhook signing secret is not valid base64") from exc


def build_signed_webhook_signature(secret: str, msg_id: str, timestamp: int, body: bytes) -> str:
    key = _decode_signing_secret(secret)
    signed = f"{msg_id}.{timestamp}.".encode("utf-8") + body
    digest = hmac.new(key, signed, hashlib.sha256).digest()
    return "v1," + base64.b64encode(digest).decode("ascii")


def verify_signed_webhook(
    *,
    secret: str | None,
    headers: Mapping[str, str],
    body: bytes,
    tolerance_s: int = 300,
    now: Callable[[], float] = _now,
) -> None:
    """Verify a signed-webhook envelope (id, timestamp, space-separated v1 signatures).

    Used by the identity and inference providers; accepts both the ``webhook-*``
    and the ``svix-*`` header spellings.
    """
    if not secret:
        raise InvalidSignatureError("Webhook signing secret is not configured")
    msg_id = headers.get("webhook-id") or headers.get("svix-id")
    raw_timestamp = headers.get("webhook-timestamp") or headers.get("svix-timestamp")
    raw_signatures = headers.get("webhook-signature") or headers.get("svix-signature")
    if not msg_id or not raw_signatures:
        raise InvalidSignatureError("Missing webhook signature headers")
    timestamp = _check_timestamp(raw_timestamp, tolerance_s=tolerance_s, now=now)
    expected = build_signed_webhook_signature(secret, msg_id, timestamp, body)
    for candidate in raw_signatures.split():
        if hmac.compare_digest(expected, candidate.strip()):
            return
    raise InvalidSignatureError("Webhook signature mismatch")


def build_payment_signature(secret: str, timestamp: int, payload: bytes) -> str:
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_payment_signature(
    *,
    secret: str | None,
    header: str | None,
    payload: bytes,
    tolerance_s: int = 300,
    now: Callable[[], float] = _now,
) -> None:
    # Payment processor header format: "t=<unix>,v1=<hex>[,v1=<hex>...]".
    if not secret:
        raise InvalidSignatureError("Payment webhook secret is not configured")
    if not header:
        raise InvalidSignatureError("No signature provided")
    timestamp_raw: str | None = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp_raw = value
        elif key == "v1":
            signatures.append(value)
    timestamp = _check_timestamp(timestamp_raw, tolerance_s=tolerance_s, now=now)
    if not signatures:
        raise InvalidSignatureError("No v1 signature in header")
    expected = build_payment_signature(secret, timestamp, payload).split("v1=", 1)[1]
    if not any(hmac.compare_digest(expected, candidate) for candidate in signatures):
        raise InvalidSignatureError("Payment webhook signature mismatch")
