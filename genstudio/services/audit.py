from __future__ import annotations

from datetime import datetime, timezone
import logging
import re
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from sqlalchemy.exc import SQLAlchemyError

from genstudio.domain.models import AuditEvent
from genstudio.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SECRET_KEY = re.compile(r"api_key|authorization|token|secret|password|signature", re.IGNORECASE)
REDACTED = "[REDACTED]"


def _strip_query(value: str) -> str:
    # Provider and storage URLs may carry pre-signed credentials in the query string.
    if not value.startswith(("http://", "https://")):
        return value
    parts = urlsplit(value)
    if not parts.query:
        return value
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


def redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {
            str(key): REDACTED if _SECRET_KEY.search(str(key)) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    if isinstance(value, str):
        return _strip_query(value)
    return value


async def record_event(
    *,
    principal_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
) -> None:
    """Append one audit row in its own session.

    Callers invoke this after their own transaction has committed or rolled
    back, so the audit write never holds locks alongside business writes. A
    failed write is logged and swallowed.
    """
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        principal_id=principal_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=redact(metadata or {}),
        error_code=error_code,
    )
    async with SessionLocal() as session:
        session.add(event)
        try:
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.warning(
                "audit_event_write_failed event_type=%s principal_id=%s request_id=%s",
                event_type,
                principal_id,
                request_id,
                exc_info=exc,
            )
