from __future__ import annotations

import logging

from genstudio.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure the root logger once; repeated app factories must not stack handlers.
    global _configured
    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if _configured:
        logging.getLogger().setLevel(level)
        return
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # httpx logs every request at INFO; keep provider polling quiet.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    _configured = True
