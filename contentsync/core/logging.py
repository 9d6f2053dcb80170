from __future__ import annotations

import logging

from contentsync.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Configure root logging once per process so API, worker, and scripts share one format.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    if _configured:
        logging.getLogger().setLevel(resolved)
        return
    logging.basicConfig(level=resolved, format=_LOG_FORMAT)
    # Keep driver chatter out of job logs unless explicitly debugging.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("arq").setLevel(logging.INFO)
    _configured = True
