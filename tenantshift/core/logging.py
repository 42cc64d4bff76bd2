from __future__ import annotations

import logging

from tenantshift.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process; later calls only adjust the level.
    global _configured
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    if not _configured:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
        # Keep SQL echo and HTTP client chatter out of migration logs.
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
        logging.getLogger("httpx").setLevel(logging.WARNING)
        _configured = True
    logging.getLogger().setLevel(level)
