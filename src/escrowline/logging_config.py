from __future__ import annotations

import logging

from escrowline.config import get_settings


_LOG_CONFIGURED = False

_NOISY_LOGGERS = ("sqlalchemy.engine", "urllib3", "multipart", "alembic.runtime.migration")


def configure_logging() -> None:
    """Configure root logging once per process from settings."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED:
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format=f"%(asctime)s %(levelname)s [{settings.app_env}] [%(name)s] %(message)s",
    )
    # money movements stay visible even when the root level is raised
    logging.getLogger("escrowline.core").setLevel(min(level, logging.INFO))
    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
    _LOG_CONFIGURED = True
