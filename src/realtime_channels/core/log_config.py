# src/realtime_channels/core/log_config.py
"""Process-wide logging setup shared by the web process and Celery workers."""

from __future__ import annotations

import logging
import sys

from realtime_channels.core.settings import Settings, settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# Libraries that are noisy at DEBUG.
_QUIET_LOGGERS = ("sqlalchemy.engine", "asyncio", "celery.redirected")


def configure_logging(config: Settings = settings) -> None:
    """Install a single stream handler on the root logger.

    Calling this more than once replaces the previous handler rather than
    stacking duplicates.
    """
    level = logging.DEBUG if config.debug else logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT, stream=sys.stdout, force=True)

    if not config.sql_debug:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(max(level, logging.WARNING))
