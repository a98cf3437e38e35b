"""Logging setup for the export service.

Modules log through ``logging.getLogger(__name__)``; this module wires the
root handler once, at application start.
"""

import logging
import logging.config

from datalayer_export.core import config

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(settings: config.Settings | None = None) -> None:
    """Install a single stream handler on the root logger.

    Args:
        settings: Settings providing ``log_level``. Defaults to the cached
            application settings.
    """
    settings = settings or config.get_settings()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                },
            },
            "root": {
                "handlers": ["console"],
                "level": settings.log_level.upper(),
            },
            "loggers": {
                "httpx": {"level": "WARNING"},
            },
        }
    )
