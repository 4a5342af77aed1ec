"""
Logging and error-reporting setup shared by the ops app and the worker.
"""
import logging
import sys
from typing import Optional, Sequence

import sentry_sdk
from pythonjsonlogger import jsonlogger

from .config import Settings, settings as default_settings

TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(settings: Settings = default_settings) -> None:
    """Configure root logging from LOG_LEVEL / LOG_FORMAT."""
    handler = logging.StreamHandler(sys.stdout)
    if settings.LOG_FORMAT == "json":
        handler.setFormatter(
            jsonlogger.JsonFormatter("%(asctime)s %(name)s %(levelname)s %(message)s")
        )
    else:
        handler.setFormatter(logging.Formatter(TEXT_FORMAT))

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        handlers=[handler],
        force=True,
    )


def init_sentry(settings: Settings = default_settings, integrations: Optional[Sequence] = None) -> bool:
    """Initialize Sentry if configured."""
    if not settings.SENTRY_DSN:
        return False
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        integrations=list(integrations or []),
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
    )
    return True
