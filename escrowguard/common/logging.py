"""Logging setup shared by the API process and the Celery workers."""

from __future__ import annotations

import logging
import sys

from escrowguard.config import settings

ROOT_LOGGER = "escrowguard"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

_configured = False


def setup_logging(level: str | None = None) -> None:
    global _configured
    root = logging.getLogger(ROOT_LOGGER)
    root.setLevel((level or settings.LOG_LEVEL).upper())
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")
