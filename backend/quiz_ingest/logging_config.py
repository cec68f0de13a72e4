"""JSON logging for the API process and the Celery workers."""
from __future__ import annotations

import logging
import sys
from typing import TextIO

from pythonjsonlogger.json import JsonFormatter

from quiz_ingest.config import settings

SERVICE_NAME = "quiz-ingest"

# Library loggers and the level they are held at outside development.
_LIBRARY_LEVELS = {
    "uvicorn.access": logging.WARNING,
    "celery": logging.INFO,
    "kombu": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


class ServiceContextFilter(logging.Filter):
    """Stamps every record with the service name and the emitting component."""

    def __init__(self, component: str):
        super().__init__()
        self.component = component

    def filter(self, record: logging.LogRecord) -> bool:
        record.service = SERVICE_NAME
        record.component = self.component
        return True


def setup_logging(component: str = "api", *, level: str | None = None, stream: TextIO | None = None) -> None:
    """Replace root handlers with a single JSON handler.

    ``component`` distinguishes API lines from worker lines in a shared sink.
    Contextual fields passed via ``extra=`` are emitted as top-level keys.
    """
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        JsonFormatter(
            fmt="%(asctime)s %(levelname)s %(name)s %(service)s %(component)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
        )
    )
    handler.addFilter(ServiceContextFilter(component))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel((level or settings.APP_LOG_LEVEL).upper())

    for name, lib_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(lib_level)
    # SQL echo only while developing locally
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.APP_ENV == "development" else logging.WARNING
    )
