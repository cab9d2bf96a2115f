"""structlog setup shared by the API and the payment providers."""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from .config import APP_VERSION, SERVICE_NAME
from .settings import settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "aiosqlite")


def get_request_id() -> str:
    return request_id_ctx.get()


def add_request_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    request_id = request_id_ctx.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.update(
        service=SERVICE_NAME,
        environment=settings.SENTRY_ENVIRONMENT,
        version=APP_VERSION,
    )
    return event_dict


def _renderer(json_logs: bool) -> list[Processor]:
    if json_logs:
        return [
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(),
        ]
    return [
        structlog.processors.TimeStamper(fmt="%H:%M:%S"),
        structlog.dev.ConsoleRenderer(),
    ]


def configure_structlog(json_logs: bool = True) -> None:
    """Route structlog through stdlib logging; JSON lines unless `json_logs` is off."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            add_request_id,
            add_app_context,
            *_renderer(json_logs),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=logging.INFO)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = ["configure_structlog", "get_logger", "get_request_id", "request_id_ctx"]
