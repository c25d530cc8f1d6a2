"""structlog configuration shared by the API, the publishing pipeline and scripts.

Every event carries the service name, the environment and the request scope
(``request_id``, ``client_id``, ``actor_id``) when one is bound. Output is
JSON unless ``LOG_JSON`` is disabled for local development.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

from src.core.config import get_settings


_CONFIGURED = False


def _service_context(app_name: str, env: str):
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        del logger, method_name
        event_dict.setdefault("service", app_name)
        event_dict.setdefault("env", env)
        event_dict.setdefault("request_id", None)
        event_dict.setdefault("client_id", None)
        return event_dict

    return processor


def configure_logging() -> None:
    global _CONFIGURED
    if _CONFIGURED:
        return

    settings = get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")

    renderer = structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            _service_context(settings.app_name, settings.env),
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.PrintLoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


def bind_request_context(
    request_id: str,
    client_id: str | None = None,
    actor_id: str | None = None,
) -> None:
    context: dict[str, Any] = {"request_id": request_id, "client_id": client_id}
    if actor_id:
        context["actor_id"] = actor_id
    structlog.contextvars.bind_contextvars(**context)


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()
