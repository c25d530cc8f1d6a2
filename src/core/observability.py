"""Sentry wiring for the API and the publishing pipeline."""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from src.core.config import get_settings
from src.core.logger import get_logger


_SENTRY_INITIALIZED = False


def init_sentry() -> bool:
    """Initialize Sentry once; returns False when no DSN is configured."""

    global _SENTRY_INITIALIZED
    if _SENTRY_INITIALIZED:
        return True

    settings = get_settings()
    dsn = settings.sentry_dsn.strip()
    if not dsn:
        return False

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.env,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        send_default_pii=False,
        integrations=[FastApiIntegration()],
    )
    _SENTRY_INITIALIZED = True
    get_logger("postpilot.observability").info(
        "sentry_initialized",
        env=settings.env,
        traces_sample_rate=settings.sentry_traces_sample_rate,
    )
    return True


def _tag_scope(scope, tags: dict[str, Optional[str]]) -> None:
    present = {key: str(value) for key, value in tags.items() if value}
    for key, value in present.items():
        scope.set_tag(key, value)
    if present:
        scope.set_context("postpilot", present)


@contextmanager
def sentry_scope(**tags: Optional[str]) -> Iterator[None]:
    """Isolated scope tagged with request identifiers (request_id, client_id, ...)."""

    with sentry_sdk.new_scope() as scope:
        _tag_scope(scope, tags)
        yield


def capture_exception(exc: BaseException, **tags: Optional[str]) -> None:
    """Report an unexpected failure, tagged with post/account identifiers when given."""

    if not _SENTRY_INITIALIZED:
        return
    with sentry_sdk.new_scope() as scope:
        _tag_scope(scope, tags)
        sentry_sdk.capture_exception(exc)


def reset_observability_for_tests() -> None:
    global _SENTRY_INITIALIZED
    _SENTRY_INITIALIZED = False
