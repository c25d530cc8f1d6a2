"""FastAPI dependencies for request authentication."""

from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Depends, Header, Request

from src.auth.jwt import AuthContext
from src.auth.middleware import AUTH_CONTEXT_KEY, BEARER_TOKEN_KEY
from src.core.config import get_settings
from src.core.errors import Forbidden, Unauthenticated


def get_optional_auth_context(request: Request) -> Optional[AuthContext]:
    return getattr(request.state, AUTH_CONTEXT_KEY, None)


def get_bearer_token(request: Request) -> Optional[str]:
    return getattr(request.state, BEARER_TOKEN_KEY, None)


def require_auth_context(auth: Optional[AuthContext] = Depends(get_optional_auth_context)) -> AuthContext:
    if auth is None:
        raise Unauthenticated("Authentication required")
    return auth


def require_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> None:
    expected = get_settings().cron_secret
    if not expected:
        raise Forbidden("Internal endpoints are disabled: CRON_SECRET is not configured")
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret, expected):
        raise Forbidden("Invalid cron secret")
