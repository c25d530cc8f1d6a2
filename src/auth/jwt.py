"""Bearer tokens identifying the acting user.

Tokens are minted by the identity provider that fronts the dashboard and share
``SECRET_KEY`` with this service. ``create_access_token`` exists for operator
scripts and tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import jwt

from src.core.config import get_settings
from src.core.errors import Unauthenticated


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str


def create_access_token(context: AuthContext, *, now: datetime | None = None) -> tuple[str, int]:
    settings = get_settings()
    expires_in = settings.access_token_exp_minutes * 60
    issued_at = now or datetime.now(timezone.utc)
    claims = {
        "sub": context.user_id,
        "email": context.email,
        "iat": int(issued_at.timestamp()),
        "exp": int((issued_at + timedelta(seconds=expires_in)).timestamp()),
    }
    return jwt.encode(claims, settings.secret_key, algorithm=settings.jwt_algorithm), expires_in


def decode_access_token(token: str) -> AuthContext:
    settings = get_settings()
    try:
        claims = jwt.decode(
            token,
            settings.secret_key,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise Unauthenticated("Token expired", details={"reason": "expired"}) from exc
    except jwt.PyJWTError as exc:
        raise Unauthenticated("Invalid token", details={"reason": "invalid"}) from exc

    subject = str(claims["sub"]).strip()
    if not subject:
        raise Unauthenticated("Invalid token", details={"reason": "missing_subject"})
    return AuthContext(user_id=subject, email=str(claims.get("email") or ""))
