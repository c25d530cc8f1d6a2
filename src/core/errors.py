"""Domain error taxonomy shared by lifecycle, editing, publishing and quota code."""

from __future__ import annotations

from typing import Any, Dict, Optional


class PostPilotError(RuntimeError):
    """Base class for errors surfaced to callers with structured details."""

    code = "error"
    http_status = 500

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: Dict[str, Any] = dict(details or {})

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.code, "message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(PostPilotError):
    code = "validation_error"
    http_status = 400


class Unauthenticated(PostPilotError):
    code = "unauthenticated"
    http_status = 401


class Forbidden(PostPilotError):
    code = "forbidden"
    http_status = 403


class NotFound(PostPilotError):
    code = "not_found"
    http_status = 404


class Conflict(PostPilotError):
    code = "conflict"
    http_status = 409


class InvalidState(Conflict):
    """Raised when an operation is not allowed for the post's current status."""

    code = "invalid_state"


class QuotaExceeded(PostPilotError):
    code = "quota_exceeded"
    http_status = 402


class SubscriptionInactive(PostPilotError):
    code = "subscription_inactive"
    http_status = 403


class UpstreamError(PostPilotError):
    """Raised when a platform gateway or remote media call fails."""

    code = "upstream_error"
    http_status = 502
