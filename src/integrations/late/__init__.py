"""Late scheduling gateway integration."""

from src.integrations.late.client import (
    LateClient,
    LateClientError,
    PlatformAccount,
    get_late_client,
)

__all__ = [
    "LateClient",
    "LateClientError",
    "PlatformAccount",
    "get_late_client",
]
