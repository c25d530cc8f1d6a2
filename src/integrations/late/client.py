"""HTTP client for the Late scheduling gateway (media staging and scheduled posts)."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import httpx

from src.core.config import get_settings


class LateClientError(RuntimeError):
    """Raised when a Late API request fails."""


@dataclass(frozen=True)
class PlatformAccount:
    platform: str
    account_id: str


class LateClient:
    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://getlate.dev/api/v1",
        timezone_name: str = "Pacific/Auckland",
        timeout_seconds: int = 30,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._api_key = api_key.strip()
        self._base_url = base_url.rstrip("/")
        self._timezone_name = timezone_name
        self._timeout_seconds = max(1, timeout_seconds)
        self._client = client

    def _assert_ready(self) -> None:
        if not self._api_key:
            raise LateClientError("late_api_key_missing")

    def _post(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = f"{self._base_url}/{path.lstrip('/')}"
        headers = {"Authorization": f"Bearer {self._api_key}"}
        try:
            if self._client is not None:
                response = self._client.post(url, headers=headers, **kwargs)
            else:
                with httpx.Client(timeout=self._timeout_seconds) as client:
                    response = client.post(url, headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            raise LateClientError(f"late_request_failed path={path}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            detail = response.text.strip()
            if len(detail) > 240:
                detail = detail[:240] + "..."
            raise LateClientError(f"late_request_failed status={response.status_code} detail={detail}")

        try:
            body = response.json()
        except ValueError as exc:
            raise LateClientError("late_invalid_json_response") from exc
        if not isinstance(body, dict):
            raise LateClientError("late_invalid_payload")
        return body

    def upload_media(self, content: bytes, mime_type: str, *, filename: str = "media") -> str:
        """Stage media with Late and return the remote media URL."""

        self._assert_ready()
        if not content:
            raise LateClientError("late_media_empty")

        body = self._post("media", files={"media": (filename, content, mime_type)})
        nested = body.get("media") if isinstance(body.get("media"), dict) else {}
        media_url = body.get("mediaUrl") or body.get("url") or nested.get("url")
        if not media_url:
            raise LateClientError("late_media_url_missing")
        return str(media_url)

    def create_scheduled_job(
        self,
        *,
        media_url: str,
        caption: str,
        account: PlatformAccount,
        when_local: str,
    ) -> str:
        """Create a scheduled post for one platform account and return its remote id."""

        self._assert_ready()
        payload = {
            "content": caption,
            "platforms": [{"platform": account.platform, "accountId": account.account_id}],
            "scheduledFor": when_local,
            "timezone": self._timezone_name,
            "mediaItems": [{"type": "image", "url": media_url}],
        }
        body = self._post("posts", json=payload)
        post = body.get("post") if isinstance(body.get("post"), dict) else {}
        job_id = post.get("_id") or post.get("id") or body.get("_id") or body.get("id")
        if not job_id:
            raise LateClientError("late_post_id_missing")
        return str(job_id)


@lru_cache(maxsize=1)
def get_late_client() -> LateClient:
    settings = get_settings()
    return LateClient(
        api_key=settings.late_api_key,
        base_url=settings.late_api_base_url,
        timezone_name=settings.late_default_timezone,
        timeout_seconds=settings.late_api_timeout_seconds,
    )
