"""Resolve a post's media reference into raw bytes ready for gateway staging."""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import mimetypes
from typing import Optional
from urllib.parse import urlparse

import httpx

from src.core.config import get_settings


class MediaLoadError(RuntimeError):
    """Raised when a media reference cannot be turned into bytes."""


@dataclass(frozen=True)
class LoadedMedia:
    content: bytes
    mime_type: str
    filename: str


def _decode_data_uri(reference: str) -> LoadedMedia:
    header, _, encoded = reference.partition(",")
    if not encoded:
        raise MediaLoadError("media_data_uri_empty")
    meta = header[len("data:"):]
    mime_type = meta.split(";", 1)[0] or "application/octet-stream"
    try:
        if ";base64" in meta:
            content = base64.b64decode(encoded, validate=True)
        else:
            content = encoded.encode("utf-8")
    except (binascii.Error, ValueError) as exc:
        raise MediaLoadError("media_data_uri_invalid") from exc
    extension = mimetypes.guess_extension(mime_type) or ""
    return LoadedMedia(content=content, mime_type=mime_type, filename=f"media{extension}")


def _fetch_remote(reference: str, *, timeout_seconds: int, client: Optional[httpx.Client]) -> LoadedMedia:
    try:
        if client is not None:
            response = client.get(reference)
        else:
            with httpx.Client(timeout=timeout_seconds, follow_redirects=True) as http_client:
                response = http_client.get(reference)
    except httpx.HTTPError as exc:
        raise MediaLoadError("media_fetch_failed") from exc

    if response.status_code < 200 or response.status_code >= 300:
        raise MediaLoadError(f"media_fetch_failed status={response.status_code}")

    path = urlparse(reference).path
    filename = path.rsplit("/", 1)[-1] or "media"
    header_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
    mime_type = header_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
    return LoadedMedia(content=response.content, mime_type=mime_type, filename=filename)


def load_media(
    reference: Optional[str],
    *,
    client: Optional[httpx.Client] = None,
    max_bytes: Optional[int] = None,
) -> LoadedMedia:
    settings = get_settings()
    value = (reference or "").strip()
    if not value:
        raise MediaLoadError("media_reference_missing")

    scheme = value.split(":", 1)[0].lower() if ":" in value else ""
    if scheme == "data":
        media = _decode_data_uri(value)
    elif scheme in ("http", "https"):
        media = _fetch_remote(value, timeout_seconds=settings.media_fetch_timeout_seconds, client=client)
    elif scheme == "blob":
        # browser-local object URLs never reach the server
        raise MediaLoadError("media_blob_reference_unsupported")
    else:
        raise MediaLoadError(f"media_reference_scheme_unsupported scheme={scheme or 'none'}")

    limit = max_bytes if max_bytes is not None else settings.media_max_bytes
    if not media.content:
        raise MediaLoadError("media_empty")
    if len(media.content) > limit:
        raise MediaLoadError(f"media_too_large bytes={len(media.content)} limit={limit}")
    return media
