from __future__ import annotations

import json

import httpx
import pytest

from src.integrations.late.client import LateClient, LateClientError, PlatformAccount


ACCOUNT = PlatformAccount(platform="instagram", account_id="acct-ig-1")


def _client(handler) -> LateClient:
    return LateClient(
        api_key="late-test-key",
        base_url="https://late.example/api/v1/",
        timezone_name="Pacific/Auckland",
        client=httpx.Client(transport=httpx.MockTransport(handler)),
    )


def test_upload_media_posts_multipart_and_returns_url() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["content_type"] = request.headers.get("content-type", "")
        return httpx.Response(200, json={"media": {"url": "https://cdn.late.example/m/1.png"}})

    media_url = _client(handler).upload_media(b"png-bytes", "image/png", filename="photo.png")

    assert media_url == "https://cdn.late.example/m/1.png"
    assert seen["url"] == "https://late.example/api/v1/media"
    assert seen["auth"] == "Bearer late-test-key"
    assert str(seen["content_type"]).startswith("multipart/form-data")


def test_create_scheduled_job_sends_local_time_and_timezone() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(201, json={"post": {"_id": "late-post-42"}})

    job_id = _client(handler).create_scheduled_job(
        media_url="https://cdn.late.example/m/1.png",
        caption="Flat whites all day",
        account=ACCOUNT,
        when_local="2026-11-03T08:15:00",
    )

    assert job_id == "late-post-42"
    assert captured["content"] == "Flat whites all day"
    assert captured["scheduledFor"] == "2026-11-03T08:15:00"
    assert captured["timezone"] == "Pacific/Auckland"
    assert captured["platforms"] == [{"platform": "instagram", "accountId": "acct-ig-1"}]
    assert captured["mediaItems"] == [{"type": "image", "url": "https://cdn.late.example/m/1.png"}]


def test_non_success_status_raises_client_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream busy")

    with pytest.raises(LateClientError, match="status=503"):
        _client(handler).create_scheduled_job(
            media_url="https://cdn.late.example/m/1.png",
            caption="hello",
            account=ACCOUNT,
            when_local="2026-11-03T08:15:00",
        )


def test_missing_identifiers_raise_client_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"ok": True})

    client = _client(handler)
    with pytest.raises(LateClientError, match="late_media_url_missing"):
        client.upload_media(b"bytes", "image/png")
    with pytest.raises(LateClientError, match="late_post_id_missing"):
        client.create_scheduled_job(media_url="u", caption="c", account=ACCOUNT, when_local="2026-11-03T08:15:00")


def test_transport_errors_and_missing_key_raise_client_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(LateClientError, match="late_request_failed"):
        _client(handler).upload_media(b"bytes", "image/png")

    keyless = LateClient(api_key=" ", client=httpx.Client(transport=httpx.MockTransport(handler)))
    with pytest.raises(LateClientError, match="late_api_key_missing"):
        keyless.upload_media(b"bytes", "image/png")
