from types import SimpleNamespace

from src.core import observability


def _settings(dsn: str, *, env: str = "production", traces: float = 0.0) -> SimpleNamespace:
    return SimpleNamespace(
        sentry_dsn=dsn,
        env=env,
        app_name="postpilot",
        app_version="0.1.0",
        sentry_traces_sample_rate=traces,
    )


def test_init_sentry_skips_when_dsn_missing(monkeypatch) -> None:
    observability.reset_observability_for_tests()

    called = {"count": 0}

    def fake_init(**kwargs):  # noqa: ARG001
        called["count"] += 1

    monkeypatch.setattr(observability.sentry_sdk, "init", fake_init)
    monkeypatch.setattr(observability, "get_settings", lambda: _settings("", env="development"))

    assert observability.init_sentry() is False
    assert called["count"] == 0
    observability.reset_observability_for_tests()


def test_init_sentry_initializes_once(monkeypatch) -> None:
    observability.reset_observability_for_tests()

    calls = []

    def fake_init(**kwargs):
        calls.append(kwargs)

    monkeypatch.setattr(observability, "FastApiIntegration", lambda: object())
    monkeypatch.setattr(observability.sentry_sdk, "init", fake_init)
    monkeypatch.setattr(
        observability,
        "get_settings",
        lambda: _settings("https://abc@example.ingest.sentry.io/1", traces=0.2),
    )

    assert observability.init_sentry() is True
    assert observability.init_sentry() is True
    assert len(calls) == 1
    assert calls[0]["dsn"] == "https://abc@example.ingest.sentry.io/1"
    assert calls[0]["environment"] == "production"
    assert calls[0]["traces_sample_rate"] == 0.2
    assert calls[0]["release"] == "postpilot@0.1.0"
    observability.reset_observability_for_tests()


def test_capture_exception_is_noop_until_initialized(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    captured = []
    monkeypatch.setattr(observability.sentry_sdk, "capture_exception", captured.append)

    observability.capture_exception(RuntimeError("boom"))

    assert captured == []


def test_sentry_scope_accepts_request_tags() -> None:
    with observability.sentry_scope(client_id="client-1", request_id="req-1", post_id=None):
        pass


def test_capture_exception_tags_publish_identifiers(monkeypatch) -> None:
    observability.reset_observability_for_tests()
    monkeypatch.setattr(observability, "_SENTRY_INITIALIZED", True)
    tags = {}
    captured = []

    class _Scope:
        def set_tag(self, key, value):
            tags[key] = value

        def set_context(self, name, payload):
            tags["_context"] = (name, payload)

    class _ScopeManager:
        def __enter__(self):
            return _Scope()

        def __exit__(self, *exc_info):
            return False

    monkeypatch.setattr(observability.sentry_sdk, "new_scope", lambda: _ScopeManager())
    monkeypatch.setattr(observability.sentry_sdk, "capture_exception", captured.append)
    error = RuntimeError("persist failed")

    observability.capture_exception(error, post_id="post-1", account_id="ig-1", remote_job_id=None)

    assert captured == [error]
    assert tags["post_id"] == "post-1"
    assert tags["account_id"] == "ig-1"
    assert "remote_job_id" not in tags
    observability.reset_observability_for_tests()
