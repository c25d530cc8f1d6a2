from fastapi.testclient import TestClient

import src.api.main as api_main
from src.core.metrics import (
    record_editing_lock_conflict,
    record_publish_outcome,
    record_quota_block,
    record_usage_failure,
    render_prometheus_metrics,
    reset_metrics_for_tests,
)


def test_metrics_endpoint_exposes_http_counters(monkeypatch) -> None:
    reset_metrics_for_tests()
    monkeypatch.setattr(api_main.settings, "metrics_enabled", True)

    client = TestClient(api_main.app)
    assert client.get("/version").status_code == 200

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    body = response.text
    assert "postpilot_build_info" in body
    assert 'postpilot_http_requests_total{method="GET",path="/version",status="200"} 1' in body
    assert "postpilot_http_request_duration_seconds_sum" in body


def test_domain_counters_are_rendered_with_labels() -> None:
    reset_metrics_for_tests()
    record_publish_outcome(platform="instagram", status="succeeded", count=2)
    record_publish_outcome(platform="instagram", status="failed")
    record_publish_outcome(platform="instagram", status="failed", count=0)
    record_editing_lock_conflict(operation="acquire")
    record_quota_block(kind="posts", reason="limit_reached")
    record_usage_failure(kind="")

    body = render_prometheus_metrics(app_name="postpilot", app_version="0.1.0", env="test")

    assert 'postpilot_publish_outcomes_total{platform="instagram",status="succeeded"} 2' in body
    assert 'postpilot_publish_outcomes_total{platform="instagram",status="failed"} 1' in body
    assert 'postpilot_editing_lock_conflicts_total{operation="acquire"} 1' in body
    assert 'postpilot_quota_blocks_total{kind="posts",reason="limit_reached"} 1' in body
    assert 'postpilot_usage_record_failures_total{kind="unknown"} 1' in body


def test_metrics_endpoint_disabled_returns_404(monkeypatch) -> None:
    monkeypatch.setattr(api_main.settings, "metrics_enabled", False)

    response = TestClient(api_main.app).get("/metrics")

    assert response.status_code == 404
