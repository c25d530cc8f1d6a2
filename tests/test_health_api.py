from fastapi.testclient import TestClient

import src.api.main as api_main


def _stub_services(monkeypatch, *, db=(True, None), redis=(True, None)) -> TestClient:
    monkeypatch.setattr(api_main, "test_db_connection", lambda: db)
    monkeypatch.setattr(api_main, "test_redis_connection", lambda: redis)
    return TestClient(api_main.app)


def test_health_reports_ok_with_guard_enabled(monkeypatch) -> None:
    client = _stub_services(monkeypatch)

    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["publish_run_guard"] == "enabled"
    assert payload["services"]["database"]["ok"] is True


def test_health_stays_up_without_redis_but_disables_the_run_guard(monkeypatch) -> None:
    client = _stub_services(monkeypatch, redis=(False, "connection refused"))

    response = client.get("/health")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "degraded"
    assert payload["publish_run_guard"] == "disabled"
    assert payload["services"]["redis"]["error"] == "connection refused"


def test_health_returns_503_when_database_is_down(monkeypatch) -> None:
    client = _stub_services(monkeypatch, db=(False, "db unavailable"))

    response = client.get("/health")

    assert response.status_code == 503
    payload = response.json()
    assert payload["status"] == "unavailable"
    assert payload["services"]["database"]["error"] == "db unavailable"


def test_version_reports_service_name() -> None:
    response = TestClient(api_main.app).get("/version")

    assert response.status_code == 200
    assert response.json()["name"] == "postpilot"


def test_request_id_header_is_echoed_and_generated(monkeypatch) -> None:
    client = _stub_services(monkeypatch)

    echoed = client.get("/health", headers={"x-request-id": "req-123", "x-client-id": "client-9"})
    generated = client.get("/health")

    assert echoed.headers["x-request-id"] == "req-123"
    assert generated.headers["x-request-id"]
    assert generated.headers["x-request-id"] != "req-123"
