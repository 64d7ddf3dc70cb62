from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from app import main as app_main
from app.infra import signing


def test_healthz_ok() -> None:
    client = TestClient(app_main.app)
    response = client.get("/healthz")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_readyz_ok_when_dependencies_ready(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app_main, "check_db_ready", lambda: True)
    monkeypatch.setattr(app_main, "check_redis_ready", lambda: True)
    client = TestClient(app_main.app)
    response = client.get("/readyz")
    assert response.status_code == 200
    assert response.json() == {"status": "ready", "checks": {"db": "ok", "redis": "ok"}}


def test_readyz_fails_when_redis_down(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app_main, "check_db_ready", lambda: True)
    monkeypatch.setattr(app_main, "check_redis_ready", lambda: False)
    client = TestClient(app_main.app)
    response = client.get("/readyz")
    assert response.status_code == 503
    assert response.json()["detail"]["checks"]["redis"] == "fail"


def test_cors_preflight_on_function_endpoint() -> None:
    client = TestClient(app_main.app)
    response = client.options(
        "/validate-qr-code",
        headers={
            "Origin": "https://dashboard.example",
            "Access-Control-Request-Method": "POST",
            "Access-Control-Request-Headers": "authorization, content-type, x-client-info, apikey",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"


def test_startup_resolves_signing_secret(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QR_CODE_SECRET", "startup-secret")
    signing.get_signer.cache_clear()
    try:
        with TestClient(app_main.app) as client:
            assert client.get("/healthz").status_code == 200
            assert signing.get_signer.cache_info().currsize == 1
    finally:
        signing.get_signer.cache_clear()
