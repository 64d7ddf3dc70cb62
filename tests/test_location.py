from __future__ import annotations

import json
from collections.abc import Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine, select
from starlette.websockets import WebSocketDisconnect

from app import main as app_main
from app.domain.models import EventRecord, LocationSample, LocationUpdate, User
from app.infra import audit, db, events, redis_state, signing
from app.tracking.client import OrderTrackingClient
from app.tracking.session_store import TrackingSessionStore
from app.tracking.throttle import LocationThrottle
from app.tracking.tracker import BackgroundLocationWorker, ForegroundTracker

BASE_TS = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)


class FakeRedis:
    def __init__(self) -> None:
        self._store: dict[str, str] = {}

    def set(self, key: str, value: str) -> bool:
        self._store[key] = value
        return True

    def get(self, key: str) -> str | None:
        return self._store.get(key)

    def delete(self, *keys: str) -> int:
        return sum(1 for key in keys if self._store.pop(key, None) is not None)

    def ping(self) -> bool:
        return True


@pytest.fixture()
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture()
def location_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    fake_redis: FakeRedis,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "location_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)

    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    monkeypatch.setattr(redis_state, "get_redis", lambda: fake_redis)
    monkeypatch.setenv("QR_CODE_SECRET", "location-secret")
    monkeypatch.setenv("OBJECT_STORAGE_ROOT", str(tmp_path / "object_storage"))
    signing.get_signer.cache_clear()

    client = TestClient(app_main.app)
    yield client
    client.close()
    signing.get_signer.cache_clear()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _admin_token(client: TestClient, tenant_name: str = "acme") -> tuple[str, str]:
    response = client.post("/api/identity/tenants", json={"name": tenant_name})
    assert response.status_code == 201
    tenant_id = response.json()["id"]
    email = f"admin@{tenant_name}.test"
    bootstrap = client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "email": email, "password": "admin-pass"},
    )
    assert bootstrap.status_code == 201
    login = client.post("/api/identity/login", json={"email": email, "password": "admin-pass"})
    return tenant_id, login.json()["access_token"]


def _create_driver(client: TestClient, admin_token: str, email: str) -> tuple[str, str]:
    response = client.post(
        "/create-driver-account",
        json={"email": email, "password": "driver-pass"},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 200
    login = client.post("/api/identity/login", json={"email": email, "password": "driver-pass"})
    return response.json()["user"]["id"], login.json()["access_token"]


def _create_order(client: TestClient, admin_token: str, driver_id: str) -> str:
    response = client.post(
        "/order_creation",
        json={
            "orderData": {
                "loading_point": {"name": "Depot", "address": "1 Main Rd", "location": "POINT(28.0473 -26.2041)"},
                "unloading_point": {"name": "Store", "address": "7 Long St", "location": "POINT(18.4241 -33.9249)"},
                "assigned_driver_id": driver_id,
            }
        },
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 200
    return response.json()["order"]["id"]


def _sample(minutes: int, latitude: float = -26.2041, longitude: float = 28.0473) -> dict[str, Any]:
    return {
        "latitude": latitude,
        "longitude": longitude,
        "timestamp": (BASE_TS + timedelta(minutes=minutes)).isoformat(),
        "accuracy_m": 5.0,
        "speed_mps": 12.5,
    }


def _post(client: TestClient, token: str, order_id: str, body: dict[str, Any]) -> Any:
    return client.post(f"/api/orders/{order_id}/locations", json=body, headers=_auth_header(token))


def test_record_location_updates_order_driver_and_cache(location_client: TestClient, fake_redis: FakeRedis) -> None:
    tenant_id, admin_token = _admin_token(location_client)
    driver_id, driver_token = _create_driver(location_client, admin_token, "driver@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)

    response = _post(location_client, driver_token, order_id, _sample(0, -26.1, 28.1))
    assert response.status_code == 200
    assert response.json()["location"] == "SRID=4326;POINT(28.1 -26.1)"
    assert response.json()["driver_id"] == driver_id

    order = location_client.get(f"/api/orders/{order_id}", headers=_auth_header(admin_token)).json()
    assert order["last_known_location"] == "SRID=4326;POINT(28.1 -26.1)"
    assert order["last_location_update"] is not None

    driver = location_client.get(f"/api/identity/users/{driver_id}", headers=_auth_header(admin_token)).json()
    assert driver["last_location"] == "SRID=4326;POINT(28.1 -26.1)"

    cached = json.loads(fake_redis.get(redis_state.latest_location_key(tenant_id, order_id)) or "{}")
    assert cached["latitude"] == pytest.approx(-26.1)
    assert cached["driver_id"] == driver_id

    with Session(db.get_engine()) as session:
        published = session.exec(
            select(EventRecord).where(EventRecord.event_type == "order.location_updated")
        ).all()
    assert len(published) == 1


def test_duplicate_timestamp_is_idempotent(location_client: TestClient) -> None:
    _, admin_token = _admin_token(location_client)
    driver_id, driver_token = _create_driver(location_client, admin_token, "driver@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)

    first = _post(location_client, driver_token, order_id, _sample(0))
    second = _post(location_client, driver_token, order_id, _sample(0, -26.5, 28.5))
    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["id"] == first.json()["id"]

    with Session(db.get_engine()) as session:
        rows = session.exec(select(LocationUpdate).where(LocationUpdate.order_id == order_id)).all()
    assert len(rows) == 1


def test_older_sample_does_not_replace_latest(location_client: TestClient, fake_redis: FakeRedis) -> None:
    tenant_id, admin_token = _admin_token(location_client)
    driver_id, driver_token = _create_driver(location_client, admin_token, "driver@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)

    assert _post(location_client, driver_token, order_id, _sample(10, -26.0, 28.0)).status_code == 200
    assert _post(location_client, driver_token, order_id, _sample(5, -25.0, 27.0)).status_code == 200

    order = location_client.get(f"/api/orders/{order_id}", headers=_auth_header(admin_token)).json()
    assert order["last_known_location"] == "SRID=4326;POINT(28.0 -26.0)"

    latest = location_client.get(f"/api/orders/{order_id}/locations/latest", headers=_auth_header(admin_token))
    assert latest.status_code == 200
    assert latest.json()["latitude"] == pytest.approx(-26.0)

    history = location_client.get(f"/api/orders/{order_id}/locations", headers=_auth_header(admin_token))
    assert [item["location"] for item in history.json()] == [
        "SRID=4326;POINT(28.0 -26.0)",
        "SRID=4326;POINT(27.0 -25.0)",
    ]

    limited = location_client.get(f"/api/orders/{order_id}/locations?limit=1", headers=_auth_header(admin_token))
    assert len(limited.json()) == 1

    fake_redis.delete(redis_state.latest_location_key(tenant_id, order_id))
    fallback = location_client.get(f"/api/orders/{order_id}/locations/latest", headers=_auth_header(driver_token))
    assert fallback.status_code == 200
    assert fallback.json()["latitude"] == pytest.approx(-26.0)


def test_latest_location_missing(location_client: TestClient) -> None:
    _, admin_token = _admin_token(location_client)
    driver_id, _ = _create_driver(location_client, admin_token, "driver@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)

    response = location_client.get(f"/api/orders/{order_id}/locations/latest", headers=_auth_header(admin_token))
    assert response.status_code == 404


@pytest.mark.parametrize(("latitude", "longitude"), [(91, 0), (0, 181), (-90.5, 10)])
def test_out_of_range_coordinates_rejected(location_client: TestClient, latitude: float, longitude: float) -> None:
    _, admin_token = _admin_token(location_client)
    driver_id, driver_token = _create_driver(location_client, admin_token, "driver@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)

    response = _post(location_client, driver_token, order_id, _sample(0, latitude, longitude))
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_only_assigned_driver_reports(location_client: TestClient) -> None:
    _, admin_token = _admin_token(location_client)
    driver_id, _ = _create_driver(location_client, admin_token, "driver@acme.test")
    _, other_token = _create_driver(location_client, admin_token, "other@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)

    as_other = _post(location_client, other_token, order_id, _sample(0))
    assert as_other.status_code == 403
    assert as_other.json()["error"] == "not_assigned"

    as_admin = _post(location_client, admin_token, order_id, _sample(0))
    assert as_admin.status_code == 403


def test_terminal_order_rejects_locations(location_client: TestClient) -> None:
    _, admin_token = _admin_token(location_client)
    driver_id, driver_token = _create_driver(location_client, admin_token, "driver@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)
    assert location_client.post(f"/api/orders/{order_id}/cancel", headers=_auth_header(admin_token)).status_code == 200

    response = _post(location_client, driver_token, order_id, _sample(0))
    assert response.status_code == 409


def test_ws_receives_location_and_status(location_client: TestClient) -> None:
    _, admin_token = _admin_token(location_client)
    driver_id, driver_token = _create_driver(location_client, admin_token, "driver@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)

    with location_client.websocket_connect(f"/ws/orders?token={admin_token}") as websocket:
        response = _post(location_client, driver_token, order_id, _sample(0, -26.3, 28.3))
        assert response.status_code == 200
        message = websocket.receive_json()
        assert message["type"] == "location"
        assert message["order_id"] == order_id
        assert message["latitude"] == pytest.approx(-26.3)

        activated = location_client.post(
            "/activate-load",
            json={"order_id": order_id},
            headers=_auth_header(driver_token),
        )
        assert activated.status_code == 200
        status_message = websocket.receive_json()
        assert status_message == {
            "type": "status",
            "order_id": order_id,
            "status": "activated",
            "assigned_driver_id": driver_id,
        }


def test_ws_driver_only_receives_own_orders(location_client: TestClient) -> None:
    _, admin_token = _admin_token(location_client)
    driver_a, token_a = _create_driver(location_client, admin_token, "driver-a@acme.test")
    driver_b, token_b = _create_driver(location_client, admin_token, "driver-b@acme.test")
    order_a = _create_order(location_client, admin_token, driver_a)
    order_b = _create_order(location_client, admin_token, driver_b)

    assert location_client.get(f"/api/orders/{order_a}", headers=_auth_header(token_b)).status_code == 404

    with location_client.websocket_connect(f"/ws/orders?token={token_b}") as websocket:
        assert _post(location_client, token_a, order_a, _sample(0, -26.3, 28.3)).status_code == 200
        assert location_client.post(f"/api/orders/{order_a}/cancel", headers=_auth_header(admin_token)).status_code == 200
        assert _post(location_client, token_b, order_b, _sample(0, -33.9, 18.4)).status_code == 200

        message = websocket.receive_json()
        assert message["type"] == "location"
        assert message["order_id"] == order_b
        assert message["driver_id"] == driver_b


def test_ws_rejects_deactivated_user(location_client: TestClient) -> None:
    _, admin_token = _admin_token(location_client)
    driver_id, driver_token = _create_driver(location_client, admin_token, "driver@acme.test")
    with Session(db.get_engine()) as session:
        driver = session.get(User, driver_id)
        assert driver is not None
        driver.is_active = False
        session.add(driver)
        session.commit()

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with location_client.websocket_connect(f"/ws/orders?token={driver_token}") as websocket:
            websocket.receive_json()
    assert exc_info.value.code == 4401


def test_ws_rejects_missing_token(location_client: TestClient) -> None:
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with location_client.websocket_connect("/ws/orders") as websocket:
            websocket.receive_json()
    assert exc_info.value.code == 4401


def test_background_worker_reports_through_the_api(location_client: TestClient, fake_redis: FakeRedis) -> None:
    _, admin_token = _admin_token(location_client)
    driver_id, _ = _create_driver(location_client, admin_token, "driver@acme.test")
    order_id = _create_order(location_client, admin_token, driver_id)

    api = OrderTrackingClient("", http_client=location_client)
    api.login("driver@acme.test", "driver-pass")

    foreground = ForegroundTracker(TrackingSessionStore("device-1", fake_redis), api)
    foreground.start(order_id)

    # A separate store instance over the same backend, as a background process would have.
    worker = BackgroundLocationWorker(
        TrackingSessionStore("device-1", fake_redis),
        api,
        LocationThrottle(min_interval_seconds=60, min_distance_meters=1000),
    )
    samples = [
        LocationSample(latitude=-26.20, longitude=28.04, ts=BASE_TS + timedelta(minutes=2)),
        LocationSample(latitude=-26.10, longitude=28.04, ts=BASE_TS),
        LocationSample(latitude=-26.10, longitude=28.04, ts=BASE_TS + timedelta(seconds=10)),
        LocationSample(latitude=95.0, longitude=28.04, ts=BASE_TS + timedelta(minutes=1)),
    ]
    assert worker.handle(samples) == 2

    latest = api.latest_location(order_id)
    assert latest["latitude"] == pytest.approx(-26.20)

    foreground.stop()
    assert worker.handle(samples) == 0
