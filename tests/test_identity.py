from __future__ import annotations

from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import AuditLog
from app.infra import audit, db, events


@pytest.fixture()
def identity_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "identity_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _create_tenant(client: TestClient, name: str) -> str:
    response = client.post("/api/identity/tenants", json={"name": name})
    assert response.status_code == 201
    return response.json()["id"]


def _bootstrap_admin(client: TestClient, tenant_id: str, email: str, password: str) -> None:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "email": email, "password": password},
    )
    assert response.status_code == 201


def _login(client: TestClient, email: str, password: str) -> str:
    response = client.post("/api/identity/login", json={"email": email, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def _admin(client: TestClient, tenant_name: str = "acme") -> tuple[str, str]:
    tenant_id = _create_tenant(client, tenant_name)
    _bootstrap_admin(client, tenant_id, f"admin@{tenant_name}.test", "admin-pass")
    return tenant_id, _login(client, f"admin@{tenant_name}.test", "admin-pass")


def _latest_audit(tenant_id: str, action: str, *, method: str) -> AuditLog:
    with Session(db.get_engine(), expire_on_commit=False) as session:
        statement = (
            select(AuditLog)
            .where(AuditLog.tenant_id == tenant_id)
            .where(AuditLog.action == action)
            .where(AuditLog.method == method)
        )
        rows = list(session.exec(statement).all())
    assert rows
    return rows[-1]


def test_tenant_bootstrap_and_login(identity_client: TestClient) -> None:
    tenant_id = _create_tenant(identity_client, "acme")
    _bootstrap_admin(identity_client, tenant_id, "Admin@Acme.test", "admin-pass")

    response = identity_client.post(
        "/api/identity/login",
        json={"email": "admin@acme.test", "password": "admin-pass"},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["role"] == "admin"
    assert body["permissions"] == ["*"]

    me = identity_client.get("/api/identity/me", headers=_auth_header(body["access_token"]))
    assert me.status_code == 200
    assert me.json()["email"] == "admin@acme.test"
    assert me.json()["tenant_id"] == tenant_id

    current = identity_client.get("/api/identity/tenants/current", headers=_auth_header(body["access_token"]))
    assert current.json()["name"] == "acme"


def test_bootstrap_only_once_and_for_known_tenant(identity_client: TestClient) -> None:
    tenant_id = _create_tenant(identity_client, "acme")
    _bootstrap_admin(identity_client, tenant_id, "admin@acme.test", "admin-pass")

    again = identity_client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": tenant_id, "email": "second@acme.test", "password": "admin-pass"},
    )
    assert again.status_code == 409

    unknown = identity_client.post(
        "/api/identity/bootstrap-admin",
        json={"tenant_id": "missing", "email": "x@acme.test", "password": "admin-pass"},
    )
    assert unknown.status_code == 404


def test_duplicate_tenant_name_conflicts(identity_client: TestClient) -> None:
    _create_tenant(identity_client, "acme")
    response = identity_client.post("/api/identity/tenants", json={"name": "acme"})
    assert response.status_code == 409


def test_login_rejects_bad_credentials(identity_client: TestClient) -> None:
    _admin(identity_client)
    wrong_password = identity_client.post(
        "/api/identity/login",
        json={"email": "admin@acme.test", "password": "nope-nope"},
    )
    assert wrong_password.status_code == 401
    assert wrong_password.json()["error"] == "unauthorized"

    unknown = identity_client.post(
        "/api/identity/login",
        json={"email": "ghost@acme.test", "password": "admin-pass"},
    )
    assert unknown.status_code == 401


def test_create_driver_account_with_generated_password(identity_client: TestClient) -> None:
    tenant_id, admin_token = _admin(identity_client)

    response = identity_client.post(
        "/create-driver-account",
        json={"email": " Driver@Acme.test ", "full_name": " Dee Driver ", "phone": "+27820000000"},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["user"]["email"] == "driver@acme.test"
    assert body["user"]["full_name"] == "Dee Driver"
    assert body["user"]["role"] == "driver"
    assert body["user"]["password_reset_required"] is True
    temporary_password = body["temporary_password"]
    assert len(temporary_password) >= 8

    login = identity_client.post(
        "/api/identity/login",
        json={"email": "driver@acme.test", "password": temporary_password},
    )
    assert login.status_code == 200
    assert login.json()["role"] == "driver"
    assert "orders.write" not in login.json()["permissions"]

    event_row = _latest_audit(tenant_id, "DRIVER_ACCOUNT_CREATED", method="EVENT")
    assert event_row.detail["generated_password"] is True
    request_row = _latest_audit(tenant_id, "DRIVER_ACCOUNT_CREATED", method="POST")
    assert request_row.status_code == 200
    assert temporary_password not in str(request_row.detail)


def test_create_driver_account_with_given_password(identity_client: TestClient) -> None:
    _, admin_token = _admin(identity_client)
    response = identity_client.post(
        "/create-driver-account",
        json={"email": "driver@acme.test", "password": "driver-pass"},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 200
    assert response.json()["temporary_password"] is None
    assert response.json()["user"]["password_reset_required"] is False
    _login(identity_client, "driver@acme.test", "driver-pass")


@pytest.mark.parametrize(
    ("payload", "status_code"),
    [
        ({"email": "not-an-email", "password": "driver-pass"}, 400),
        ({"email": "short@acme.test", "password": "short"}, 400),
        ({"password": "driver-pass"}, 400),
    ],
)
def test_create_driver_account_validation(
    identity_client: TestClient,
    payload: dict[str, str],
    status_code: int,
) -> None:
    _, admin_token = _admin(identity_client)
    response = identity_client.post("/create-driver-account", json=payload, headers=_auth_header(admin_token))
    assert response.status_code == status_code
    assert response.json()["error"] == "validation_error"


def test_create_driver_account_conflicts_and_permissions(identity_client: TestClient) -> None:
    _, admin_token = _admin(identity_client)
    payload = {"email": "driver@acme.test", "password": "driver-pass"}
    assert identity_client.post("/create-driver-account", json=payload, headers=_auth_header(admin_token)).status_code == 200

    duplicate = identity_client.post("/create-driver-account", json=payload, headers=_auth_header(admin_token))
    assert duplicate.status_code == 409

    driver_token = _login(identity_client, "driver@acme.test", "driver-pass")
    as_driver = identity_client.post(
        "/create-driver-account",
        json={"email": "another@acme.test"},
        headers=_auth_header(driver_token),
    )
    assert as_driver.status_code == 403

    anonymous = identity_client.post("/create-driver-account", json={"email": "another@acme.test"})
    assert anonymous.status_code == 401


def test_reset_driver_password(identity_client: TestClient) -> None:
    tenant_id, admin_token = _admin(identity_client)
    created = identity_client.post(
        "/create-driver-account",
        json={"email": "driver@acme.test", "password": "driver-pass"},
        headers=_auth_header(admin_token),
    )
    driver_id = created.json()["user"]["id"]

    response = identity_client.post(
        "/reset-driver-password",
        json={"driver_id": driver_id, "email": "DRIVER@acme.test"},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["driver_id"] == driver_id
    assert body["password_reset_required"] is True

    old_login = identity_client.post(
        "/api/identity/login",
        json={"email": "driver@acme.test", "password": "driver-pass"},
    )
    assert old_login.status_code == 401
    _login(identity_client, "driver@acme.test", body["temporary_password"])

    row = _latest_audit(tenant_id, "DRIVER_PASSWORD_RESET", method="EVENT")
    assert row.detail == {"driver_id": driver_id}


def test_reset_driver_password_rejections(identity_client: TestClient) -> None:
    _, admin_a = _admin(identity_client, "tenant-a")
    _, admin_b = _admin(identity_client, "tenant-b")
    created = identity_client.post(
        "/create-driver-account",
        json={"email": "driver@tenant-a.test", "password": "driver-pass"},
        headers=_auth_header(admin_a),
    )
    driver_id = created.json()["user"]["id"]

    mismatch = identity_client.post(
        "/reset-driver-password",
        json={"driver_id": driver_id, "email": "someone@tenant-a.test"},
        headers=_auth_header(admin_a),
    )
    assert mismatch.status_code == 400

    unknown = identity_client.post(
        "/reset-driver-password",
        json={"driver_id": "missing", "email": "driver@tenant-a.test"},
        headers=_auth_header(admin_a),
    )
    assert unknown.status_code == 404

    cross_tenant = identity_client.post(
        "/reset-driver-password",
        json={"driver_id": driver_id, "email": "driver@tenant-a.test"},
        headers=_auth_header(admin_b),
    )
    assert cross_tenant.status_code == 404

    missing_field = identity_client.post(
        "/reset-driver-password",
        json={"driver_id": driver_id},
        headers=_auth_header(admin_a),
    )
    assert missing_field.status_code == 400

    _login(identity_client, "driver@tenant-a.test", "driver-pass")


def test_dispatcher_cannot_create_admin(identity_client: TestClient) -> None:
    _, admin_token = _admin(identity_client)
    created = identity_client.post(
        "/api/identity/users",
        json={"email": "dispatch@acme.test", "password": "dispatch-pass", "role": "dispatcher"},
        headers=_auth_header(admin_token),
    )
    assert created.status_code == 201
    dispatcher_token = _login(identity_client, "dispatch@acme.test", "dispatch-pass")

    response = identity_client.post(
        "/api/identity/users",
        json={"email": "boss@acme.test", "password": "boss-pass-1", "role": "admin"},
        headers=_auth_header(dispatcher_token),
    )
    assert response.status_code == 403

    drivers = identity_client.post(
        "/create-driver-account",
        json={"email": "driver@acme.test", "password": "driver-pass"},
        headers=_auth_header(dispatcher_token),
    )
    assert drivers.status_code == 200

    listed = identity_client.get("/api/identity/users?role=driver", headers=_auth_header(dispatcher_token))
    assert [user["email"] for user in listed.json()] == ["driver@acme.test"]


def test_invalid_token_is_rejected(identity_client: TestClient) -> None:
    response = identity_client.get("/api/identity/me", headers=_auth_header("not-a-jwt"))
    assert response.status_code == 401
    assert response.json()["error"] == "unauthorized"
