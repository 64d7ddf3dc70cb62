from __future__ import annotations

from typing import Any

import httpx

from app.domain.models import LocationSample

DEFAULT_TIMEOUT_SECONDS = 20.0


class TrackingApiError(Exception):
    def __init__(self, status_code: int, error: str, message: str) -> None:
        super().__init__(f"{status_code} {error}: {message}")
        self.status_code = status_code
        self.error = error
        self.message = message


class OrderTrackingClient:
    """Thin HTTP client for the driver app endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        http_client: httpx.Client | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client(base_url=base_url, timeout=httpx.Timeout(timeout))
        self._token = token

    def set_token(self, token: str | None) -> None:
        self._token = token

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> OrderTrackingClient:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def _headers(self) -> dict[str, str]:
        if not self._token:
            return {}
        return {"Authorization": f"Bearer {self._token}"}

    def _post(self, path: str, body: dict[str, Any]) -> dict[str, Any]:
        response = self._client.post(path, json=body, headers=self._headers())
        return self._decode(response)

    def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        response = self._client.get(path, params=params, headers=self._headers())
        return self._decode(response)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            raise TrackingApiError(
                response.status_code,
                str(body.get("error", "http_error")),
                str(body.get("message", response.text)),
            )
        return response.json()

    def login(self, email: str, password: str) -> str:
        body = self._post("/api/identity/login", {"email": email, "password": password})
        token = str(body["access_token"])
        self._token = token
        return token

    def validate_qr_code(self, qr_code_data: str) -> dict[str, Any]:
        return self._post("/validate-qr-code", {"qrCodeData": qr_code_data})

    def activate_load(
        self,
        order_id: str,
        *,
        location: dict[str, float] | None = None,
        location_address: str | None = None,
        device_info: dict[str, str] | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"order_id": order_id}
        if location is not None:
            body["location"] = location
        if location_address is not None:
            body["location_address"] = location_address
        if device_info is not None:
            body["device_info"] = device_info
        if notes is not None:
            body["notes"] = notes
        return self._post("/activate-load", body)

    def post_location(self, order_id: str, sample: LocationSample) -> dict[str, Any]:
        return self._post(f"/api/orders/{order_id}/locations", sample.model_dump(mode="json", exclude_none=True))

    def latest_location(self, order_id: str) -> dict[str, Any]:
        return self._get(f"/api/orders/{order_id}/locations/latest")

    def update_status(self, order_id: str, status: str, notes: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"status": status}
        if notes is not None:
            body["notes"] = notes
        return self._post(f"/api/orders/{order_id}/status", body)
