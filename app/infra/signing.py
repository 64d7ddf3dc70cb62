"""HMAC signing of QR scan payloads.

The canonical message is ``"{order_id}:{timestamp}"`` and the signature is the
lowercase hex HMAC-SHA256 digest of it. The scannable token is the base64 of
``{"orderId", "timestamp", "signature"}`` JSON, with ``timestamp`` in epoch
milliseconds.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from functools import lru_cache
from typing import Any

from app.domain.errors import ConfigurationError, ValidationError

QR_SECRET_ENV = "QR_CODE_SECRET"
QR_CODE_TTL_HOURS = int(os.getenv("QR_CODE_TTL_HOURS", "24"))


@dataclass(frozen=True)
class QRCodePayload:
    order_id: str
    timestamp: int
    signature: str

    def to_dict(self) -> dict[str, Any]:
        return {"orderId": self.order_id, "timestamp": self.timestamp, "signature": self.signature}


def now_ms(now: datetime | None = None) -> int:
    return int((now or datetime.now(UTC)).timestamp() * 1000)


def expires_at(timestamp_ms: int) -> datetime:
    return datetime.fromtimestamp(timestamp_ms / 1000, UTC) + timedelta(hours=QR_CODE_TTL_HOURS)


def is_expired(timestamp_ms: int, now: datetime | None = None) -> bool:
    return now_ms(now) - timestamp_ms > QR_CODE_TTL_HOURS * 60 * 60 * 1000


class QRSigner:
    def __init__(self, secret: str) -> None:
        if not secret:
            raise ConfigurationError(f"{QR_SECRET_ENV} not configured")
        self._key = secret.encode("utf-8")

    @staticmethod
    def canonical_message(order_id: str, timestamp: int) -> bytes:
        return f"{order_id}:{timestamp}".encode()

    def sign(self, order_id: str, timestamp: int) -> str:
        return hmac.new(self._key, self.canonical_message(order_id, timestamp), hashlib.sha256).hexdigest()

    def verify(self, order_id: str, timestamp: int, signature: str) -> bool:
        if not isinstance(signature, str):
            return False
        expected = self.sign(order_id, timestamp)
        return hmac.compare_digest(expected, signature)

    def issue(self, order_id: str, timestamp: int | None = None) -> QRCodePayload:
        issued_at = timestamp if timestamp is not None else now_ms()
        return QRCodePayload(order_id=order_id, timestamp=issued_at, signature=self.sign(order_id, issued_at))


def encode_qr_payload(payload: QRCodePayload) -> str:
    raw = json.dumps(payload.to_dict(), separators=(",", ":")).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_qr_payload(qr_code_data: str) -> QRCodePayload:
    try:
        raw = base64.b64decode(qr_code_data.strip(), validate=True)
        decoded = json.loads(raw.decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ValidationError("invalid QR code format") from exc
    if not isinstance(decoded, dict):
        raise ValidationError("invalid QR code format")
    order_id = decoded.get("orderId")
    timestamp = decoded.get("timestamp")
    signature = decoded.get("signature")
    if not isinstance(order_id, str) or not order_id:
        raise ValidationError("QR code payload missing orderId")
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise ValidationError("QR code payload missing timestamp")
    if not isinstance(signature, str) or not signature:
        raise ValidationError("QR code payload missing signature")
    return QRCodePayload(order_id=order_id, timestamp=timestamp, signature=signature)


def load_signing_secret() -> str:
    secret = os.getenv(QR_SECRET_ENV, "").strip()
    if not secret:
        raise ConfigurationError(f"{QR_SECRET_ENV} not configured")
    return secret


@lru_cache(maxsize=1)
def get_signer() -> QRSigner:
    return QRSigner(load_signing_secret())
