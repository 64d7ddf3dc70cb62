from __future__ import annotations

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath


class ObjectStorageError(Exception):
    pass


class ObjectStorageNotFoundError(ObjectStorageError):
    pass


@dataclass(frozen=True)
class ObjectStorageObjectMeta:
    bucket: str
    object_key: str
    size_bytes: int
    etag: str
    content_type: str
    absolute_path: Path


class LocalObjectStorageAdapter:
    def __init__(self, root_dir: Path) -> None:
        self._root_dir = root_dir
        self._root_dir.mkdir(parents=True, exist_ok=True)

    def _safe_object_path(self, bucket: str, object_key: str) -> Path:
        normalized_bucket = bucket.strip()
        if not normalized_bucket:
            raise ObjectStorageError("bucket is empty")
        key_path = PurePosixPath(object_key)
        if key_path.is_absolute() or ".." in key_path.parts:
            raise ObjectStorageError("invalid object key")
        if not key_path.parts:
            raise ObjectStorageError("object key is empty")
        return self._root_dir / normalized_bucket / Path(*key_path.parts)

    def put_bytes(
        self,
        *,
        bucket: str,
        object_key: str,
        content: bytes,
        content_type: str,
    ) -> ObjectStorageObjectMeta:
        path = self._safe_object_path(bucket, object_key)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        return ObjectStorageObjectMeta(
            bucket=bucket,
            object_key=object_key,
            size_bytes=len(content),
            etag=hashlib.sha256(content).hexdigest(),
            content_type=content_type,
            absolute_path=path,
        )

    def delete_object(self, *, bucket: str, object_key: str) -> bool:
        path = self._safe_object_path(bucket, object_key)
        if not path.exists() or not path.is_file():
            return False
        path.unlink()
        return True

    def get_download_path(self, *, bucket: str, object_key: str) -> Path:
        path = self._safe_object_path(bucket, object_key)
        if not path.exists() or not path.is_file():
            raise ObjectStorageNotFoundError("object not found")
        return path


class ObjectStorageService:
    def __init__(self, root_dir: Path | None = None) -> None:
        backend = os.getenv("OBJECT_STORAGE_BACKEND", "local").strip().lower()
        if backend != "local":
            raise ObjectStorageError(f"unsupported storage backend: {backend}")
        resolved_root = root_dir or Path(os.getenv("OBJECT_STORAGE_ROOT", "data/object_storage"))
        self._adapter = LocalObjectStorageAdapter(resolved_root)
        self.qr_bucket = os.getenv("OBJECT_STORAGE_QR_BUCKET", "qr-codes")
        self.public_base_url = os.getenv("OBJECT_STORAGE_PUBLIC_BASE_URL", "/storage").rstrip("/")

    @staticmethod
    def build_qr_object_key(*, order_id: str, timestamp_ms: int) -> str:
        return f"qr_order_{order_id}_{timestamp_ms}.png"

    def public_url(self, *, bucket: str, object_key: str) -> str:
        return f"{self.public_base_url}/{bucket}/{object_key}"

    def upload(self, *, bucket: str, object_key: str, content: bytes, content_type: str) -> ObjectStorageObjectMeta:
        return self._adapter.put_bytes(
            bucket=bucket,
            object_key=object_key,
            content=content,
            content_type=content_type,
        )

    def remove(self, *, bucket: str, object_key: str) -> bool:
        return self._adapter.delete_object(bucket=bucket, object_key=object_key)

    def get_download_path(self, *, bucket: str, object_key: str) -> Path:
        return self._adapter.get_download_path(bucket=bucket, object_key=object_key)
