from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse

from app.domain.errors import NotFoundError, ValidationError
from app.services.object_storage_service import (
    ObjectStorageError,
    ObjectStorageNotFoundError,
    ObjectStorageService,
)

router = APIRouter()


def get_object_storage_service() -> ObjectStorageService:
    return ObjectStorageService()


Storage = Annotated[ObjectStorageService, Depends(get_object_storage_service)]


@router.get("/{bucket}/{object_key:path}")
def download_object(bucket: str, object_key: str, storage: Storage) -> FileResponse:
    if bucket != storage.qr_bucket:
        raise NotFoundError("bucket not found")
    try:
        path = storage.get_download_path(bucket=bucket, object_key=object_key)
    except ObjectStorageNotFoundError as exc:
        raise NotFoundError("object not found") from exc
    except ObjectStorageError as exc:
        raise ValidationError(str(exc)) from exc
    media_type = "image/png" if path.suffix == ".png" else "application/octet-stream"
    return FileResponse(path=path, filename=path.name, media_type=media_type)
