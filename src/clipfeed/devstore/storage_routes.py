from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from clipfeed.config import settings
from clipfeed.devstore.auth import require_user
from clipfeed.devstore.schemas import StorageDeleteRequest, StorageObjectName, StorageUploadResponse
from clipfeed.integrations.storage.local_storage import LocalMediaStorage


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/storage/v1/object")


def _media(request: Request, bucket: str) -> LocalMediaStorage:
    media: LocalMediaStorage = request.app.state.media
    if bucket != media.bucket:
        raise HTTPException(status_code=404, detail=f"bucket {bucket} not found")
    return media


def _check_owner(media: LocalMediaStorage, key: str, user_id: str) -> None:
    # Objects live under "{user_id}/..."; only the owner may write or delete them.
    try:
        owner = media.owner_of(key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="invalid object key") from e
    if owner != user_id:
        raise HTTPException(status_code=403, detail="object key outside of caller's folder")


@router.get("/public/{bucket}/{key:path}")
async def download_object(bucket: str, key: str, request: Request) -> Response:
    media = _media(request, bucket)
    try:
        data = await media.get_bytes(key)
        media_type = await media.content_type(key)
    except ValueError as e:
        raise HTTPException(status_code=400, detail="invalid object key") from e
    except (FileNotFoundError, IsADirectoryError) as e:
        raise HTTPException(status_code=404, detail="object not found") from e
    return Response(content=data, media_type=media_type or "application/octet-stream")


@router.post("/{bucket}/{key:path}", response_model=StorageUploadResponse)
async def upload_object(bucket: str, key: str, request: Request) -> StorageUploadResponse:
    media = _media(request, bucket)
    user = await require_user(request)
    _check_owner(media, key, user.id)
    data = await request.body()
    if len(data) > settings.media_max_size_bytes:
        raise HTTPException(status_code=413, detail="object too large")
    await media.put_bytes(key, data, content_type=request.headers.get("content-type"))
    logger.info("object stored bucket=%s key=%s size=%s", bucket, key, len(data))
    return StorageUploadResponse(Key=f"{bucket}/{key}")


@router.delete("/{bucket}", response_model=list[StorageObjectName])
async def delete_objects(
    bucket: str, payload: StorageDeleteRequest, request: Request
) -> list[StorageObjectName]:
    media = _media(request, bucket)
    user = await require_user(request)
    removed: list[StorageObjectName] = []
    for key in payload.prefixes:
        _check_owner(media, key, user.id)
        await media.delete(key)
        removed.append(StorageObjectName(name=key))
    return removed
