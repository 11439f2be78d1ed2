"""Media API router.

Upload handoff, status reads, reprocessing and deletion.
"""

import uuid

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.core.database import get_db
from reelpipe.core.storage import MediaLayout, get_media_layout
from reelpipe.modules.media.exceptions import (
    AssetAlreadyExistsError,
    AssetNotFoundError,
    ConcurrentRunError,
    InvalidStateTransitionError,
    SourceMissingError,
)
from reelpipe.modules.media.models import AssetStatus
from reelpipe.modules.media.schemas import (
    AssetStatusResponse,
    MediaAssetResponse,
    MediaHandoffRequest,
    MediaHandoffResponse,
    ReprocessResponse,
)
from reelpipe.modules.media.service import MediaService
from reelpipe.modules.transcoding.queue import EnqueueError, ProcessingQueue, get_processing_queue

router = APIRouter(prefix="/media", tags=["media"])


def get_media_service(
    db: AsyncSession = Depends(get_db),
    layout: MediaLayout = Depends(get_media_layout),
    queue: ProcessingQueue = Depends(get_processing_queue),
) -> MediaService:
    return MediaService(db, layout, queue)


@router.post(
    "/handoff",
    response_model=MediaHandoffResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def handoff_upload(
    request: MediaHandoffRequest,
    service: MediaService = Depends(get_media_service),
):
    """Accept an uploaded file for processing. Returns without waiting for it."""
    try:
        asset = await service.handoff(request)
    except SourceMissingError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except AssetAlreadyExistsError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except EnqueueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return MediaHandoffResponse(
        asset_id=asset.id,
        status=AssetStatus(asset.status),
        message="Video processing started",
    )


@router.get("/{asset_id}/status", response_model=AssetStatusResponse)
async def get_asset_status(
    asset_id: uuid.UUID,
    service: MediaService = Depends(get_media_service),
):
    """Get processing status and progress."""
    try:
        snapshot = await service.get_status(asset_id)
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return AssetStatusResponse(
        status=AssetStatus(snapshot.status),
        progress=snapshot.progress,
        error=snapshot.error,
    )


@router.post(
    "/{asset_id}/reprocess",
    response_model=ReprocessResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def reprocess_asset(
    asset_id: uuid.UUID,
    service: MediaService = Depends(get_media_service),
):
    """Run processing again for a ready or failed asset."""
    try:
        asset = await service.reprocess(asset_id)
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (ConcurrentRunError, InvalidStateTransitionError, SourceMissingError) as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except EnqueueError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return ReprocessResponse(
        asset_id=asset.id,
        status=AssetStatus(asset.status),
        run_count=asset.run_count,
        message="Video reprocessing started",
    )


@router.get("/{asset_id}", response_model=MediaAssetResponse)
async def get_asset(
    asset_id: uuid.UUID,
    service: MediaService = Depends(get_media_service),
):
    """Get an asset with its renditions."""
    try:
        return await service.get_asset(asset_id)
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.delete("/{asset_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_asset(
    asset_id: uuid.UUID,
    service: MediaService = Depends(get_media_service),
):
    """Delete an asset and everything stored for it."""
    try:
        await service.delete(asset_id)
    except AssetNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except ConcurrentRunError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
