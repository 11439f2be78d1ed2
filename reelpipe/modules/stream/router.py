"""Stream API router.

Byte-range delivery of originals, HLS playlists and segments.
"""

import uuid
from typing import Awaitable, Optional, TypeVar

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.core.config import settings
from reelpipe.core.database import get_db
from reelpipe.core.metrics import STREAM_RESPONSES_TOTAL
from reelpipe.core.storage import MediaLayout, get_media_layout
from reelpipe.modules.media.exceptions import AssetNotFoundError, AssetNotReadyError
from reelpipe.modules.stream.service import (
    ORIGINAL_QUALITIES,
    MediaFile,
    MediaFileNotFoundError,
    StreamService,
    build_file_response,
)

router = APIRouter(prefix="/stream", tags=["stream"])

T = TypeVar("T")


def get_stream_service(
    db: AsyncSession = Depends(get_db),
    layout: MediaLayout = Depends(get_media_layout),
) -> StreamService:
    return StreamService(db, layout)


async def _lookup(pending: Awaitable[T]) -> T:
    try:
        return await pending
    except (AssetNotFoundError, MediaFileNotFoundError) as e:
        STREAM_RESPONSES_TOTAL.labels(status_code="404").inc()
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except AssetNotReadyError as e:
        STREAM_RESPONSES_TOTAL.labels(status_code="422").inc()
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))


async def _respond(request: Request, opener: Awaitable[MediaFile]):
    media_file = await _lookup(opener)
    return build_file_response(
        media_file,
        request.headers.get("range"),
        chunk_size=settings.STREAM_CHUNK_SIZE,
        cache_max_age=settings.STREAM_CACHE_MAX_AGE,
    )


@router.get("/{asset_id}")
async def stream_asset(
    asset_id: uuid.UUID,
    request: Request,
    quality: Optional[str] = Query(None, max_length=20),
    service: StreamService = Depends(get_stream_service),
):
    """Stream the original, or redirect to the playlist of one quality.

    A rendition playlist is only served from its rendition's path, where the
    relative segment URIs inside it resolve.
    """
    if quality and quality.lower() not in ORIGINAL_QUALITIES:
        filename = await _lookup(service.rendition_playlist_name(asset_id, quality))
        STREAM_RESPONSES_TOTAL.labels(status_code="307").inc()
        return RedirectResponse(
            url=request.url_for(
                "stream_rendition_file",
                asset_id=str(asset_id),
                quality=quality,
                filename=filename,
            ),
            status_code=status.HTTP_307_TEMPORARY_REDIRECT,
        )
    return await _respond(request, service.open(asset_id))


@router.get("/{asset_id}/master.m3u8")
async def stream_master_playlist(
    asset_id: uuid.UUID,
    request: Request,
    service: StreamService = Depends(get_stream_service),
):
    """Stream the ABR master playlist."""
    return await _respond(request, service.open_master(asset_id))


@router.get("/{asset_id}/{quality}/{filename}")
async def stream_rendition_file(
    asset_id: uuid.UUID,
    quality: str,
    filename: str,
    request: Request,
    service: StreamService = Depends(get_stream_service),
):
    """Stream a playlist or segment of one rendition."""
    return await _respond(request, service.open_rendition_file(asset_id, quality, filename))
