"""Repositories and the durable state store for media assets."""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from reelpipe.modules.media.exceptions import (
    AssetAlreadyExistsError,
    AssetNotFoundError,
    InvalidStateTransitionError,
    StaleRunError,
)
from reelpipe.modules.media.models import AssetStatus, MediaAsset, Rendition
from reelpipe.modules.media.state import next_progress, validate_transition


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MediaAssetRepository:
    """Repository for MediaAsset rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(
        self,
        asset_id: uuid.UUID,
        with_renditions: bool = False,
    ) -> Optional[MediaAsset]:
        """Load an asset, always refreshing it from the database."""
        query = select(MediaAsset).where(MediaAsset.id == asset_id)
        if with_renditions:
            query = query.options(selectinload(MediaAsset.renditions))
        result = await self.session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def existing_ids(self, asset_ids: Iterable[uuid.UUID]) -> set[uuid.UUID]:
        ids = list(set(asset_ids))
        if not ids:
            return set()
        result = await self.session.execute(select(MediaAsset.id).where(MediaAsset.id.in_(ids)))
        return set(result.scalars().all())

    async def get_stalled(self, started_before: datetime) -> list[MediaAsset]:
        result = await self.session.execute(
            select(MediaAsset).where(
                MediaAsset.status == AssetStatus.PROCESSING.value,
                MediaAsset.processing_started_at < started_before,
            )
        )
        return list(result.scalars().all())

    async def delete(self, asset: MediaAsset) -> None:
        await self.session.execute(delete(Rendition).where(Rendition.asset_id == asset.id))
        await self.session.delete(asset)


class RenditionRepository:
    """Repository for Rendition rows, keyed by (asset_id, quality_label)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, asset_id: uuid.UUID, quality_label: str) -> Optional[Rendition]:
        result = await self.session.execute(
            select(Rendition).where(
                Rendition.asset_id == asset_id,
                Rendition.quality_label == quality_label,
            )
        )
        return result.scalar_one_or_none()

    async def list_for_asset(self, asset_id: uuid.UUID) -> list[Rendition]:
        result = await self.session.execute(
            select(Rendition)
            .where(Rendition.asset_id == asset_id)
            .order_by(Rendition.bitrate, Rendition.height)
        )
        return list(result.scalars().all())

    async def upsert(
        self,
        asset_id: uuid.UUID,
        quality_label: str,
        width: int,
        height: int,
        bitrate: int,
        segment_dir_ref: str,
        manifest_ref: str,
        size_bytes: int,
        segment_count: int,
    ) -> Rendition:
        """Insert a rendition or update the existing row for the same quality."""
        rendition = await self.get(asset_id, quality_label)
        if rendition is None:
            rendition = Rendition(asset_id=asset_id, quality_label=quality_label)
            self.session.add(rendition)

        rendition.width = width
        rendition.height = height
        rendition.bitrate = bitrate
        rendition.segment_dir_ref = segment_dir_ref
        rendition.manifest_ref = manifest_ref
        rendition.size_bytes = size_bytes
        rendition.segment_count = segment_count
        await self.session.flush()
        return rendition

    async def delete_for_asset(self, asset_id: uuid.UUID) -> int:
        result = await self.session.execute(
            delete(Rendition).where(Rendition.asset_id == asset_id)
        )
        return result.rowcount or 0


@dataclass
class StatusSnapshot:
    """Status/progress/error of an asset at one point in time."""
    status: str
    progress: int
    error: Optional[str]


class StateStore:
    """Durable status record for media assets.

    Enforces the processing state machine and monotonic progress. Every write
    commits immediately so status readers in other sessions see it, and all
    writes through one store are serialized by a lock, so concurrent
    rendition completions of the same run cannot interleave.

    Writes made on behalf of a processing run pass that run's number as
    ``run``. They raise ``StaleRunError`` once the asset has left
    ``processing`` or a later run has been admitted, so a run that was
    failed from outside cannot overwrite the state of its successor.
    """

    def __init__(self, session: AsyncSession):
        self.session = session
        self.assets = MediaAssetRepository(session)
        self.renditions = RenditionRepository(session)
        self._lock = asyncio.Lock()

    async def _require(
        self,
        asset_id: uuid.UUID,
        with_renditions: bool = False,
        run: Optional[int] = None,
    ) -> MediaAsset:
        asset = await self.assets.get_by_id(asset_id, with_renditions=with_renditions)
        if asset is None:
            raise AssetNotFoundError(f"Media asset {asset_id} not found")
        if run is not None and (
            asset.run_count != run or asset.status != AssetStatus.PROCESSING.value
        ):
            raise StaleRunError(asset_id, run)
        return asset

    async def get_asset(self, asset_id: uuid.UUID, with_renditions: bool = False) -> MediaAsset:
        async with self._lock:
            return await self._require(asset_id, with_renditions=with_renditions)

    async def create_asset(
        self,
        asset_id: uuid.UUID,
        source_path: str,
        title: str = "",
        description: Optional[str] = None,
        owner_id: Optional[str] = None,
        visibility: str = "private",
        tags: Optional[list[str]] = None,
        categories: Optional[list[str]] = None,
        original_filename: Optional[str] = None,
    ) -> MediaAsset:
        """Create an asset in ``uploaded`` state at upload handoff."""
        async with self._lock:
            if await self.assets.get_by_id(asset_id) is not None:
                raise AssetAlreadyExistsError(f"Media asset {asset_id} already exists")

            asset = MediaAsset(
                id=asset_id,
                source_path=source_path,
                title=title,
                description=description,
                owner_id=owner_id,
                visibility=visibility,
                tags=list(tags or []),
                categories=list(categories or []),
                original_filename=original_filename,
                status=AssetStatus.UPLOADED.value,
                progress=0,
                run_count=0,
            )
            self.session.add(asset)
            await self.session.commit()
            return asset

    async def begin_run(self, asset_id: uuid.UUID, reprocess: bool = False) -> MediaAsset:
        """Admit an asset into ``processing``.

        The "not already processing" check and the write are not covered by a
        row lock: two callers racing between the read and the commit can both
        be admitted.
        """
        async with self._lock:
            asset = await self._require(asset_id)
            validate_transition(asset.status, AssetStatus.PROCESSING, reprocess=reprocess)

            asset.status = AssetStatus.PROCESSING.value
            asset.progress = 0
            asset.error_message = None
            asset.run_count = (asset.run_count or 0) + 1
            asset.processing_started_at = _utcnow()
            await self.session.commit()
            return asset

    async def claim_run(self, asset_id: uuid.UUID, run: int) -> MediaAsset:
        """Record that a worker has picked up ``run``.

        Restarts the stalled-run clock, which until now counted time spent
        waiting in the queue.
        """
        async with self._lock:
            asset = await self._require(asset_id, run=run)
            asset.processing_started_at = _utcnow()
            await self.session.commit()
            return asset

    async def check_run(self, asset_id: uuid.UUID, run: int) -> None:
        """Raise ``StaleRunError`` unless ``run`` is still the current run."""
        async with self._lock:
            await self._require(asset_id, run=run)

    async def update_progress(
        self, asset_id: uuid.UUID, progress: float, run: Optional[int] = None
    ) -> int:
        """Raise progress to ``progress``; lower values are ignored."""
        async with self._lock:
            asset = await self._require(asset_id, run=run)
            new_value = next_progress(asset.progress or 0, progress)
            if new_value != asset.progress:
                asset.progress = new_value
                await self.session.commit()
            return new_value

    async def set_source_path(
        self, asset_id: uuid.UUID, source_path: str, run: Optional[int] = None
    ) -> None:
        async with self._lock:
            asset = await self._require(asset_id, run=run)
            asset.source_path = source_path
            await self.session.commit()

    async def record_probe(
        self,
        asset_id: uuid.UUID,
        duration: float,
        width: int,
        height: int,
        frame_rate: float,
        bitrate: int,
        video_codec: Optional[str],
        audio_codec: Optional[str],
        run: Optional[int] = None,
    ) -> None:
        async with self._lock:
            asset = await self._require(asset_id, run=run)
            asset.duration = duration
            asset.width = width
            asset.height = height
            asset.frame_rate = frame_rate
            asset.bitrate = bitrate
            asset.video_codec = video_codec
            asset.audio_codec = audio_codec
            await self.session.commit()

    async def set_thumbnail(
        self, asset_id: uuid.UUID, thumbnail_ref: Optional[str], run: Optional[int] = None
    ) -> None:
        async with self._lock:
            asset = await self._require(asset_id, run=run)
            asset.thumbnail_ref = thumbnail_ref
            await self.session.commit()

    async def upsert_rendition(
        self, asset_id: uuid.UUID, run: Optional[int] = None, **fields
    ) -> Rendition:
        async with self._lock:
            if run is not None:
                await self._require(asset_id, run=run)
            rendition = await self.renditions.upsert(asset_id=asset_id, **fields)
            await self.session.commit()
            return rendition

    async def clear_renditions(self, asset_id: uuid.UUID, run: Optional[int] = None) -> int:
        async with self._lock:
            if run is not None:
                await self._require(asset_id, run=run)
            removed = await self.renditions.delete_for_asset(asset_id)
            await self.session.commit()
            return removed

    async def mark_ready(
        self, asset_id: uuid.UUID, manifest_ref: str, run: Optional[int] = None
    ) -> MediaAsset:
        """Finish a run successfully.

        Raises:
            InvalidStateTransitionError: If the asset has no renditions
            StaleRunError: If ``run`` is no longer the current run
        """
        async with self._lock:
            asset = await self._require(asset_id, run=run)
            if not await self.renditions.list_for_asset(asset_id):
                raise InvalidStateTransitionError(asset.status, AssetStatus.READY.value)
            validate_transition(asset.status, AssetStatus.READY)

            asset.status = AssetStatus.READY.value
            asset.progress = 100
            asset.error_message = None
            asset.manifest_ref = manifest_ref
            if asset.published_at is None:
                asset.published_at = _utcnow()
            await self.session.commit()
            return asset

    async def mark_failed(
        self, asset_id: uuid.UUID, error_message: str, run: Optional[int] = None
    ) -> MediaAsset:
        """Finish a run as failed, dropping every rendition row of the run."""
        async with self._lock:
            asset = await self._require(asset_id, run=run)
            validate_transition(asset.status, AssetStatus.FAILED)

            await self.renditions.delete_for_asset(asset_id)
            asset.status = AssetStatus.FAILED.value
            asset.error_message = error_message
            asset.manifest_ref = None
            await self.session.commit()
            return asset

    async def get_status(self, asset_id: uuid.UUID) -> StatusSnapshot:
        async with self._lock:
            asset = await self._require(asset_id)
            return StatusSnapshot(
                status=asset.status,
                progress=asset.progress or 0,
                error=asset.error_message,
            )

    async def delete_asset(self, asset_id: uuid.UUID) -> None:
        async with self._lock:
            asset = await self._require(asset_id)
            await self.assets.delete(asset)
            await self.session.commit()
