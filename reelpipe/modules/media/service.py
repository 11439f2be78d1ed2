"""Media service.

Upload handoff, status reads, reprocessing and deletion of media assets.
Processing itself happens in the background; this service only admits
assets into ``processing`` and hands them to the processing queue.
"""

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.core.logging import log_info, log_warning
from reelpipe.core.storage import MediaLayout, StoragePathError
from reelpipe.modules.media.exceptions import ConcurrentRunError, SourceMissingError
from reelpipe.modules.media.models import AssetStatus, MediaAsset
from reelpipe.modules.media.repository import StateStore, StatusSnapshot
from reelpipe.modules.media.schemas import MediaHandoffRequest
from reelpipe.modules.transcoding.queue import EnqueueError, ProcessingQueue

logger = logging.getLogger(__name__)


class MediaService:
    """Service for media asset lifecycle operations."""

    def __init__(
        self,
        session: AsyncSession,
        layout: MediaLayout,
        queue: Optional[ProcessingQueue] = None,
    ):
        self.session = session
        self.layout = layout
        self.queue = queue
        self.store = StateStore(session)

    async def handoff(self, request: MediaHandoffRequest) -> MediaAsset:
        """Register an uploaded file and start processing it.

        Raises:
            SourceMissingError: If the uploaded file does not exist
            AssetAlreadyExistsError: If the asset id is taken
            EnqueueError: If processing could not be scheduled
        """
        if not Path(request.source_file_path).is_file():
            raise SourceMissingError(f"Uploaded file not found: {request.source_file_path}")

        asset = await self.store.create_asset(
            asset_id=request.asset_id,
            source_path=request.source_file_path,
            title=request.title,
            description=request.description,
            owner_id=request.owner_id,
            visibility=request.visibility.value,
            tags=request.tags,
            categories=request.categories,
            original_filename=request.original_filename,
        )
        asset = await self.store.begin_run(asset.id)
        await self._enqueue(asset.id)
        log_info(logger, "Upload handed off for processing", asset_id=str(asset.id))
        return asset

    async def get_status(self, asset_id: uuid.UUID) -> StatusSnapshot:
        return await self.store.get_status(asset_id)

    async def get_asset(self, asset_id: uuid.UUID) -> MediaAsset:
        return await self.store.get_asset(asset_id, with_renditions=True)

    async def reprocess(self, asset_id: uuid.UUID) -> MediaAsset:
        """Start a new run for an asset that is not being processed.

        Raises:
            AssetNotFoundError: If the asset does not exist
            ConcurrentRunError: If the asset is already processing
            SourceMissingError: If the stored original is gone
            EnqueueError: If processing could not be scheduled
        """
        asset = await self.store.get_asset(asset_id)
        if asset.status == AssetStatus.PROCESSING.value:
            raise ConcurrentRunError()
        if not self._source_exists(asset):
            raise SourceMissingError("Original video file not found")

        asset = await self.store.begin_run(asset_id, reprocess=True)
        await self._enqueue(asset_id)
        log_info(logger, "Reprocessing started", asset_id=str(asset_id), run=asset.run_count)
        return asset

    async def delete(self, asset_id: uuid.UUID) -> None:
        """Delete an asset, its renditions and every stored artifact.

        Raises:
            AssetNotFoundError: If the asset does not exist
            ConcurrentRunError: If the asset is being processed
        """
        asset = await self.store.get_asset(asset_id)
        if asset.status == AssetStatus.PROCESSING.value:
            raise ConcurrentRunError()

        await self.store.delete_asset(asset_id)
        leftovers = await asyncio.to_thread(self.layout.remove_asset_artifacts, asset_id)
        if leftovers:
            # The orphan reaper retries these.
            log_warning(
                logger,
                f"Could not remove {len(leftovers)} artifacts of deleted asset",
                asset_id=str(asset_id),
                paths=[str(p) for p in leftovers],
            )
        log_info(logger, "Asset deleted", asset_id=str(asset_id))

    def _source_exists(self, asset: MediaAsset) -> bool:
        source = Path(asset.source_path)
        if not source.is_absolute():
            try:
                source = self.layout.resolve(asset.source_path)
            except StoragePathError:
                return False
        return source.is_file()

    async def _enqueue(self, asset_id: uuid.UUID) -> None:
        if self.queue is None:
            raise EnqueueError("No processing queue configured")
        try:
            await self.queue.enqueue(asset_id)
        except EnqueueError as e:
            await self.store.mark_failed(asset_id, str(e))
            raise
