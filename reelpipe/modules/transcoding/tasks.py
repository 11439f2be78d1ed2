"""Celery tasks for media processing."""

import asyncio
import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError

from reelpipe.core.celery_app import celery_app
from reelpipe.core.config import settings
from reelpipe.core.database import task_session_maker
from reelpipe.core.logging import log_error, log_warning
from reelpipe.core.redis import create_redis
from reelpipe.core.storage import MediaLayout
from reelpipe.core.tasks import BaseTaskWithRetry
from reelpipe.modules.media.exceptions import MediaServiceError
from reelpipe.modules.media.repository import StateStore
from reelpipe.modules.notification.notifier import get_notifier
from reelpipe.modules.transcoding.ffmpeg import FFmpegToolkit
from reelpipe.modules.transcoding.pipeline import ProcessingPipeline

logger = logging.getLogger(__name__)

# Failures worth another attempt; anything else already ended up in the asset status.
RETRYABLE_ERRORS = (SQLAlchemyError, ConnectionError)

ABANDONED_RUN_MESSAGE = "Processing could not be completed"


def build_pipeline(session_maker, notifier=None) -> ProcessingPipeline:
    """Pipeline wired from settings."""
    return ProcessingPipeline(
        session_maker=session_maker,
        layout=MediaLayout(settings.MEDIA_STORAGE_PATH),
        toolkit=FFmpegToolkit.from_settings(settings),
        notifier=notifier or get_notifier(),
        max_concurrent_transcodes=settings.MAX_CONCURRENT_TRANSCODES,
    )


class ProcessMediaTask(BaseTaskWithRetry):
    """Marks the asset failed once every attempt has been used up."""

    abstract = True
    retry_config_name = "processing"

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        asset_id = args[0] if args else kwargs.get("asset_id")
        if asset_id:
            asyncio.run(_mark_abandoned(asset_id, ABANDONED_RUN_MESSAGE))


async def _mark_abandoned(asset_id: str, message: str) -> None:
    async with task_session_maker() as session_maker:
        async with session_maker() as session:
            try:
                await StateStore(session).mark_failed(uuid.UUID(asset_id), message)
            except MediaServiceError as e:
                log_warning(logger, f"Could not mark abandoned run failed: {e}", asset_id=asset_id)


@celery_app.task(bind=True, base=ProcessMediaTask)
def process_media_asset_task(self: ProcessMediaTask, asset_id: str) -> dict:
    """Run the processing pipeline for one admitted asset.

    Args:
        asset_id: UUID of the media asset

    Returns:
        dict: Final status and produced renditions
    """
    try:
        return asyncio.run(_process_media_asset_async(asset_id))
    except RETRYABLE_ERRORS as e:
        log_error(logger, "Processing attempt failed, retrying", exception=e, asset_id=asset_id)
        self.retry_with_backoff(e)


async def _process_media_asset_async(asset_id: str) -> dict:
    redis_client = create_redis() if settings.NOTIFIER_BACKEND == "redis" else None
    try:
        async with task_session_maker() as session_maker:
            pipeline = build_pipeline(session_maker, get_notifier(client=redis_client))
            result = await pipeline.run(uuid.UUID(asset_id))
    finally:
        if redis_client is not None:
            await redis_client.aclose()

    return {
        "asset_id": asset_id,
        "status": result.status,
        "renditions": result.renditions,
        "failed_renditions": result.failed_renditions,
        "error": result.error,
    }
