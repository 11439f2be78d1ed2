"""Celery beat tasks for storage maintenance."""

import asyncio

from sqlalchemy.exc import SQLAlchemyError

from reelpipe.core.celery_app import celery_app
from reelpipe.core.config import settings
from reelpipe.core.database import task_session_maker
from reelpipe.core.storage import MediaLayout
from reelpipe.core.tasks import BaseTaskWithRetry
from reelpipe.modules.cleanup.reaper import CleanupReaper, stalled_run_cutoff


class MaintenanceTask(BaseTaskWithRetry):
    abstract = True
    retry_config_name = "maintenance"


@celery_app.task(bind=True, base=MaintenanceTask)
def reap_orphaned_media_task(self: MaintenanceTask) -> dict:
    """Remove stored media whose asset no longer exists. Runs daily."""
    try:
        return asyncio.run(_reap_orphaned_media_async())
    except SQLAlchemyError as e:
        self.retry_with_backoff(e)


async def _reap_orphaned_media_async() -> dict:
    async with task_session_maker() as session_maker:
        async with session_maker() as session:
            reaper = CleanupReaper(session, MediaLayout(settings.MEDIA_STORAGE_PATH))
            report = await reaper.sweep()
    return {
        "scanned": report.scanned,
        "removed": report.removed,
        "failed": report.failed,
        "skipped": report.skipped,
    }


@celery_app.task(bind=True, base=MaintenanceTask)
def recover_stalled_runs_task(self: MaintenanceTask) -> dict:
    """Fail assets whose processing worker was lost."""
    try:
        return asyncio.run(_recover_stalled_runs_async())
    except SQLAlchemyError as e:
        self.retry_with_backoff(e)


async def _recover_stalled_runs_async() -> dict:
    async with task_session_maker() as session_maker:
        async with session_maker() as session:
            reaper = CleanupReaper(session, MediaLayout(settings.MEDIA_STORAGE_PATH))
            recovered = await reaper.recover_stalled_runs(stalled_run_cutoff(settings))
    return {"recovered": [str(asset_id) for asset_id in recovered]}
