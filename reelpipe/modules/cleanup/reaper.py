"""Orphaned output removal and stalled run recovery.

An orphan is a stored entry whose owning asset no longer has a database row,
for example output left behind when a delete could not remove every file.
Ownership is read from the storage layout's naming rules; entries that do
not follow them are reported and left alone.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.core.config import Settings
from reelpipe.core.logging import log_error, log_info, log_warning
from reelpipe.core.metrics import ORPHAN_REMOVAL_FAILURES_TOTAL, ORPHANS_REMOVED_TOTAL
from reelpipe.core.storage import MediaLayout, StoredEntry
from reelpipe.modules.media.exceptions import MediaServiceError
from reelpipe.modules.media.repository import MediaAssetRepository, StateStore
from reelpipe.modules.transcoding.abr import RENDITION_LADDER

logger = logging.getLogger(__name__)

STALLED_RUN_MESSAGE = "Processing timed out"


def longest_healthy_run(settings: Settings) -> timedelta:
    """Upper bound on a run that is still making progress.

    Probe and thumbnail at their limits, then every ladder rung at the encode
    limit, ``MAX_CONCURRENT_TRANSCODES`` at a time.
    """
    waves = math.ceil(len(RENDITION_LADDER) / max(1, settings.MAX_CONCURRENT_TRANSCODES))
    seconds = (
        settings.FFPROBE_TIMEOUT_SECONDS
        + settings.THUMBNAIL_TIMEOUT_SECONDS
        + waves * settings.FFMPEG_TIMEOUT_MAXIMUM
    )
    return timedelta(seconds=seconds)


def stalled_run_cutoff(settings: Settings) -> timedelta:
    """Age after which a processing run is treated as lost."""
    return max(
        timedelta(minutes=settings.STALE_RUN_TIMEOUT_MINUTES),
        longest_healthy_run(settings),
    )


@dataclass
class ReapReport:
    """Counts from one sweep."""
    scanned: int = 0
    removed: int = 0
    failed: int = 0
    skipped: int = 0
    removed_paths: list[Path] = field(default_factory=list)


class CleanupReaper:
    """Removes stored media that no asset owns any more."""

    def __init__(self, session: AsyncSession, layout: MediaLayout):
        self.session = session
        self.layout = layout
        self.asset_repo = MediaAssetRepository(session)

    async def sweep(self) -> ReapReport:
        """Delete every orphaned entry under the storage roots.

        A failure to delete one entry is logged and counted; the sweep
        carries on with the rest.
        """
        entries: list[StoredEntry] = await asyncio.to_thread(
            lambda: list(self.layout.iter_stored_entries())
        )
        report = ReapReport(scanned=len(entries))

        owned = [e for e in entries if e.asset_id is not None]
        for entry in entries:
            if entry.asset_id is None:
                report.skipped += 1
                log_warning(logger, f"Skipping unrecognised storage entry {entry.path}", root=entry.root)

        existing = await self.asset_repo.existing_ids(e.asset_id for e in owned)
        for entry in owned:
            if entry.asset_id in existing:
                continue
            try:
                await asyncio.to_thread(self.layout.remove, entry.path)
            except OSError as e:
                report.failed += 1
                ORPHAN_REMOVAL_FAILURES_TOTAL.labels(root=entry.root).inc()
                log_error(
                    logger,
                    f"Failed to remove orphaned entry {entry.path}",
                    exception=e,
                    asset_id=str(entry.asset_id),
                )
                continue
            report.removed += 1
            report.removed_paths.append(entry.path)
            ORPHANS_REMOVED_TOTAL.labels(root=entry.root).inc()

        log_info(
            logger,
            "Orphan sweep finished",
            scanned=report.scanned,
            removed=report.removed,
            failed=report.failed,
            skipped=report.skipped,
        )
        return report

    async def recover_stalled_runs(self, older_than: timedelta) -> list:
        """Fail assets that have been processing for longer than ``older_than``.

        Returns:
            Ids of the assets marked failed
        """
        cutoff = datetime.now(timezone.utc) - older_than
        stalled = await self.asset_repo.get_stalled(cutoff)
        store = StateStore(self.session)

        recovered = []
        for asset in stalled:
            try:
                await store.mark_failed(asset.id, STALLED_RUN_MESSAGE)
            except MediaServiceError as e:
                log_warning(logger, f"Could not recover stalled run: {e}", asset_id=str(asset.id))
                continue
            try:
                await asyncio.to_thread(self.layout.remove, self.layout.asset_hls_dir(asset.id))
            except OSError as e:
                log_warning(logger, f"Could not remove output of stalled run: {e}", asset_id=str(asset.id))
            recovered.append(asset.id)
            log_warning(logger, "Marked stalled run as failed", asset_id=str(asset.id))
        return recovered
