"""Processing run for one media asset.

A run stages the uploaded original, probes it, extracts a thumbnail,
transcodes every planned rendition in bounded parallel, writes the master
playlist and marks the asset ready. Individual renditions may fail; the run
only fails when the source is invalid, no rendition succeeds or the master
playlist cannot be written.

Progress written to the state store:

    staged original      5
    probed              10
    thumbnail           20
    renditions      20 - 90   (equal share per rendition, success or failure)
    master playlist     95
    ready              100   (after the uploaded input is removed)

Every write is scoped to the run number read when the run starts.
"""

import asyncio
import logging
import shutil
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from reelpipe.core.logging import asset_context, log_error, log_info, log_warning
from reelpipe.core.metrics import (
    ACTIVE_TRANSCODES,
    PIPELINE_RUN_DURATION_SECONDS,
    PIPELINE_RUNS_TOTAL,
    RENDITIONS_TOTAL,
    TRANSCODE_DURATION_SECONDS,
)
from reelpipe.core.storage import MediaLayout
from reelpipe.core.tracing import add_span_attributes, create_span, record_exception
from reelpipe.modules.media.exceptions import AssetNotFoundError, StaleRunError
from reelpipe.modules.media.models import AssetStatus, MediaAsset, Rendition
from reelpipe.modules.media.repository import StateStore
from reelpipe.modules.notification.notifier import CompletionEvent, CompletionNotifier
from reelpipe.modules.transcoding.abr import QualityPreset, plan_renditions
from reelpipe.modules.transcoding.exceptions import (
    InvalidMediaError,
    PipelineError,
    RenditionError,
    StorageIOError,
    ThumbnailError,
    TotalFailureError,
)
from reelpipe.modules.transcoding.ffmpeg import MediaToolkit, ProbeResult
from reelpipe.modules.transcoding.manifest import ManifestEntry, write_master_playlist

logger = logging.getLogger(__name__)

PROGRESS_STAGED = 5
PROGRESS_PROBED = 10
PROGRESS_THUMBNAIL = 20
PROGRESS_RENDITIONS_END = 90
PROGRESS_MANIFEST = 95

INTERNAL_ERROR_MESSAGE = "Internal error while processing media"

RUN_SKIPPED = "skipped"
RUN_SUPERSEDED = "superseded"


@dataclass
class RunResult:
    """Outcome of one processing run."""
    asset_id: uuid.UUID
    status: str
    renditions: list[str] = field(default_factory=list)
    failed_renditions: list[str] = field(default_factory=list)
    error: Optional[str] = None


class _RenditionProgress:
    """Maps per-rendition completion onto the 20-90 progress band."""

    def __init__(self, store: StateStore, asset_id: uuid.UUID, run: int, labels: list[str]):
        self.store = store
        self.asset_id = asset_id
        self.run = run
        self.fractions = {label: 0.0 for label in labels}

    def overall(self) -> float:
        done = sum(self.fractions.values()) / len(self.fractions)
        return PROGRESS_THUMBNAIL + (PROGRESS_RENDITIONS_END - PROGRESS_THUMBNAIL) * done

    async def report(self, label: str, percent: float) -> None:
        fraction = min(1.0, max(0.0, percent / 100))
        if fraction <= self.fractions[label]:
            return
        self.fractions[label] = fraction
        await self.store.update_progress(self.asset_id, self.overall(), run=self.run)

    async def finish(self, label: str) -> None:
        await self.report(label, 100)


class ProcessingPipeline:
    """Runs processing for assets that have been admitted into ``processing``.

    A run only writes while it is the asset's current run. Once recovery has
    failed it or a reprocess has admitted a newer run, its next write raises
    ``StaleRunError`` and the run stops without touching the asset's outputs.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        layout: MediaLayout,
        toolkit: MediaToolkit,
        notifier: CompletionNotifier,
        max_concurrent_transcodes: int = 2,
    ):
        self.session_maker = session_maker
        self.layout = layout
        self.toolkit = toolkit
        self.notifier = notifier
        self.max_concurrent_transcodes = max(1, max_concurrent_transcodes)

    async def run(self, asset_id: uuid.UUID) -> RunResult:
        """Process one asset. Pipeline failures end up in the asset's status.

        Raises:
            Exception: Only for infrastructure failures that also prevented
                the asset from being marked failed
        """
        started = time.monotonic()
        with asset_context(asset_id), create_span("pipeline.run", attributes={"asset.id": str(asset_id)}):
            result = await self._run(asset_id)
            add_span_attributes({"pipeline.status": result.status})

        if result.status not in (RUN_SKIPPED, RUN_SUPERSEDED):
            PIPELINE_RUN_DURATION_SECONDS.observe(time.monotonic() - started)
        PIPELINE_RUNS_TOTAL.labels(status=result.status).inc()
        return result

    async def _run(self, asset_id: uuid.UUID) -> RunResult:
        async with self.session_maker() as session:
            store = StateStore(session)
            try:
                asset = await store.get_asset(asset_id)
            except AssetNotFoundError:
                log_warning(logger, "Asset disappeared before processing started", asset_id=str(asset_id))
                return RunResult(asset_id=asset_id, status=RUN_SKIPPED, error="not found")

            if asset.status != AssetStatus.PROCESSING.value:
                log_warning(
                    logger,
                    f"Skipping asset in status '{asset.status}'",
                    asset_id=str(asset_id),
                )
                return RunResult(asset_id=asset_id, status=RUN_SKIPPED, error=asset.status)

            run = asset.run_count
            log_info(logger, "Processing started", asset_id=str(asset_id), run=run)
            input_path: Optional[Path] = None
            try:
                await store.claim_run(asset_id, run)
                input_path, staged_path = await self._stage_original(store, asset, run)
                result = await self._process(store, asset_id, run, staged_path, input_path)
                input_path = None
            except StaleRunError as e:
                result = self._superseded(asset_id, e)
            except PipelineError as e:
                record_exception(e)
                result = await self._fail(store, asset_id, run, str(e))
            except Exception as e:
                record_exception(e)
                log_error(logger, "Unexpected error during processing", exception=e, asset_id=str(asset_id))
                await session.rollback()
                result = await self._fail(store, asset_id, run, INTERNAL_ERROR_MESSAGE)
            finally:
                if input_path is not None:
                    await self._discard_input(input_path)

        if result.status != RUN_SUPERSEDED:
            await self._notify(result)
        return result

    # ------------------------------------------------------------------
    # stages
    # ------------------------------------------------------------------

    def _source_file(self, asset: MediaAsset) -> Path:
        source = Path(asset.source_path)
        if source.is_absolute():
            return source
        return self.layout.resolve(asset.source_path)

    async def _stage_original(
        self, store: StateStore, asset: MediaAsset, run: int
    ) -> tuple[Optional[Path], Path]:
        """Move the uploaded file under ``originals/``.

        Returns:
            (input path to discard after the run or None, staged original)
        """
        source = self._source_file(asset)
        staged = self.layout.original_path(asset.id, source.suffix)
        if not source.is_file():
            if staged.is_file():
                source = staged
            else:
                raise InvalidMediaError("Source file not found")

        input_path = None
        if source.resolve() != staged.resolve():
            try:
                await asyncio.to_thread(self._copy, source, staged)
            except OSError as e:
                raise StorageIOError(f"Could not store original: {e}") from e
            input_path = source
            await store.set_source_path(asset.id, self.layout.relative(staged), run=run)

        await store.update_progress(asset.id, PROGRESS_STAGED, run=run)
        return input_path, staged

    @staticmethod
    def _copy(source: Path, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, dest)

    async def _discard_input(self, path: Path) -> None:
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            log_warning(logger, f"Could not remove uploaded input {path}: {e}")

    async def _process(
        self,
        store: StateStore,
        asset_id: uuid.UUID,
        run: int,
        source: Path,
        input_path: Optional[Path],
    ) -> RunResult:
        await self._reset_outputs(store, asset_id, run)

        probe = await self.toolkit.probe(source)
        await store.record_probe(
            asset_id,
            duration=probe.duration,
            width=probe.width,
            height=probe.height,
            frame_rate=probe.frame_rate,
            bitrate=probe.bitrate,
            video_codec=probe.video_codec,
            audio_codec=probe.audio_codec,
            run=run,
        )
        await store.update_progress(asset_id, PROGRESS_PROBED, run=run)

        await self._thumbnail(store, asset_id, run, source, probe)
        await store.update_progress(asset_id, PROGRESS_THUMBNAIL, run=run)

        presets = plan_renditions(probe.width, probe.height)
        log_info(
            logger,
            f"Planned {len(presets)} renditions",
            asset_id=str(asset_id),
            qualities=[p.label for p in presets],
        )
        renditions, failures = await self._transcode_all(store, asset_id, run, source, probe, presets)
        if not renditions:
            raise TotalFailureError(len(presets), failures[-1] if failures else None)

        manifest_path = self.layout.master_manifest_path(asset_id)
        entries = [
            ManifestEntry(r.quality_label, r.width, r.height, r.bitrate) for r in renditions
        ]
        await store.check_run(asset_id, run)
        await asyncio.to_thread(write_master_playlist, manifest_path, asset_id, entries)
        await store.update_progress(asset_id, PROGRESS_MANIFEST, run=run)

        # The uploaded input goes before progress reaches 100.
        if input_path is not None:
            await self._discard_input(input_path)
        await store.mark_ready(asset_id, self.layout.relative(manifest_path), run=run)
        log_info(
            logger,
            f"Processing finished with {len(renditions)}/{len(presets)} renditions",
            asset_id=str(asset_id),
        )
        return RunResult(
            asset_id=asset_id,
            status=AssetStatus.READY.value,
            renditions=[r.quality_label for r in renditions],
            failed_renditions=[e.quality for e in failures],
        )

    async def _reset_outputs(self, store: StateStore, asset_id: uuid.UUID, run: int) -> None:
        """Drop renditions left by a previous run of this asset."""
        await store.clear_renditions(asset_id, run=run)
        try:
            await asyncio.to_thread(self.layout.remove, self.layout.asset_hls_dir(asset_id))
        except OSError as e:
            raise StorageIOError(f"Could not clear previous output: {e}") from e

    async def _thumbnail(
        self, store: StateStore, asset_id: uuid.UUID, run: int, source: Path, probe: ProbeResult
    ) -> None:
        dest = self.layout.thumbnail_path(asset_id)
        try:
            await self.toolkit.extract_thumbnail(source, dest, probe.duration)
        except ThumbnailError as e:
            log_warning(logger, f"Continuing without thumbnail: {e}", asset_id=str(asset_id))
            await store.set_thumbnail(asset_id, None, run=run)
            return
        await store.set_thumbnail(asset_id, self.layout.relative(dest), run=run)

    async def _transcode_all(
        self,
        store: StateStore,
        asset_id: uuid.UUID,
        run: int,
        source: Path,
        probe: ProbeResult,
        presets: list[QualityPreset],
    ) -> tuple[list[Rendition], list[RenditionError]]:
        semaphore = asyncio.Semaphore(self.max_concurrent_transcodes)
        progress = _RenditionProgress(store, asset_id, run, [p.label for p in presets])

        async def transcode(preset: QualityPreset) -> Rendition:
            async with semaphore:
                try:
                    return await self._transcode_one(store, asset_id, source, probe, preset, progress)
                finally:
                    await progress.finish(preset.label)

        results = await asyncio.gather(*(transcode(p) for p in presets), return_exceptions=True)

        renditions: list[Rendition] = []
        failures: list[RenditionError] = []
        for result in results:
            if isinstance(result, RenditionError):
                failures.append(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                renditions.append(result)
        return renditions, failures

    async def _transcode_one(
        self,
        store: StateStore,
        asset_id: uuid.UUID,
        source: Path,
        probe: ProbeResult,
        preset: QualityPreset,
        progress: _RenditionProgress,
    ) -> Rendition:
        output_dir = self.layout.rendition_dir(asset_id, preset.label)

        async def on_progress(percent: float) -> None:
            await progress.report(preset.label, percent)

        started = time.monotonic()
        ACTIVE_TRANSCODES.inc()
        try:
            output = await self.toolkit.transcode_rendition(
                source, preset, output_dir, asset_id, probe.duration, on_progress
            )
        except RenditionError as e:
            RENDITIONS_TOTAL.labels(quality=preset.label, outcome="failed").inc()
            log_warning(logger, f"Rendition {preset.label} failed: {e.reason}", asset_id=str(asset_id))
            await store.check_run(asset_id, progress.run)
            await asyncio.to_thread(self._remove_quietly, output_dir)
            raise
        finally:
            ACTIVE_TRANSCODES.dec()
        TRANSCODE_DURATION_SECONDS.labels(quality=preset.label).observe(time.monotonic() - started)
        RENDITIONS_TOTAL.labels(quality=preset.label, outcome="succeeded").inc()

        return await store.upsert_rendition(
            asset_id,
            run=progress.run,
            quality_label=preset.label,
            width=preset.width,
            height=preset.height,
            bitrate=preset.bitrate,
            segment_dir_ref=self.layout.relative(output.output_dir),
            manifest_ref=self.layout.relative(output.manifest_path),
            size_bytes=output.size_bytes,
            segment_count=output.segment_count,
        )

    def _remove_quietly(self, path: Path) -> None:
        try:
            self.layout.remove(path)
        except OSError as e:
            log_warning(logger, f"Could not remove {path}: {e}")

    # ------------------------------------------------------------------
    # outcome
    # ------------------------------------------------------------------

    async def _fail(self, store: StateStore, asset_id: uuid.UUID, run: int, message: str) -> RunResult:
        log_warning(logger, f"Processing failed: {message}", asset_id=str(asset_id))
        try:
            await store.mark_failed(asset_id, message, run=run)
        except StaleRunError as e:
            return self._superseded(asset_id, e)
        await asyncio.to_thread(self._remove_quietly, self.layout.asset_hls_dir(asset_id))
        return RunResult(asset_id=asset_id, status=AssetStatus.FAILED.value, error=message)

    def _superseded(self, asset_id: uuid.UUID, error: StaleRunError) -> RunResult:
        log_warning(
            logger,
            f"Abandoning run {error.run}: the asset has moved on",
            asset_id=str(asset_id),
        )
        return RunResult(asset_id=asset_id, status=RUN_SUPERSEDED, error=str(error))

    async def _notify(self, result: RunResult) -> None:
        if result.status == AssetStatus.READY.value:
            message = f"Processed {len(result.renditions)} renditions"
            if result.failed_renditions:
                message += f" ({len(result.failed_renditions)} failed)"
        else:
            message = result.error or "Processing failed"
        await self.notifier.notify(
            CompletionEvent(asset_id=result.asset_id, status=result.status, message=message)
        )
