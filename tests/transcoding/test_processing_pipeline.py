"""End-to-end tests for a processing run with a fake media toolkit."""

import uuid

import pytest

from conftest import SEGMENTS_PER_RENDITION, FakeToolkit
from reelpipe.modules.media.models import AssetStatus
from reelpipe.modules.media.repository import StateStore
from reelpipe.modules.transcoding.pipeline import INTERNAL_ERROR_MESSAGE, ProcessingPipeline


def build(session_maker, layout, notifier, toolkit: FakeToolkit, concurrency: int = 2) -> ProcessingPipeline:
    return ProcessingPipeline(
        session_maker=session_maker,
        layout=layout,
        toolkit=toolkit,
        notifier=notifier,
        max_concurrent_transcodes=concurrency,
    )


async def load(session_maker, asset_id: uuid.UUID):
    async with session_maker() as session:
        return await StateStore(session).get_asset(asset_id, with_renditions=True)


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_720p_source_becomes_ready(self, pipeline, session_maker, layout, admit_asset) -> None:
        asset_id = await admit_asset()

        result = await pipeline.run(asset_id)

        assert result.status == "ready"
        assert result.renditions == ["360p", "480p", "720p"]
        asset = await load(session_maker, asset_id)
        assert asset.status == AssetStatus.READY.value
        assert asset.progress == 100
        assert asset.error_message is None
        assert asset.manifest_ref == f"hls/{asset_id}/master.m3u8"
        assert (asset.width, asset.height, asset.duration) == (1280, 720, 30.0)
        assert [r.quality_label for r in asset.renditions] == ["360p", "480p", "720p"]
        assert all(r.segment_count == SEGMENTS_PER_RENDITION for r in asset.renditions)

        master = layout.master_manifest_path(asset_id).read_text()
        assert master.count("#EXT-X-STREAM-INF") == 3
        for rendition in asset.renditions:
            assert layout.resolve(rendition.manifest_ref).is_file()

    @pytest.mark.asyncio
    async def test_original_is_staged_and_upload_removed(
        self, pipeline, session_maker, layout, upload_dir, admit_asset
    ) -> None:
        asset_id = await admit_asset(name="holiday.MP4")

        await pipeline.run(asset_id)

        asset = await load(session_maker, asset_id)
        assert asset.source_path == f"originals/{asset_id}_original.mp4"
        assert layout.resolve(asset.source_path).is_file()
        assert not (upload_dir / "holiday.MP4").exists()

    @pytest.mark.asyncio
    async def test_upload_removed_before_ready(
        self, pipeline, upload_dir, admit_asset, monkeypatch
    ) -> None:
        upload = upload_dir / "clip.mp4"
        seen_at_ready = []
        original = StateStore.mark_ready

        async def recording(self, asset_id, manifest_ref, run=None):
            seen_at_ready.append(upload.exists())
            return await original(self, asset_id, manifest_ref, run=run)

        monkeypatch.setattr(StateStore, "mark_ready", recording)
        asset_id = await admit_asset(name="clip.mp4")

        result = await pipeline.run(asset_id)

        assert result.status == "ready"
        assert seen_at_ready == [False]

    @pytest.mark.asyncio
    async def test_thumbnail_recorded(self, pipeline, session_maker, layout, admit_asset) -> None:
        asset_id = await admit_asset()
        await pipeline.run(asset_id)

        asset = await load(session_maker, asset_id)
        assert asset.thumbnail_ref == f"thumbnails/{asset_id}_thumb.jpg"
        assert layout.thumbnail_path(asset_id).is_file()

    @pytest.mark.asyncio
    async def test_small_source_gets_one_rendition(self, session_maker, layout, notifier, admit_asset) -> None:
        toolkit = FakeToolkit(width=320, height=240)
        asset_id = await admit_asset()

        result = await build(session_maker, layout, notifier, toolkit).run(asset_id)

        assert result.renditions == ["240p"]

    @pytest.mark.asyncio
    async def test_progress_never_decreases(
        self, pipeline, session_maker, admit_asset, monkeypatch
    ) -> None:
        recorded = []
        original = StateStore.update_progress

        async def recording(self, asset_id, progress, run=None):
            recorded.append(progress)
            return await original(self, asset_id, progress, run=run)

        monkeypatch.setattr(StateStore, "update_progress", recording)
        asset_id = await admit_asset()
        await pipeline.run(asset_id)

        assert recorded == sorted(recorded)
        assert recorded[0] == 5
        assert 90 in recorded
        assert recorded[-1] == 95
        assert (await load(session_maker, asset_id)).progress == 100

    @pytest.mark.asyncio
    async def test_notifies_completion(self, pipeline, notifier, admit_asset) -> None:
        asset_id = await admit_asset()
        await pipeline.run(asset_id)

        assert len(notifier.events) == 1
        event = notifier.events[0]
        assert event.asset_id == asset_id
        assert event.status == "ready"
        assert event.message == "Processed 3 renditions"

    @pytest.mark.asyncio
    async def test_reprocess_replaces_outputs(self, pipeline, session_maker, toolkit, admit_asset) -> None:
        asset_id = await admit_asset()
        await pipeline.run(asset_id)
        async with session_maker() as session:
            await StateStore(session).begin_run(asset_id, reprocess=True)

        result = await pipeline.run(asset_id)

        assert result.status == "ready"
        asset = await load(session_maker, asset_id)
        assert asset.run_count == 2
        assert len(asset.renditions) == 3
        assert toolkit.transcoded.count("720p") == 2


class TestPartialAndTotalFailure:
    @pytest.mark.asyncio
    async def test_failed_rendition_is_left_out(self, session_maker, layout, notifier, admit_asset) -> None:
        toolkit = FakeToolkit(failing=("480p",))
        asset_id = await admit_asset()

        result = await build(session_maker, layout, notifier, toolkit).run(asset_id)

        assert result.status == "ready"
        assert result.renditions == ["360p", "720p"]
        assert result.failed_renditions == ["480p"]
        asset = await load(session_maker, asset_id)
        assert [r.quality_label for r in asset.renditions] == ["360p", "720p"]
        assert not layout.rendition_dir(asset_id, "480p").exists()
        master = layout.master_manifest_path(asset_id).read_text()
        assert "480p" not in master
        assert master.count("#EXT-X-STREAM-INF") == 2
        assert notifier.events[0].message == "Processed 2 renditions (1 failed)"

    @pytest.mark.asyncio
    async def test_every_rendition_failing_fails_the_asset(
        self, session_maker, layout, notifier, admit_asset
    ) -> None:
        toolkit = FakeToolkit(failing=("360p", "480p", "720p"))
        asset_id = await admit_asset()

        result = await build(session_maker, layout, notifier, toolkit).run(asset_id)

        assert result.status == "failed"
        asset = await load(session_maker, asset_id)
        assert asset.status == AssetStatus.FAILED.value
        assert asset.error_message.startswith("All 3 renditions failed")
        assert asset.renditions == []
        assert asset.manifest_ref is None
        assert not layout.asset_hls_dir(asset_id).exists()
        assert notifier.events[0].status == "failed"

    @pytest.mark.asyncio
    async def test_invalid_source_fails_without_output(
        self, session_maker, layout, notifier, upload_dir, admit_asset
    ) -> None:
        toolkit = FakeToolkit(invalid=True)
        asset_id = await admit_asset()

        await build(session_maker, layout, notifier, toolkit).run(asset_id)

        asset = await load(session_maker, asset_id)
        assert asset.status == AssetStatus.FAILED.value
        assert asset.error_message == "No video stream found"
        assert toolkit.transcoded == []
        assert not layout.asset_hls_dir(asset_id).exists()
        assert list(upload_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_missing_upload_fails(self, pipeline, session_maker, upload_dir, admit_asset) -> None:
        asset_id = await admit_asset()
        (upload_dir / "clip.mp4").unlink()

        result = await pipeline.run(asset_id)

        assert result.status == "failed"
        assert (await load(session_maker, asset_id)).error_message == "Source file not found"

    @pytest.mark.asyncio
    async def test_thumbnail_failure_is_not_fatal(self, session_maker, layout, notifier, admit_asset) -> None:
        toolkit = FakeToolkit(thumbnail_fails=True)
        asset_id = await admit_asset()

        result = await build(session_maker, layout, notifier, toolkit).run(asset_id)

        assert result.status == "ready"
        assert (await load(session_maker, asset_id)).thumbnail_ref is None

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded(self, session_maker, layout, notifier, admit_asset) -> None:
        toolkit = FakeToolkit()

        async def broken_probe(path):
            raise RuntimeError("database of codecs exploded")

        toolkit.probe = broken_probe
        asset_id = await admit_asset()

        result = await build(session_maker, layout, notifier, toolkit).run(asset_id)

        assert result.status == "failed"
        assert (await load(session_maker, asset_id)).error_message == INTERNAL_ERROR_MESSAGE


class TestSkippedRuns:
    @pytest.mark.asyncio
    async def test_asset_not_processing_is_skipped(self, pipeline, session_maker, notifier, make_upload) -> None:
        asset_id = uuid.uuid4()
        async with session_maker() as session:
            await StateStore(session).create_asset(asset_id, source_path=str(make_upload()))

        result = await pipeline.run(asset_id)

        assert result.status == "skipped"
        assert (await load(session_maker, asset_id)).status == AssetStatus.UPLOADED.value
        assert notifier.events == []

    @pytest.mark.asyncio
    async def test_unknown_asset_is_skipped(self, pipeline, toolkit) -> None:
        result = await pipeline.run(uuid.uuid4())
        assert result.status == "skipped"
        assert toolkit.transcoded == []
