"""Tests for the durable state store."""

import uuid

import pytest

from reelpipe.modules.media.exceptions import (
    AssetAlreadyExistsError,
    AssetNotFoundError,
    ConcurrentRunError,
    InvalidStateTransitionError,
    StaleRunError,
)
from reelpipe.modules.media.models import AssetStatus
from reelpipe.modules.media.repository import StateStore


def rendition_fields(label: str = "360p", bitrate: int = 800_000, size_bytes: int = 564) -> dict:
    return {
        "quality_label": label,
        "width": 640,
        "height": 360,
        "bitrate": bitrate,
        "segment_dir_ref": f"hls/x/{label}",
        "manifest_ref": f"hls/x/{label}/x_{label}.m3u8",
        "size_bytes": size_bytes,
        "segment_count": 3,
    }


@pytest.fixture
def store(session) -> StateStore:
    return StateStore(session)


async def create(store: StateStore) -> uuid.UUID:
    asset_id = uuid.uuid4()
    await store.create_asset(asset_id, source_path="/uploads/clip.mp4", title="Clip", tags=["a"])
    return asset_id


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_created_asset_is_uploaded(self, store) -> None:
        asset_id = await create(store)
        snapshot = await store.get_status(asset_id)
        assert snapshot.status == AssetStatus.UPLOADED.value
        assert snapshot.progress == 0
        assert snapshot.error is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store) -> None:
        asset_id = await create(store)
        with pytest.raises(AssetAlreadyExistsError):
            await store.create_asset(asset_id, source_path="/uploads/other.mp4")

    @pytest.mark.asyncio
    async def test_unknown_asset(self, store) -> None:
        with pytest.raises(AssetNotFoundError):
            await store.get_status(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_begin_run_counts_runs(self, store) -> None:
        asset_id = await create(store)
        asset = await store.begin_run(asset_id)
        assert asset.status == AssetStatus.PROCESSING.value
        assert asset.run_count == 1
        assert asset.processing_started_at is not None

    @pytest.mark.asyncio
    async def test_begin_run_twice_is_concurrent(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        with pytest.raises(ConcurrentRunError):
            await store.begin_run(asset_id, reprocess=True)

    @pytest.mark.asyncio
    async def test_ready_needs_a_rendition(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        with pytest.raises(InvalidStateTransitionError):
            await store.mark_ready(asset_id, "hls/x/master.m3u8")
        assert (await store.get_status(asset_id)).status == AssetStatus.PROCESSING.value

    @pytest.mark.asyncio
    async def test_ready_sets_full_progress_and_publishes_once(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        await store.upsert_rendition(asset_id, **rendition_fields())
        first = await store.mark_ready(asset_id, "hls/x/master.m3u8")
        published_at = first.published_at
        assert first.progress == 100
        assert published_at is not None

        await store.begin_run(asset_id, reprocess=True)
        assert (await store.get_status(asset_id)).progress == 0
        await store.upsert_rendition(asset_id, **rendition_fields())
        second = await store.mark_ready(asset_id, "hls/x/master.m3u8")
        assert second.published_at == published_at
        assert second.run_count == 2

    @pytest.mark.asyncio
    async def test_failed_run_drops_renditions(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        await store.upsert_rendition(asset_id, **rendition_fields("360p"))
        await store.upsert_rendition(asset_id, **rendition_fields("480p", bitrate=1_200_000))

        asset = await store.mark_failed(asset_id, "All renditions failed")
        assert asset.status == AssetStatus.FAILED.value
        assert asset.error_message == "All renditions failed"
        assert asset.manifest_ref is None
        assert await store.renditions.list_for_asset(asset_id) == []

    @pytest.mark.asyncio
    async def test_reprocess_clears_error(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        await store.mark_failed(asset_id, "boom")
        await store.begin_run(asset_id, reprocess=True)
        assert (await store.get_status(asset_id)).error is None

    @pytest.mark.asyncio
    async def test_delete(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        await store.upsert_rendition(asset_id, **rendition_fields())
        await store.delete_asset(asset_id)
        with pytest.raises(AssetNotFoundError):
            await store.get_asset(asset_id)


class TestRenditionUpsert:
    @pytest.mark.asyncio
    async def test_same_quality_keeps_one_row(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        await store.upsert_rendition(asset_id, **rendition_fields(size_bytes=100))
        await store.upsert_rendition(asset_id, **rendition_fields(size_bytes=200))

        rows = await store.renditions.list_for_asset(asset_id)
        assert len(rows) == 1
        assert rows[0].size_bytes == 200

    @pytest.mark.asyncio
    async def test_listed_by_bitrate(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        await store.upsert_rendition(asset_id, **rendition_fields("480p", bitrate=1_200_000))
        await store.upsert_rendition(asset_id, **rendition_fields("360p", bitrate=800_000))

        labels = [r.quality_label for r in await store.renditions.list_for_asset(asset_id)]
        assert labels == ["360p", "480p"]


class TestProgressUpdates:
    @pytest.mark.asyncio
    async def test_lower_values_ignored(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        assert await store.update_progress(asset_id, 40) == 40
        assert await store.update_progress(asset_id, 25) == 40
        assert await store.update_progress(asset_id, 140) == 100
        assert (await store.get_status(asset_id)).progress == 100


class TestRunScopedWrites:
    @pytest.mark.asyncio
    async def test_current_run_writes(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)

        assert await store.update_progress(asset_id, 30, run=1) == 30
        await store.upsert_rendition(asset_id, run=1, **rendition_fields())
        asset = await store.mark_ready(asset_id, "hls/x/master.m3u8", run=1)
        assert asset.status == AssetStatus.READY.value

    @pytest.mark.asyncio
    async def test_writes_after_external_failure_rejected(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        await store.update_progress(asset_id, 30, run=1)
        await store.mark_failed(asset_id, "Processing timed out")

        with pytest.raises(StaleRunError):
            await store.update_progress(asset_id, 60, run=1)
        with pytest.raises(StaleRunError):
            await store.upsert_rendition(asset_id, run=1, **rendition_fields())
        with pytest.raises(StaleRunError):
            await store.mark_ready(asset_id, "hls/x/master.m3u8", run=1)
        with pytest.raises(StaleRunError):
            await store.mark_failed(asset_id, "late failure", run=1)

        asset = await store.get_asset(asset_id, with_renditions=True)
        assert asset.status == AssetStatus.FAILED.value
        assert asset.error_message == "Processing timed out"
        assert asset.progress == 30
        assert asset.renditions == []

    @pytest.mark.asyncio
    async def test_late_ready_cannot_finish_newer_run(self, store) -> None:
        asset_id = await create(store)
        await store.begin_run(asset_id)
        await store.upsert_rendition(asset_id, run=1, **rendition_fields())
        await store.mark_failed(asset_id, "Processing timed out")
        await store.begin_run(asset_id, reprocess=True)
        await store.upsert_rendition(asset_id, run=2, **rendition_fields("480p"))

        with pytest.raises(StaleRunError):
            await store.mark_ready(asset_id, "hls/x/master.m3u8", run=1)
        with pytest.raises(StaleRunError):
            await store.clear_renditions(asset_id, run=1)

        asset = await store.get_asset(asset_id, with_renditions=True)
        assert asset.status == AssetStatus.PROCESSING.value
        assert asset.run_count == 2
        assert [r.quality_label for r in asset.renditions] == ["480p"]

    @pytest.mark.asyncio
    async def test_claim_restarts_stall_clock(self, store) -> None:
        asset_id = await create(store)
        admitted = (await store.begin_run(asset_id)).processing_started_at

        claimed = await store.claim_run(asset_id, 1)

        assert claimed.processing_started_at >= admitted
        with pytest.raises(StaleRunError):
            await store.claim_run(asset_id, 2)
