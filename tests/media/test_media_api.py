"""API tests for upload handoff, status, reprocess and delete."""

import uuid

import pytest

from conftest import RecordingQueue
from reelpipe.modules.transcoding.queue import get_processing_queue

API = "/api/v1/media"


async def handoff(client, upload, asset_id=None, **extra):
    body = {
        "assetId": str(asset_id or uuid.uuid4()),
        "sourceFilePath": str(upload),
        "title": "Clip",
        "tags": ["travel"],
        **extra,
    }
    return await client.post(f"{API}/handoff", json=body)


class TestHandoff:
    @pytest.mark.asyncio
    async def test_accepted_and_queued(self, client, queue, make_upload) -> None:
        asset_id = uuid.uuid4()
        response = await handoff(client, make_upload(), asset_id, ownerId="user-1", originalFilename="clip.mp4")

        assert response.status_code == 202
        data = response.json()
        assert data["assetId"] == str(asset_id)
        assert data["status"] == "processing"
        assert queue.enqueued == [asset_id]

        status_response = await client.get(f"{API}/{asset_id}/status")
        assert status_response.status_code == 200
        assert status_response.json() == {"status": "processing", "progress": 0, "error": None}

    @pytest.mark.asyncio
    async def test_missing_upload(self, client, queue, upload_dir) -> None:
        response = await handoff(client, upload_dir / "nope.mp4")
        assert response.status_code == 400
        assert queue.enqueued == []

    @pytest.mark.asyncio
    async def test_duplicate_asset_id(self, client, make_upload) -> None:
        asset_id = uuid.uuid4()
        assert (await handoff(client, make_upload("a.mp4"), asset_id)).status_code == 202
        response = await handoff(client, make_upload("b.mp4"), asset_id)
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_body(self, client) -> None:
        response = await client.post(f"{API}/handoff", json={"assetId": "not-a-uuid"})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_full_queue_fails_asset(self, client, make_upload) -> None:
        from reelpipe.main import app

        app.dependency_overrides[get_processing_queue] = lambda: RecordingQueue(full=True)
        asset_id = uuid.uuid4()

        response = await handoff(client, make_upload(), asset_id)

        assert response.status_code == 503
        status_response = await client.get(f"{API}/{asset_id}/status")
        assert status_response.json()["status"] == "failed"
        assert "queue is full" in status_response.json()["error"]


class TestStatusAndDetail:
    @pytest.mark.asyncio
    async def test_unknown_asset(self, client) -> None:
        asset_id = uuid.uuid4()
        assert (await client.get(f"{API}/{asset_id}/status")).status_code == 404
        assert (await client.get(f"{API}/{asset_id}")).status_code == 404

    @pytest.mark.asyncio
    async def test_ready_asset_detail(self, client, pipeline, make_upload) -> None:
        asset_id = uuid.uuid4()
        await handoff(client, make_upload(), asset_id)
        await pipeline.run(asset_id)

        status_response = await client.get(f"{API}/{asset_id}/status")
        assert status_response.json() == {"status": "ready", "progress": 100, "error": None}

        data = (await client.get(f"{API}/{asset_id}")).json()
        assert data["status"] == "ready"
        assert data["tags"] == ["travel"]
        assert data["manifest_ref"] == f"hls/{asset_id}/master.m3u8"
        assert [r["quality_label"] for r in data["renditions"]] == ["360p", "480p", "720p"]
        assert data["published_at"] is not None


class TestReprocess:
    @pytest.mark.asyncio
    async def test_while_processing(self, client, make_upload) -> None:
        asset_id = uuid.uuid4()
        await handoff(client, make_upload(), asset_id)
        response = await client.post(f"{API}/{asset_id}/reprocess")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_ready_asset_reprocessed(self, client, queue, pipeline, make_upload) -> None:
        asset_id = uuid.uuid4()
        await handoff(client, make_upload(), asset_id)
        await pipeline.run(asset_id)

        response = await client.post(f"{API}/{asset_id}/reprocess")

        assert response.status_code == 202
        assert response.json()["runCount"] == 2
        assert response.json()["status"] == "processing"
        assert queue.enqueued == [asset_id, asset_id]

        result = await pipeline.run(asset_id)
        assert result.status == "ready"

    @pytest.mark.asyncio
    async def test_missing_original(self, client, pipeline, layout, make_upload) -> None:
        asset_id = uuid.uuid4()
        await handoff(client, make_upload(), asset_id)
        await pipeline.run(asset_id)
        layout.original_path(asset_id, ".mp4").unlink()

        response = await client.post(f"{API}/{asset_id}/reprocess")

        assert response.status_code == 409
        status_response = await client.get(f"{API}/{asset_id}/status")
        assert status_response.json()["status"] == "ready"

    @pytest.mark.asyncio
    async def test_unknown_asset(self, client) -> None:
        response = await client.post(f"{API}/{uuid.uuid4()}/reprocess")
        assert response.status_code == 404


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_removes_everything(self, client, pipeline, layout, make_upload) -> None:
        asset_id = uuid.uuid4()
        await handoff(client, make_upload(), asset_id)
        await pipeline.run(asset_id)
        assert layout.owned_paths(asset_id)

        response = await client.delete(f"{API}/{asset_id}")

        assert response.status_code == 204
        assert layout.owned_paths(asset_id) == []
        assert (await client.get(f"{API}/{asset_id}/status")).status_code == 404

    @pytest.mark.asyncio
    async def test_delete_while_processing(self, client, make_upload) -> None:
        asset_id = uuid.uuid4()
        await handoff(client, make_upload(), asset_id)
        response = await client.delete(f"{API}/{asset_id}")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_delete_unknown(self, client) -> None:
        response = await client.delete(f"{API}/{uuid.uuid4()}")
        assert response.status_code == 404
