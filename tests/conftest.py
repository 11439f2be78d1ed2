"""Shared fixtures: in-memory database, storage layout and fake collaborators."""

import uuid
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from reelpipe.core.database import Base, get_db
from reelpipe.core.storage import MediaLayout, get_media_layout, rendition_manifest_name
from reelpipe.modules.media import models  # noqa: F401
from reelpipe.modules.media.repository import StateStore
from reelpipe.modules.notification.notifier import CompletionEvent, CompletionNotifier
from reelpipe.modules.transcoding.abr import QualityPreset
from reelpipe.modules.transcoding.exceptions import (
    InvalidMediaError,
    RenditionError,
    ThumbnailError,
)
from reelpipe.modules.transcoding.ffmpeg import ProbeResult, RenditionOutput
from reelpipe.modules.transcoding.pipeline import ProcessingPipeline
from reelpipe.modules.transcoding.queue import ProcessingQueue, QueueFullError, get_processing_queue

SEGMENT_BYTES = b"\x47" * 188
SEGMENTS_PER_RENDITION = 3


class FakeToolkit:
    """Stands in for ffmpeg: writes small but well-formed HLS output."""

    def __init__(
        self,
        width: int = 1280,
        height: int = 720,
        duration: float = 30.0,
        failing: tuple[str, ...] = (),
        invalid: bool = False,
        thumbnail_fails: bool = False,
    ):
        self.width = width
        self.height = height
        self.duration = duration
        self.failing = set(failing)
        self.invalid = invalid
        self.thumbnail_fails = thumbnail_fails
        self.transcoded: list[str] = []

    async def probe(self, path) -> ProbeResult:
        if self.invalid:
            raise InvalidMediaError("No video stream found")
        return ProbeResult(
            path=str(path),
            duration=self.duration,
            size=Path(path).stat().st_size,
            bitrate=4_000_000,
            format_name="mov,mp4,m4a,3gp,3g2,mj2",
            width=self.width,
            height=self.height,
            frame_rate=29.97,
            video_codec="h264",
            pixel_format="yuv420p",
            audio_codec="aac",
            has_audio=True,
        )

    async def extract_thumbnail(self, source, dest: Path, duration: float) -> Path:
        if self.thumbnail_fails:
            raise ThumbnailError("Thumbnail extraction failed: no frame decoded")
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(b"\xff\xd8\xff\xe0thumb")
        return dest

    async def transcode_rendition(
        self,
        source,
        preset: QualityPreset,
        output_dir: Path,
        asset_id: uuid.UUID,
        duration: float,
        on_progress=None,
    ) -> RenditionOutput:
        self.transcoded.append(preset.label)
        output_dir.mkdir(parents=True, exist_ok=True)
        if on_progress:
            for percent in (10, 50, 90):
                await on_progress(percent)
        if preset.label in self.failing:
            (output_dir / "partial.ts").write_bytes(b"\x00")
            raise RenditionError(preset.label, "ffmpeg exited with code 1")

        manifest = output_dir / rendition_manifest_name(asset_id, preset.label)
        lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-PLAYLIST-TYPE:VOD"]
        for i in range(SEGMENTS_PER_RENDITION):
            name = f"{asset_id}_{preset.label}_{i:03d}.ts"
            (output_dir / name).write_bytes(SEGMENT_BYTES)
            lines += ["#EXTINF:10.0,", name]
        lines.append("#EXT-X-ENDLIST")
        manifest.write_text("\n".join(lines) + "\n")
        return RenditionOutput(
            preset=preset,
            output_dir=output_dir,
            manifest_path=manifest,
            segment_count=SEGMENTS_PER_RENDITION,
            size_bytes=SEGMENTS_PER_RENDITION * len(SEGMENT_BYTES),
        )


class RecordingNotifier(CompletionNotifier):
    channel_name = "recording"

    def __init__(self):
        self.events: list[CompletionEvent] = []

    async def deliver(self, event: CompletionEvent) -> None:
        self.events.append(event)


class RecordingQueue(ProcessingQueue):
    def __init__(self, full: bool = False):
        self.enqueued: list[uuid.UUID] = []
        self.full = full

    async def enqueue(self, asset_id: uuid.UUID) -> None:
        if self.full:
            raise QueueFullError("Processing queue is full, try again later")
        self.enqueued.append(asset_id)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def layout(tmp_path) -> MediaLayout:
    layout = MediaLayout(tmp_path / "media")
    layout.ensure_roots()
    return layout


@pytest.fixture
def upload_dir(tmp_path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def toolkit() -> FakeToolkit:
    return FakeToolkit()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def queue() -> RecordingQueue:
    return RecordingQueue()


@pytest.fixture
def pipeline(session_maker, layout, toolkit, notifier) -> ProcessingPipeline:
    return ProcessingPipeline(
        session_maker=session_maker,
        layout=layout,
        toolkit=toolkit,
        notifier=notifier,
        max_concurrent_transcodes=2,
    )


@pytest.fixture
def make_upload(upload_dir):
    def _make(name: str = "clip.mp4", content: bytes = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 1000) -> Path:
        path = upload_dir / name
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def admit_asset(session_maker, make_upload):
    """Create an asset from a fresh upload and admit it into processing."""

    async def _admit(asset_id: Optional[uuid.UUID] = None, name: str = "clip.mp4") -> uuid.UUID:
        asset_id = asset_id or uuid.uuid4()
        upload = make_upload(name)
        async with session_maker() as session:
            store = StateStore(session)
            await store.create_asset(asset_id, source_path=str(upload), title="Clip")
            await store.begin_run(asset_id)
        return asset_id

    return _admit


@pytest_asyncio.fixture
async def client(session_maker, layout, queue):
    from reelpipe.main import app

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_media_layout] = lambda: layout
    app.dependency_overrides[get_processing_queue] = lambda: queue
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            yield client
    finally:
        app.dependency_overrides.clear()
