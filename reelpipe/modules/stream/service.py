"""Byte-range media delivery.

Serves staged originals, master playlists, rendition playlists and segments
of ready assets. A single ``bytes=`` range per request is honoured; every
response streams from its own file handle.
"""

import logging
import mimetypes
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

from fastapi import Response
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession

from reelpipe.core.logging import log_warning
from reelpipe.core.metrics import STREAM_BYTES_SERVED_TOTAL, STREAM_RESPONSES_TOTAL
from reelpipe.core.storage import MediaLayout, StoragePathError
from reelpipe.modules.media.exceptions import (
    AssetNotFoundError,
    AssetNotReadyError,
    MediaServiceError,
)
from reelpipe.modules.media.models import AssetStatus, MediaAsset
from reelpipe.modules.media.repository import MediaAssetRepository, RenditionRepository

logger = logging.getLogger(__name__)

ORIGINAL_QUALITIES = frozenset({"auto", "original"})

CONTENT_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".jpg": "image/jpeg",
}

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$")


class MediaFileNotFoundError(MediaServiceError):
    """Raised when the asset exists but the requested file does not."""

    pass


class RangeNotSatisfiableError(Exception):
    """Raised for a well-formed range that lies outside the file."""

    def __init__(self, size: int):
        super().__init__(f"Range not satisfiable for {size} bytes")
        self.size = size


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range of a file."""
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range_header(header: Optional[str], size: int) -> Optional[ByteRange]:
    """Parse a ``Range`` header for a file of ``size`` bytes.

    Supports ``bytes=a-b``, ``bytes=a-`` and ``bytes=-n``. Headers that are
    malformed or ask for several ranges are ignored and the whole file is
    served.

    Returns:
        The range to serve, or None for the whole file

    Raises:
        RangeNotSatisfiableError: If the range starts past the end of the file
    """
    if not header:
        return None
    match = _RANGE_RE.match(header.strip())
    if match is None:
        return None

    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiableError(size)
        return ByteRange(max(0, size - suffix), size - 1)

    start = int(first)
    end = int(last) if last else size - 1
    if last and end < start:
        return None
    if start >= size:
        raise RangeNotSatisfiableError(size)
    return ByteRange(start, min(end, size - 1))


def content_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    if suffix in CONTENT_TYPES:
        return CONTENT_TYPES[suffix]
    guessed, _ = mimetypes.guess_type(path.name)
    return guessed or "application/octet-stream"


@dataclass
class MediaFile:
    """A file ready to be streamed."""
    path: Path
    size: int
    content_type: str


def iter_file(path: Path, start: int, length: int, chunk_size: int) -> Iterator[bytes]:
    """Yield ``length`` bytes of ``path`` from ``start`` in chunks."""
    with open(path, "rb") as f:
        f.seek(start)
        remaining = length
        while remaining > 0:
            data = f.read(min(chunk_size, remaining))
            if not data:
                break
            remaining -= len(data)
            STREAM_BYTES_SERVED_TOTAL.inc(len(data))
            yield data


def build_file_response(
    media_file: MediaFile,
    range_header: Optional[str],
    chunk_size: int = 1024 * 1024,
    cache_max_age: int = 31536000,
) -> Response:
    """Full (200), partial (206) or unsatisfiable (416) response for a file."""
    size = media_file.size
    try:
        byte_range = parse_range_header(range_header, size)
    except RangeNotSatisfiableError:
        STREAM_RESPONSES_TOTAL.labels(status_code="416").inc()
        return Response(
            status_code=416,
            headers={"Content-Range": f"bytes */{size}", "Accept-Ranges": "bytes"},
        )

    headers = {
        "Accept-Ranges": "bytes",
        "Cache-Control": f"public, max-age={cache_max_age}",
    }
    if byte_range is None:
        status_code, start, length = 200, 0, size
    else:
        status_code, start, length = 206, byte_range.start, byte_range.length
        headers["Content-Range"] = byte_range.content_range(size)
    headers["Content-Length"] = str(length)

    STREAM_RESPONSES_TOTAL.labels(status_code=str(status_code)).inc()
    return StreamingResponse(
        iter_file(media_file.path, start, length, chunk_size),
        status_code=status_code,
        media_type=media_file.content_type,
        headers=headers,
    )


class StreamService:
    """Resolves stream requests to files of ready assets."""

    def __init__(self, session: AsyncSession, layout: MediaLayout):
        self.session = session
        self.layout = layout
        self.asset_repo = MediaAssetRepository(session)
        self.rendition_repo = RenditionRepository(session)

    async def _ready_asset(self, asset_id: uuid.UUID) -> MediaAsset:
        asset = await self.asset_repo.get_by_id(asset_id)
        if asset is None:
            raise AssetNotFoundError(f"Media asset {asset_id} not found")
        if asset.status != AssetStatus.READY.value:
            raise AssetNotReadyError(asset.status)
        return asset

    def _media_file(self, path: Path) -> MediaFile:
        if not path.is_file():
            raise MediaFileNotFoundError("Media file not found")
        return MediaFile(path=path, size=path.stat().st_size, content_type=content_type_for(path))

    def _resolve_ref(self, ref: Optional[str]) -> Path:
        if not ref:
            raise MediaFileNotFoundError("Media file not found")
        path = Path(ref)
        if path.is_absolute():
            return path
        try:
            return self.layout.resolve(ref)
        except StoragePathError:
            raise MediaFileNotFoundError("Media file not found")

    async def open(self, asset_id: uuid.UUID) -> MediaFile:
        """The staged original.

        Raises:
            AssetNotFoundError: If the asset does not exist
            AssetNotReadyError: If the asset is not ready
            MediaFileNotFoundError: If the original is gone
        """
        asset = await self._ready_asset(asset_id)
        return self._media_file(self._resolve_ref(asset.source_path))

    async def rendition_playlist_name(self, asset_id: uuid.UUID, quality: str) -> str:
        """File name of a rendition's playlist inside its directory.

        Raises:
            MediaFileNotFoundError: If the asset has no such quality
        """
        await self._ready_asset(asset_id)
        rendition = await self.rendition_repo.get(asset_id, quality)
        if rendition is None:
            raise MediaFileNotFoundError(f"Quality '{quality}' is not available")
        return Path(rendition.manifest_ref).name

    async def open_master(self, asset_id: uuid.UUID) -> MediaFile:
        asset = await self._ready_asset(asset_id)
        return self._media_file(self._resolve_ref(asset.manifest_ref))

    async def open_rendition_file(
        self, asset_id: uuid.UUID, quality: str, filename: str
    ) -> MediaFile:
        """A playlist or segment inside one rendition's directory."""
        await self._ready_asset(asset_id)
        rendition = await self.rendition_repo.get(asset_id, quality)
        if rendition is None:
            raise MediaFileNotFoundError(f"Quality '{quality}' is not available")

        rendition_dir = self._resolve_ref(rendition.segment_dir_ref)
        path = (rendition_dir / filename).resolve()
        if path.parent != rendition_dir:
            log_warning(logger, "Rejected file outside rendition directory", asset_id=str(asset_id))
            raise MediaFileNotFoundError("Media file not found")
        return self._media_file(path)
