"""HLS master playlist composition."""

import os
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from reelpipe.core.storage import rendition_manifest_name
from reelpipe.modules.transcoding.exceptions import StorageIOError


@dataclass(frozen=True)
class ManifestEntry:
    """A rendition as it appears in the master playlist."""
    quality_label: str
    width: int
    height: int
    bitrate: int


def render_master_playlist(asset_id: uuid.UUID, renditions: Iterable[ManifestEntry]) -> str:
    """Master playlist text listing ``renditions``, lowest bandwidth first.

    URIs are relative to the master playlist's directory.

    Raises:
        ValueError: If there are no renditions
    """
    entries = sorted(renditions, key=lambda r: (r.bitrate, r.height))
    if not entries:
        raise ValueError("A master playlist needs at least one rendition")

    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-INDEPENDENT-SEGMENTS"]
    for entry in entries:
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={entry.bitrate},RESOLUTION={entry.width}x{entry.height}"
        )
        lines.append(f"{entry.quality_label}/{rendition_manifest_name(asset_id, entry.quality_label)}")
    return "\n".join(lines) + "\n"


def write_master_playlist(
    path: Path, asset_id: uuid.UUID, renditions: Iterable[ManifestEntry]
) -> Path:
    """Atomically write the master playlist to ``path``.

    Readers see either the previous file or the complete new one.

    Raises:
        StorageIOError: If the playlist cannot be written
    """
    content = render_master_playlist(asset_id, renditions)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".master-", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except OSError as e:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)
        raise StorageIOError(f"Could not write master playlist {path}: {e}") from e
    return path
