"""Local media storage layout.

Every artifact the pipeline writes lives under one of three roots:

    originals/{asset_id}_original.{ext}
    hls/{asset_id}/{quality}/{asset_id}_{quality}.m3u8  (+ segments)
    hls/{asset_id}/master.m3u8
    thumbnails/{asset_id}_thumb.jpg

``MediaLayout`` is the only place these names are built, and the same rules
are used in reverse to find which asset owns a stored entry.
"""

import shutil
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Union

from reelpipe.core.config import settings

ORIGINALS_DIR = "originals"
HLS_DIR = "hls"
THUMBNAILS_DIR = "thumbnails"
STORAGE_ROOTS = (ORIGINALS_DIR, HLS_DIR, THUMBNAILS_DIR)

MASTER_MANIFEST_NAME = "master.m3u8"
ORIGINAL_MARKER = "_original"
THUMBNAIL_SUFFIX = "_thumb.jpg"


class StoragePathError(ValueError):
    """Raised when a storage reference escapes the storage root."""


@dataclass(frozen=True)
class StoredEntry:
    """A top-level entry found under one of the storage roots."""
    root: str
    path: Path
    asset_id: Optional[uuid.UUID]


def rendition_manifest_name(asset_id: uuid.UUID, quality: str) -> str:
    return f"{asset_id}_{quality}.m3u8"


def segment_name_pattern(asset_id: uuid.UUID, quality: str) -> str:
    return f"{asset_id}_{quality}_%03d.ts"


def _parse_uuid(value: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(value)
    except ValueError:
        return None


class MediaLayout:
    """Builds and interprets storage paths for media assets."""

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path).resolve()

    def ensure_roots(self) -> None:
        for root in STORAGE_ROOTS:
            (self.base_path / root).mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # references
    # ------------------------------------------------------------------

    def resolve(self, ref: str) -> Path:
        """Turn a storage-relative reference into an absolute path."""
        path = (self.base_path / ref).resolve()
        if path != self.base_path and self.base_path not in path.parents:
            raise StoragePathError(f"Reference escapes storage root: {ref}")
        return path

    def relative(self, path: Path) -> str:
        return Path(path).resolve().relative_to(self.base_path).as_posix()

    # ------------------------------------------------------------------
    # naming rules
    # ------------------------------------------------------------------

    def original_path(self, asset_id: uuid.UUID, extension: str) -> Path:
        ext = extension.lower()
        if ext and not ext.startswith("."):
            ext = f".{ext}"
        return self.base_path / ORIGINALS_DIR / f"{asset_id}{ORIGINAL_MARKER}{ext}"

    def asset_hls_dir(self, asset_id: uuid.UUID) -> Path:
        return self.base_path / HLS_DIR / str(asset_id)

    def rendition_dir(self, asset_id: uuid.UUID, quality: str) -> Path:
        return self.asset_hls_dir(asset_id) / quality

    def rendition_manifest_path(self, asset_id: uuid.UUID, quality: str) -> Path:
        return self.rendition_dir(asset_id, quality) / rendition_manifest_name(asset_id, quality)

    def segment_pattern(self, asset_id: uuid.UUID, quality: str) -> Path:
        return self.rendition_dir(asset_id, quality) / segment_name_pattern(asset_id, quality)

    def master_manifest_path(self, asset_id: uuid.UUID) -> Path:
        return self.asset_hls_dir(asset_id) / MASTER_MANIFEST_NAME

    def thumbnail_path(self, asset_id: uuid.UUID) -> Path:
        return self.base_path / THUMBNAILS_DIR / f"{asset_id}{THUMBNAIL_SUFFIX}"

    # ------------------------------------------------------------------
    # ownership
    # ------------------------------------------------------------------

    def owner_of(self, root: str, name: str) -> Optional[uuid.UUID]:
        """Return the asset id owning a top-level entry of ``root``, if any."""
        if root == ORIGINALS_DIR:
            head, marker, tail = name.partition(ORIGINAL_MARKER)
            if not marker or (tail and not tail.startswith(".")):
                return None
            return _parse_uuid(head)
        if root == HLS_DIR:
            return _parse_uuid(name)
        if root == THUMBNAILS_DIR:
            if not name.endswith(THUMBNAIL_SUFFIX):
                return None
            return _parse_uuid(name[: -len(THUMBNAIL_SUFFIX)])
        return None

    def owned_paths(self, asset_id: uuid.UUID) -> list[Path]:
        """All existing artifacts that belong to ``asset_id``."""
        owned = []
        for entry in self.iter_stored_entries():
            if entry.asset_id == asset_id:
                owned.append(entry.path)
        return owned

    def iter_stored_entries(self) -> Iterator[StoredEntry]:
        """Yield every top-level entry under each storage root."""
        for root in STORAGE_ROOTS:
            root_path = self.base_path / root
            if not root_path.is_dir():
                continue
            for path in sorted(root_path.iterdir()):
                yield StoredEntry(root=root, path=path, asset_id=self.owner_of(root, path.name))

    # ------------------------------------------------------------------
    # removal
    # ------------------------------------------------------------------

    def remove(self, path: Path) -> None:
        """Delete a file or directory tree. Missing paths are ignored."""
        if path.is_dir() and not path.is_symlink():
            shutil.rmtree(path)
        else:
            path.unlink(missing_ok=True)

    def remove_asset_artifacts(self, asset_id: uuid.UUID) -> list[Path]:
        """Delete every artifact owned by ``asset_id``.

        Returns:
            Paths that could not be removed.
        """
        failed = []
        for path in self.owned_paths(asset_id):
            try:
                self.remove(path)
            except OSError:
                failed.append(path)
        return failed


def get_media_layout() -> MediaLayout:
    """FastAPI dependency for the configured storage layout."""
    return MediaLayout(settings.MEDIA_STORAGE_PATH)
