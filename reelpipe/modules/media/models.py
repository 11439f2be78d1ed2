"""Media asset and rendition models.

A MediaAsset is one uploaded video and its processing state; each Rendition
is one quality of that video transcoded into HLS segments.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from reelpipe.core.database import Base


class AssetStatus(str, Enum):
    """Processing status of a media asset."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class AssetVisibility(str, Enum):
    PUBLIC = "public"
    UNLISTED = "unlisted"
    PRIVATE = "private"


class MediaAsset(Base):
    """An uploaded video owned by the pipeline from handoff to deletion."""

    __tablename__ = "media_assets"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Handoff metadata
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    visibility: Mapped[str] = mapped_column(String(20), default=AssetVisibility.PRIVATE.value)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list)
    categories: Mapped[list[str]] = mapped_column(JSON, default=list)
    original_filename: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    source_path: Mapped[str] = mapped_column(String(1024), nullable=False)

    # Processing state
    status: Mapped[str] = mapped_column(
        String(20), default=AssetStatus.UPLOADED.value, index=True
    )
    progress: Mapped[int] = mapped_column(Integer, default=0)  # 0-100
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    run_count: Mapped[int] = mapped_column(Integer, default=0)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Probed source metadata
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # seconds
    width: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    height: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    frame_rate: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    bitrate: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # bps
    video_codec: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    audio_codec: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Outputs, relative to the media storage root
    thumbnail_ref: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)
    manifest_ref: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
    published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    renditions: Mapped[list["Rendition"]] = relationship(
        "Rendition",
        back_populates="asset",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="Rendition.bitrate",
    )

    def __repr__(self) -> str:
        return f"<MediaAsset {self.id} - {self.status} ({self.progress}%)>"


class Rendition(Base):
    """One transcoded, segmented quality of a media asset."""

    __tablename__ = "renditions"
    __table_args__ = (
        UniqueConstraint("asset_id", "quality_label", name="uq_rendition_asset_quality"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    asset_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("media_assets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    quality_label: Mapped[str] = mapped_column(String(20), nullable=False)

    width: Mapped[int] = mapped_column(Integer, nullable=False)
    height: Mapped[int] = mapped_column(Integer, nullable=False)
    bitrate: Mapped[int] = mapped_column(Integer, nullable=False)  # bps

    segment_dir_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    manifest_ref: Mapped[str] = mapped_column(String(1024), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, default=0)
    segment_count: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    asset: Mapped["MediaAsset"] = relationship("MediaAsset", back_populates="renditions")

    def __repr__(self) -> str:
        return f"<Rendition {self.asset_id} - {self.quality_label}>"
