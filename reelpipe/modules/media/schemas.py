"""Pydantic schemas for the media API."""

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from reelpipe.modules.media.models import AssetStatus, AssetVisibility


class MediaHandoffRequest(BaseModel):
    """Upload handoff: a raw file has landed at ``sourceFilePath``."""
    asset_id: UUID = Field(..., alias="assetId")
    source_file_path: str = Field(..., alias="sourceFilePath", min_length=1)
    owner_id: Optional[str] = Field(None, alias="ownerId", max_length=64)
    visibility: AssetVisibility = AssetVisibility.PRIVATE
    tags: list[str] = Field(default_factory=list)
    categories: list[str] = Field(default_factory=list)
    title: str = Field(default="", max_length=255)
    description: Optional[str] = None
    original_filename: Optional[str] = Field(None, alias="originalFilename", max_length=512)

    class Config:
        populate_by_name = True


class MediaHandoffResponse(BaseModel):
    asset_id: UUID = Field(..., alias="assetId")
    status: AssetStatus
    message: str

    class Config:
        populate_by_name = True


class AssetStatusResponse(BaseModel):
    """Status read: ``{status, progress, error}``."""
    status: AssetStatus
    progress: int = Field(..., ge=0, le=100)
    error: Optional[str] = None


class RenditionResponse(BaseModel):
    quality_label: str
    width: int
    height: int
    bitrate: int
    manifest_ref: str
    size_bytes: int
    segment_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class MediaAssetResponse(BaseModel):
    """Schema for media asset response."""
    id: UUID
    title: str
    description: Optional[str]
    owner_id: Optional[str]
    visibility: AssetVisibility
    tags: list[str]
    categories: list[str]
    original_filename: Optional[str]
    status: AssetStatus
    progress: int
    error_message: Optional[str]
    run_count: int
    duration: Optional[float]
    width: Optional[int]
    height: Optional[int]
    frame_rate: Optional[float]
    bitrate: Optional[int]
    video_codec: Optional[str]
    audio_codec: Optional[str]
    thumbnail_ref: Optional[str]
    manifest_ref: Optional[str]
    created_at: datetime
    updated_at: datetime
    published_at: Optional[datetime]
    renditions: list[RenditionResponse] = Field(default_factory=list)

    class Config:
        from_attributes = True


class ReprocessResponse(BaseModel):
    asset_id: UUID = Field(..., alias="assetId")
    status: AssetStatus
    run_count: int = Field(..., alias="runCount")
    message: str

    class Config:
        populate_by_name = True
