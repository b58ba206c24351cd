from datetime import datetime
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator


class RenameRequest(BaseModel):
    # Missing names are rejected by the endpoint (400) rather than by validation (422)
    new_name: Optional[str] = Field(
        default=None,
        max_length=255,
        validation_alias=AliasChoices("novo_nome", "new_name"),
    )

    @field_validator("new_name", mode="before")
    @classmethod
    def strip_name(cls, v):
        if isinstance(v, str):
            return v.strip()
        return v


class VideoRecordResponse(BaseModel):
    id: int
    name: str
    description: Optional[str] = ""
    url: str
    duration: float = 0
    size_bytes: int = 0
    playlist_id: Optional[int] = None
    created_at: Optional[datetime] = None
    # Opaque identifier for the stream endpoints
    video_id: str
    stream_url: str

    @field_validator("description", mode="before")
    @classmethod
    def description_default(cls, v):
        return v or ""


class VideoListResponse(BaseModel):
    success: bool = True
    folder: str
    videos: List[VideoRecordResponse]
    sync: dict


class MediaInfoResponse(BaseModel):
    duration: float
    codec: str
    width: int
    height: int


class VideoMetadataResponse(BaseModel):
    success: bool = True
    video_id: str
    name: str
    size: int
    mtime: Optional[float] = None
    permissions: Optional[str] = None
    content_type: str
    media: Optional[MediaInfoResponse] = None


class VideoDeleteResponse(BaseModel):
    success: bool = True
    message: str
    records_removed: int
    cache_invalidated: bool


class VideoRenameResponse(BaseModel):
    success: bool = True
    message: str
    video_id: str
    name: str
    stream_url: str


class CacheFileInfo(BaseModel):
    filename: str
    size: int
    age_seconds: float
    last_accessed_seconds_ago: float


class CacheStatusResponse(BaseModel):
    success: bool = True
    enabled: bool
    total_files: int
    total_size: int
    max_size: int
    usage_percentage: float
    files: List[CacheFileInfo]


class CacheClearResponse(BaseModel):
    success: bool = True
    removed_files: int


class FolderSyncResponse(BaseModel):
    success: bool = True
    message: str
    folder: str
    directory: str
    videos_found: int
    created: int
    skipped: int
    orphans_removed: int
    failed: int


class FolderUsage(BaseModel):
    used: int
    total: int
    percentage: int
    available: int
    database_used: int
    real_used: int
    last_updated: str


class FolderUsageResponse(BaseModel):
    success: bool = True
    usage: FolderUsage
