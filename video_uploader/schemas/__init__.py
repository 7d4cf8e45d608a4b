"""Pydantic schemas for API requests and responses."""
from video_uploader.schemas.upload import (
    ChunkProgressResponse,
    ClientConfigResponse,
    SessionStatusResponse,
    TusHookRequest,
    TusHookResponse,
    UploadCancelledResponse,
    UploadCompletedResponse,
    UploadStatsResponse,
)

__all__ = [
    # Chunk upload schemas
    "ChunkProgressResponse",
    "UploadCompletedResponse",
    # Session schemas
    "SessionStatusResponse",
    "UploadCancelledResponse",
    "UploadStatsResponse",
    "ClientConfigResponse",
    # tus hook schemas
    "TusHookRequest",
    "TusHookResponse",
]
