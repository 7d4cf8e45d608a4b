"""Upload-related schemas."""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ChunkProgressResponse(BaseModel):
    """Returned for every chunk that does not complete its session."""
    status: str = Field(..., description="'in_progress' or 'assembling'")
    upload_id: str = Field(..., description="Upload session ID")
    received_chunks: int = Field(..., description="Chunks persisted so far")
    total_chunks: int = Field(..., description="Declared number of chunks")
    progress: float = Field(..., description="Completion percentage")


class UploadCompletedResponse(BaseModel):
    """Returned once the final file has been committed."""
    status: str = Field("completed", description="Always 'completed'")
    upload_id: Optional[str] = Field(None, description="Upload session ID")
    filename: str = Field(..., description="Original filename")
    stored_filename: str = Field(..., description="Name of the file in the output directory")
    size: int = Field(..., description="Final file size in bytes")
    total_chunks: Optional[int] = Field(None, description="Number of chunks the file was sent in")


class SessionStatusResponse(BaseModel):
    """Schema for upload session status."""
    upload_id: str
    filename: str
    status: str
    total_chunks: int
    total_size: int
    received_chunks: int
    missing_chunks: List[int]
    progress: float
    stored_filename: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class UploadCancelledResponse(BaseModel):
    status: str = "cancelled"
    upload_id: str


class ClientConfigResponse(BaseModel):
    """Limits a browser client needs to split files into chunks."""
    max_upload_size: int = Field(..., description="Maximum total file size in bytes")
    max_chunk_size: int = Field(..., description="Maximum chunk payload in bytes")
    max_concurrent_chunks: int = Field(..., description="Suggested number of parallel chunk requests")
    max_total_chunks: int = Field(..., description="Maximum number of chunks per upload")


class UploadStatsResponse(BaseModel):
    sessions: Dict[str, int]
    staged_sessions: int
    running_completions: int
    timestamp: datetime


class TusHookRequest(BaseModel):
    """Body of a tusd HTTP hook request; only the fields used here are declared."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: Optional[str] = Field(None, alias="Type", description="Hook name, e.g. 'post-finish'")
    event: Dict[str, Any] = Field(default_factory=dict, alias="Event", description="Hook event with upload info")


class TusHookResponse(BaseModel):
    status: str
    upload_id: Optional[str] = None
    filename: Optional[str] = None
    stored_filename: Optional[str] = None
    size: Optional[int] = None
    hook: Optional[str] = None
