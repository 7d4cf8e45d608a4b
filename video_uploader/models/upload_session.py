"""Upload session model."""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Set

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Lifecycle of an upload session."""
    UPLOADING = "uploading"
    ASSEMBLING = "assembling"
    COMPLETED = "completed"
    FAILED = "failed"


class UploadSession(BaseModel):
    """Upload session model."""
    upload_id: str = Field(..., description="Client-generated session ID")
    filename: str = Field(..., description="Original filename as sent by the client")
    total_chunks: int = Field(..., ge=1, description="Declared number of chunks")
    total_size: int = Field(..., ge=0, description="Declared total size in bytes")
    received_chunks: Set[int] = Field(default_factory=set, description="Persisted chunk indices")
    status: SessionStatus = Field(SessionStatus.UPLOADING, description="Upload status")
    stored_filename: Optional[str] = Field(None, description="Name of the final file once completed")
    error_message: Optional[str] = Field(None, description="Last reassembly or finalize error")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    model_config = {
        "json_schema_extra": {
            "example": {
                "upload_id": "upload_k3j9x2a1b",
                "filename": "holiday.mp4",
                "total_chunks": 3,
                "total_size": 2621440,
                "received_chunks": [0, 1],
                "status": "uploading",
                "stored_filename": None,
                "error_message": None,
                "created_at": "2024-01-01T00:00:00Z",
                "updated_at": "2024-01-01T00:00:05Z"
            }
        }
    }

    @property
    def missing_chunks(self) -> List[int]:
        return [i for i in range(self.total_chunks) if i not in self.received_chunks]

    @property
    def is_complete(self) -> bool:
        """All of 0..N-1 received; stray indices outside the range never count."""
        return self.received_count == self.total_chunks

    @property
    def received_count(self) -> int:
        return sum(1 for i in self.received_chunks if 0 <= i < self.total_chunks)

    @property
    def progress(self) -> float:
        return round(self.received_count / self.total_chunks * 100, 2)

    def touch(self) -> None:
        self.updated_at = utcnow()
