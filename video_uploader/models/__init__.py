"""In-memory data models."""
from video_uploader.models.upload_session import SessionStatus, UploadSession

__all__ = [
    "SessionStatus",
    "UploadSession",
]
