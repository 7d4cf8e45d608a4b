"""Service modules for the chunked upload core."""
from video_uploader.services.chunk_store import ChunkStore
from video_uploader.services.finalizer import Finalizer
from video_uploader.services.reassembler import Reassembler
from video_uploader.services.session_tracker import SessionTracker
from video_uploader.services.transfer import CancellationToken, copy_stream
from video_uploader.services.upload_service import UploadService

__all__ = [
    "CancellationToken",
    "copy_stream",
    "ChunkStore",
    "SessionTracker",
    "Reassembler",
    "Finalizer",
    "UploadService",
]
