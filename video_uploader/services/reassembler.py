"""Concatenates the staged chunks of a session into one artifact."""
from pathlib import Path

import aiofiles
import aiofiles.os

from video_uploader.core.decorators import async_performance_monitor
from video_uploader.core.exceptions import (
    MissingChunkException,
    SizeMismatchException,
    StorageException,
)
from video_uploader.services.chunk_store import ChunkStore
from video_uploader.services.transfer import DEFAULT_BUFFER_SIZE, copy_stream
from video_uploader.utils.logger import get_logger

logger = get_logger(__name__)


class Reassembler:
    """Builds ``<staging>/<upload_id>/combined`` from ``chunk_0 .. chunk_{N-1}``."""

    def __init__(self, chunk_store: ChunkStore, buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.chunk_store = chunk_store
        self.buffer_size = buffer_size

    @async_performance_monitor("upload.reassemble", slow_threshold=30.0)
    async def reassemble(self, upload_id: str, total_chunks: int, total_size: int) -> Path:
        """
        Stream every chunk, in ascending index order, into the staging artifact.

        Args:
            upload_id: Session identifier
            total_chunks: Declared number of chunks
            total_size: Declared total size in bytes

        Returns:
            Path: Location of the combined artifact

        Raises:
            MissingChunkException: A chunk file is absent
            SizeMismatchException: The artifact length differs from ``total_size``;
                the artifact is left in place
            StorageException: I/O failure while copying
        """
        artifact = self.chunk_store.artifact_path(upload_id)
        if not artifact.parent.is_dir():
            raise MissingChunkException(upload_id, 0)
        logger.info("Reassembling %s from %d chunks", upload_id, total_chunks)

        try:
            async with aiofiles.open(artifact, "wb") as out:
                for index in range(total_chunks):
                    chunk_path = self.chunk_store.chunk_path(upload_id, index)
                    try:
                        chunk = await aiofiles.open(chunk_path, "rb")
                    except FileNotFoundError:
                        logger.error("Chunk %d of %s missing during reassembly", index, upload_id)
                        raise MissingChunkException(upload_id, index)
                    async with chunk:
                        await copy_stream(out, chunk, buffer_size=self.buffer_size)
        except OSError as e:
            raise StorageException(
                f"Failed to reassemble {upload_id}: {e}",
                operation="reassemble",
                error_code="REASSEMBLY_ERROR",
                details={"upload_id": upload_id},
                original_error=e
            ) from e

        actual = (await aiofiles.os.stat(artifact)).st_size
        if actual != total_size:
            logger.error("Size mismatch for %s: declared %d, combined %d", upload_id, total_size, actual)
            raise SizeMismatchException(upload_id, total_size, actual)

        logger.info("Reassembled %s (%d bytes)", upload_id, actual)
        return artifact
