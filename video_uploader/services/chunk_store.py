"""Per-session staging storage for numbered chunks."""
import os
import re
import secrets
from pathlib import Path
from typing import Any, List, Optional, Set, Tuple

import aiofiles
import aiofiles.os

from video_uploader.core.exceptions import (
    ChunkWriteException,
    PayloadTooLargeException,
    StorageException,
    ValidationException,
)
from video_uploader.services.transfer import DEFAULT_BUFFER_SIZE, CancellationToken, copy_stream
from video_uploader.utils.file_utils import FileProcessor, is_safe_path_segment
from video_uploader.utils.logger import get_logger

logger = get_logger(__name__)

CHUNK_FILE_PATTERN = re.compile(r"^chunk_(\d+)$")
ARTIFACT_NAME = "combined"


class ChunkStore:
    """
    Staging area holding one directory per upload session.

    Each chunk lives in its own ``chunk_<index>`` file, so chunks may arrive
    out of order and may be resent. Bytes are first copied to a uniquely named
    ``.part`` file and renamed into place once complete; a partial write is
    therefore never visible as a chunk.
    """

    def __init__(
        self,
        staging_root: Path,
        max_chunk_bytes: Optional[int] = None,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ):
        self.staging_root = Path(staging_root)
        self.max_chunk_bytes = max_chunk_bytes
        self.buffer_size = buffer_size

    @staticmethod
    def validate_upload_id(upload_id: str) -> str:
        if not isinstance(upload_id, str) or not is_safe_path_segment(upload_id):
            raise ValidationException(
                "upload_id must be 1-128 characters of letters, digits, '.', '_' or '-'",
                field="upload_id"
            )
        return upload_id

    @staticmethod
    def validate_chunk_index(chunk_index: int) -> int:
        if isinstance(chunk_index, bool) or not isinstance(chunk_index, int) or chunk_index < 0:
            raise ValidationException("chunk_index must be a non-negative integer", field="chunk_index")
        return chunk_index

    def session_dir(self, upload_id: str) -> Path:
        return self.staging_root / self.validate_upload_id(upload_id)

    def chunk_path(self, upload_id: str, chunk_index: int) -> Path:
        return self.session_dir(upload_id) / f"chunk_{chunk_index}"

    def artifact_path(self, upload_id: str) -> Path:
        return self.session_dir(upload_id) / ARTIFACT_NAME

    async def write_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        source: Any,
        cancel_token: Optional[CancellationToken] = None,
        limit: Optional[int] = None,
    ) -> int:
        """
        Persist one chunk's bytes.

        Args:
            upload_id: Session identifier, used as a directory name
            chunk_index: 0-based chunk ordinal
            source: Readable (sync or async) file-like object
            cancel_token: Aborts the copy when cancelled
            limit: Byte ceiling for this write, tightened to the per-chunk ceiling

        Returns:
            int: Bytes written

        Raises:
            ValidationException: Unsafe upload_id or invalid index
            PayloadTooLargeException: Chunk larger than the per-chunk ceiling or ``limit``
            ChunkWriteException: Any I/O failure or cancellation
        """
        self.validate_chunk_index(chunk_index)
        ceilings = [value for value in (self.max_chunk_bytes, limit) if value is not None]
        session_dir = self.session_dir(upload_id)
        final_path = session_dir / f"chunk_{chunk_index}"
        part_path = session_dir / f"chunk_{chunk_index}.{secrets.token_hex(4)}.part"

        try:
            FileProcessor.ensure_directory(session_dir)
            async with aiofiles.open(part_path, "wb") as out:
                written = await copy_stream(
                    out,
                    source,
                    cancel_token=cancel_token,
                    buffer_size=self.buffer_size,
                    limit=min(ceilings) if ceilings else None,
                )
            await aiofiles.os.replace(part_path, final_path)
        except PayloadTooLargeException:
            await self._discard(part_path)
            raise
        except (StorageException, OSError) as e:
            await self._discard(part_path)
            reason = e.message if isinstance(e, StorageException) else str(e)
            logger.warning("Chunk %s of %s not stored: %s", chunk_index, upload_id, reason)
            raise ChunkWriteException(upload_id, chunk_index, reason, original_error=e) from e

        logger.debug("Stored chunk %s of %s (%d bytes)", chunk_index, upload_id, written)
        return written

    async def _discard(self, part_path: Path) -> None:
        try:
            await aiofiles.os.remove(part_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove %s: %s", part_path, e)

    async def discard_chunk(self, upload_id: str, chunk_index: int) -> None:
        """Remove a persisted chunk that must not count towards its session."""
        await self._discard(self.chunk_path(upload_id, chunk_index))

    async def _chunk_files(self, upload_id: str) -> List[Tuple[int, Path]]:
        session_dir = self.session_dir(upload_id)
        try:
            names = await aiofiles.os.listdir(session_dir)
        except FileNotFoundError:
            return []
        chunks = []
        for name in names:
            match = CHUNK_FILE_PATTERN.match(name)
            if match:
                chunks.append((int(match.group(1)), session_dir / name))
        return chunks

    async def list_chunk_indices(self, upload_id: str) -> Set[int]:
        """Return the indices of fully persisted chunks."""
        return {index for index, _ in await self._chunk_files(upload_id)}

    async def staged_bytes(self, upload_id: str) -> int:
        """Total size of the persisted chunks of a session."""
        total = 0
        for _, path in await self._chunk_files(upload_id):
            try:
                total += (await aiofiles.os.stat(path)).st_size
            except FileNotFoundError:
                continue
        return total

    def list_session_ids(self) -> List[str]:
        if not self.staging_root.is_dir():
            return []
        return sorted(entry.name for entry in os.scandir(self.staging_root) if entry.is_dir())

    def purge_session(self, upload_id: str) -> bool:
        """Remove every staged file of one session."""
        removed = FileProcessor.safe_remove(self.session_dir(upload_id))
        if removed:
            logger.info("Purged staging data for %s", upload_id)
        return removed

    def purge_all(self) -> int:
        """Wipe the staging area, returning the number of entries removed."""
        FileProcessor.ensure_directory(self.staging_root)
        removed = FileProcessor.purge_directory_contents(self.staging_root)
        if removed:
            logger.info("Removed %d orphaned staging entries from %s", removed, self.staging_root)
        return removed
