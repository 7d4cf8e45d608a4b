"""In-process registry of upload sessions and their completion state."""
import asyncio
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from video_uploader.core.exceptions import SessionNotFoundException, ValidationException
from video_uploader.models.upload_session import SessionStatus, UploadSession, utcnow
from video_uploader.services.chunk_store import ChunkStore
from video_uploader.utils.logger import get_logger

logger = get_logger(__name__)


class SessionTracker:
    """
    Tracks declared totals and received chunk indices per upload session.

    Sessions are created implicitly by the first chunk. Completion means the
    persisted indices cover exactly ``0..total_chunks-1``; the received set is
    reconciled with the chunk store after every write so only durable chunks
    count. :meth:`claim_completion` is the per-session latch that lets exactly
    one request reassemble and finalize.
    """

    def __init__(self, chunk_store: ChunkStore):
        self.chunk_store = chunk_store
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = asyncio.Lock()

    async def ensure_session(
        self,
        upload_id: str,
        total_chunks: int,
        total_size: int,
        filename: str,
    ) -> UploadSession:
        """
        Return the session for ``upload_id``, creating it on first sight.

        Raises:
            ValidationException: The request declares different totals or
                filename than the session was created with
        """
        async with self._lock:
            session = self._get_or_create(upload_id, total_chunks, total_size, filename)
            return session.model_copy(deep=True)

    def _get_or_create(self, upload_id: str, total_chunks: int, total_size: int, filename: str) -> UploadSession:
        session = self._sessions.get(upload_id)
        if session is None:
            session = UploadSession(
                upload_id=upload_id,
                filename=filename,
                total_chunks=total_chunks,
                total_size=total_size,
            )
            self._sessions[upload_id] = session
            logger.info(
                "Upload session started: %s (%s, %d chunks, %d bytes)",
                upload_id, filename, total_chunks, total_size
            )
            return session

        self._check_declaration(session, total_chunks, total_size, filename)
        return session

    @staticmethod
    def _check_declaration(session: UploadSession, total_chunks: int, total_size: int, filename: str) -> None:
        conflicts = {
            name: {"session": current, "request": declared}
            for name, current, declared in (
                ("total_chunks", session.total_chunks, total_chunks),
                ("total_size", session.total_size, total_size),
                ("filename", session.filename, filename),
            )
            if current != declared
        }
        if conflicts:
            raise ValidationException(
                f"Chunk declaration conflicts with upload session {session.upload_id}",
                field=next(iter(conflicts)),
                details={"conflicts": conflicts}
            )

    async def record_chunk_and_check_complete(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        total_size: int,
        filename: str,
    ) -> Tuple[int, bool]:
        """
        Record a persisted chunk and re-evaluate completion.

        The session must already exist; a session removed while its chunk was
        being written is not recreated.

        Returns:
            Tuple[int, bool]: (received chunk count, whether 0..N-1 are all present)

        Raises:
            SessionNotFoundException: The session was cancelled or expired
            ValidationException: The declaration conflicts with the session
        """
        persisted = await self.chunk_store.list_chunk_indices(upload_id)

        async with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                raise SessionNotFoundException(upload_id)
            self._check_declaration(session, total_chunks, total_size, filename)

            if session.status == SessionStatus.COMPLETED:
                return session.received_count, False

            if session.status == SessionStatus.FAILED:
                logger.info("Resuming failed upload session %s after resend", upload_id)
                session.status = SessionStatus.UPLOADING
                session.error_message = None

            if chunk_index not in persisted:
                logger.warning("Chunk %s of %s vanished from staging before it was recorded", chunk_index, upload_id)
            session.received_chunks = {i for i in persisted if i < session.total_chunks}
            session.touch()
            return session.received_count, session.is_complete

    async def claim_completion(self, upload_id: str) -> bool:
        """Atomically move a complete session to ``assembling``; only the first caller wins."""
        async with self._lock:
            session = self._sessions.get(upload_id)
            if session is None or session.status != SessionStatus.UPLOADING or not session.is_complete:
                return False
            session.status = SessionStatus.ASSEMBLING
            session.touch()
            logger.info("Completion claimed for %s", upload_id)
            return True

    async def mark_completed(self, upload_id: str, stored_filename: str) -> None:
        async with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                raise SessionNotFoundException(upload_id)
            session.status = SessionStatus.COMPLETED
            session.stored_filename = stored_filename
            session.error_message = None
            session.touch()

    async def mark_failed(self, upload_id: str, error_message: str) -> None:
        async with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                return
            session.status = SessionStatus.FAILED
            session.error_message = error_message
            session.touch()

    async def get(self, upload_id: str) -> Optional[UploadSession]:
        async with self._lock:
            session = self._sessions.get(upload_id)
            return session.model_copy(deep=True) if session else None

    async def remove(self, upload_id: str) -> Optional[UploadSession]:
        async with self._lock:
            return self._sessions.pop(upload_id, None)

    async def expired(self, ttl_seconds: int) -> List[UploadSession]:
        """Sessions idle for longer than ``ttl_seconds``; sessions being assembled are never expired."""
        cutoff = utcnow() - timedelta(seconds=ttl_seconds)
        async with self._lock:
            return [
                session.model_copy(deep=True)
                for session in self._sessions.values()
                if session.updated_at <= cutoff and session.status != SessionStatus.ASSEMBLING
            ]

    async def stats(self) -> Dict[str, int]:
        async with self._lock:
            counts = {status.value: 0 for status in SessionStatus}
            for session in self._sessions.values():
                counts[session.status.value] += 1
            counts["total"] = len(self._sessions)
            return counts
