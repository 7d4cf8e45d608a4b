"""Chunked upload orchestration: persist, track, reassemble, finalize."""
import asyncio
from pathlib import Path
from typing import Any, Dict, Optional, Set

from video_uploader.core.config import StorageConfig
from video_uploader.core.decorators import async_exception_handler
from video_uploader.core.exceptions import (
    ChunkWriteException,
    ErrorCategory,
    ErrorSeverity,
    IntegrityException,
    PayloadTooLargeException,
    SessionNotFoundException,
    UploaderException,
    ValidationException,
)
from video_uploader.models.upload_session import SessionStatus, UploadSession
from video_uploader.services.chunk_store import ChunkStore
from video_uploader.services.finalizer import Finalizer
from video_uploader.services.reassembler import Reassembler
from video_uploader.services.session_tracker import SessionTracker
from video_uploader.services.transfer import CancellationToken
from video_uploader.utils.file_utils import FileProcessor, get_file_size, is_within_directory
from video_uploader.utils.logger import get_logger

logger = get_logger(__name__)

TUS_POST_FINISH = "post-finish"


class UploadService:
    """
    Entry point for chunk requests.

    Features:
    - Per-chunk persistence through the chunk store
    - Set-based completion detection with a per-session completion latch
    - Reassembly and finalize shielded from request cancellation
    - Idempotent answers for resent chunks of completed sessions
    - Startup wipe of staging data and a background expiry sweeper
    """

    def __init__(
        self,
        storage: StorageConfig,
        max_concurrent_chunks: int = 5,
        shutdown_timeout: float = 10.0,
    ):
        """
        Initialize upload service.

        Args:
            storage: Filesystem layout and limits
            max_concurrent_chunks: Concurrency hint handed to clients
            shutdown_timeout: Seconds :meth:`stop` waits for running completions
        """
        self.storage = storage
        self.max_concurrent_chunks = max_concurrent_chunks
        self.shutdown_timeout = shutdown_timeout

        self.chunk_store = ChunkStore(
            storage.temp_upload_path,
            max_chunk_bytes=storage.max_chunk_bytes,
            buffer_size=storage.copy_buffer_size,
        )
        self.tracker = SessionTracker(self.chunk_store)
        self.reassembler = Reassembler(self.chunk_store, buffer_size=storage.copy_buffer_size)
        self.finalizer = Finalizer(storage.upload_path, buffer_size=storage.copy_buffer_size)

        self._running = False
        self._cleanup_task: Optional[asyncio.Task] = None
        self._completions: Set[asyncio.Task] = set()

    async def start(self) -> None:
        """Prepare directories, drop leftovers of a previous run and start the sweeper."""
        FileProcessor.ensure_directory(self.storage.upload_path)
        self.chunk_store.purge_all()
        self.finalizer.sweep_partials()

        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_expired_sessions())
        logger.info(
            "Upload service started (staging=%s, output=%s)",
            self.storage.temp_upload_path, self.storage.upload_path
        )

    async def stop(self) -> None:
        """Stop the sweeper and give running completions a chance to finish."""
        self._running = False

        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        if self._completions:
            logger.info("Waiting for %d running completions", len(self._completions))
            _, pending = await asyncio.wait(self._completions, timeout=self.shutdown_timeout)
            if pending:
                logger.warning("%d completions still running at shutdown", len(pending))

        logger.info("Upload service stopped")

    def _validate_declaration(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        total_size: int,
        filename: str,
    ) -> None:
        ChunkStore.validate_upload_id(upload_id)
        ChunkStore.validate_chunk_index(chunk_index)
        if total_chunks < 1:
            raise ValidationException("total_chunks must be at least 1", field="total_chunks")
        if chunk_index >= total_chunks:
            raise ValidationException(
                f"chunk_index {chunk_index} is out of range for {total_chunks} chunks",
                field="chunk_index"
            )
        if total_size < 0:
            raise ValidationException("total_size must not be negative", field="total_size")
        if not filename or not filename.strip():
            raise ValidationException("filename must not be empty", field="filename")
        if total_size > self.storage.max_upload_bytes:
            raise PayloadTooLargeException(
                f"File too large. Maximum size is {self.storage.max_upload_bytes} bytes",
                limit=self.storage.max_upload_bytes,
                details={"total_size": total_size}
            )
        # Every chunk but an empty single one carries at least one byte
        max_chunks = min(max(total_size, 1), self.storage.max_total_chunks)
        if total_chunks > max_chunks:
            raise ValidationException(
                f"total_chunks {total_chunks} exceeds the {max_chunks} chunks allowed for {total_size} bytes",
                field="total_chunks",
                details={"max_total_chunks": max_chunks}
            )

    @async_exception_handler(UploaderException, default_message="Chunk handling failed")
    async def handle_chunk(
        self,
        upload_id: str,
        chunk_index: int,
        total_chunks: int,
        total_size: int,
        filename: str,
        source: Any,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        """
        Persist one chunk and, if it completes the session, produce the final file.

        Args:
            upload_id: Client-chosen session identifier
            chunk_index: 0-based chunk ordinal
            total_chunks: Declared number of chunks
            total_size: Declared total size in bytes
            filename: Original filename
            source: Readable file-like object with the chunk bytes
            cancel_token: Aborts the chunk copy (not the reassembly)

        Returns:
            dict: Progress (``in_progress`` / ``assembling``) or the completed result
        """
        self._validate_declaration(upload_id, chunk_index, total_chunks, total_size, filename)

        session = await self.tracker.ensure_session(upload_id, total_chunks, total_size, filename)
        if session.status == SessionStatus.COMPLETED:
            logger.info("Chunk %d of completed session %s ignored", chunk_index, upload_id)
            return self._completed_result(session)
        if session.status == SessionStatus.ASSEMBLING:
            return self._progress_result(session, "assembling")

        try:
            await self.chunk_store.write_chunk(
                upload_id, chunk_index, source, cancel_token=cancel_token, limit=total_size
            )
        except ChunkWriteException as e:
            # The session may have been finalized or cancelled underneath this write
            current = await self._require_session(upload_id, e)
            if current.status == SessionStatus.COMPLETED:
                return self._completed_result(current)
            raise

        staged = await self.chunk_store.staged_bytes(upload_id)
        if staged > total_size:
            await self.chunk_store.discard_chunk(upload_id, chunk_index)
            raise PayloadTooLargeException(
                f"Staged chunks of {upload_id} exceed the declared total of {total_size} bytes",
                limit=total_size,
                details={"upload_id": upload_id, "chunk_index": chunk_index, "staged_bytes": staged}
            )

        try:
            received, complete = await self.tracker.record_chunk_and_check_complete(
                upload_id, chunk_index, total_chunks, total_size, filename
            )
        except SessionNotFoundException:
            await self.chunk_store.discard_chunk(upload_id, chunk_index)
            raise

        if complete and await self.tracker.claim_completion(upload_id):
            task = asyncio.create_task(self._complete(upload_id, total_chunks, total_size, filename))
            self._completions.add(task)
            task.add_done_callback(self._completion_done)
            return await asyncio.shield(task)

        current = await self._require_session(upload_id)
        if current.status == SessionStatus.COMPLETED:
            return self._completed_result(current)
        status = "assembling" if current.status == SessionStatus.ASSEMBLING else "in_progress"
        return self._progress_result(current, status, received)

    async def _require_session(self, upload_id: str, cause: Optional[Exception] = None) -> UploadSession:
        session = await self.tracker.get(upload_id)
        if session is None:
            logger.info("Upload session %s is gone, chunk not counted", upload_id)
            raise SessionNotFoundException(upload_id) from cause
        return session

    def _completion_done(self, task: asyncio.Task) -> None:
        self._completions.discard(task)
        # Consume the result so an abandoned completion does not warn at GC time
        if not task.cancelled():
            task.exception()

    async def _complete(self, upload_id: str, total_chunks: int, total_size: int, filename: str) -> Dict[str, Any]:
        try:
            artifact = await self.reassembler.reassemble(upload_id, total_chunks, total_size)
            final_path = await self.finalizer.finalize(artifact, filename)
        except Exception as e:
            reason = e.message if isinstance(e, UploaderException) else str(e)
            await self.tracker.mark_failed(upload_id, reason)
            logger.error("Completion of %s failed: %s", upload_id, reason)
            raise

        await self.tracker.mark_completed(upload_id, final_path.name)
        self.finalizer.purge_staging(self.chunk_store.session_dir(upload_id))
        logger.info("Upload %s completed as %s", upload_id, final_path.name)

        session = await self.tracker.get(upload_id)
        return self._completed_result(session)

    @staticmethod
    def _progress_result(session: UploadSession, status: str, received: Optional[int] = None) -> Dict[str, Any]:
        if received is None:
            received = session.received_count
        return {
            "status": status,
            "upload_id": session.upload_id,
            "received_chunks": received,
            "total_chunks": session.total_chunks,
            "progress": round(received / session.total_chunks * 100, 2),
        }

    @staticmethod
    def _completed_result(session: UploadSession) -> Dict[str, Any]:
        return {
            "status": "completed",
            "upload_id": session.upload_id,
            "filename": session.filename,
            "stored_filename": session.stored_filename,
            "size": session.total_size,
            "total_chunks": session.total_chunks,
        }

    async def status(self, upload_id: str) -> UploadSession:
        ChunkStore.validate_upload_id(upload_id)
        session = await self.tracker.get(upload_id)
        if session is None:
            raise SessionNotFoundException(upload_id)
        return session

    async def abort(self, upload_id: str) -> Dict[str, Any]:
        """Drop a session and its staged chunks."""
        ChunkStore.validate_upload_id(upload_id)
        session = await self.tracker.get(upload_id)
        if session is not None and session.status == SessionStatus.ASSEMBLING:
            raise IntegrityException(
                f"Upload session {upload_id} is being assembled and cannot be cancelled",
                error_code="SESSION_BUSY",
                details={"upload_id": upload_id}
            )

        removed_session = await self.tracker.remove(upload_id)
        removed_files = self.chunk_store.purge_session(upload_id)
        if removed_session is None and not removed_files:
            raise SessionNotFoundException(upload_id)

        logger.info("Upload cancelled for session %s", upload_id)
        return {"status": "cancelled", "upload_id": upload_id}

    async def stats(self) -> Dict[str, Any]:
        sessions = await self.tracker.stats()
        return {
            "sessions": sessions,
            "staged_sessions": len(self.chunk_store.list_session_ids()),
            "running_completions": len(self._completions),
        }

    def client_config(self) -> Dict[str, int]:
        """Limits the browser client needs to plan its chunking."""
        return {
            "max_upload_size": self.storage.max_upload_bytes,
            "max_chunk_size": self.storage.max_chunk_bytes,
            "max_concurrent_chunks": self.max_concurrent_chunks,
            "max_total_chunks": self.storage.max_total_chunks,
        }

    async def handle_tus_hook(self, payload: Dict[str, Any], hook_name: Optional[str] = None) -> Dict[str, Any]:
        """
        Relocate an upload finished by tusd into the output directory.

        Accepts the tusd HTTP hook body; the hook type comes from the body's
        ``Type`` field or the ``Hook-Name`` header. Only ``post-finish`` is
        acted upon.
        """
        tus_dir = self.storage.tus_storage_dir
        if tus_dir is None:
            raise UploaderException(
                "tus completion hook is not enabled",
                error_code="TUS_HOOK_DISABLED",
                category=ErrorCategory.NOT_FOUND,
                severity=ErrorSeverity.LOW
            )

        hook_type = payload.get("Type") or hook_name
        if hook_type != TUS_POST_FINISH:
            logger.debug("Ignoring tus hook %s", hook_type)
            return {"status": "ignored", "hook": hook_type}

        upload = (payload.get("Event") or {}).get("Upload") or {}
        tus_id = upload.get("ID")
        storage_info = upload.get("Storage") or {}
        metadata = upload.get("MetaData") or {}

        source_value = storage_info.get("Path") or (str(tus_dir / tus_id) if tus_id else None)
        if not source_value:
            raise ValidationException("tus hook carries neither a storage path nor an upload ID", field="Event.Upload")

        source = Path(source_value)
        if not is_within_directory(source, tus_dir):
            raise ValidationException(
                "tus upload path is outside the tus storage directory",
                field="Event.Upload.Storage.Path",
                details={"path": source_value}
            )
        if not source.is_file():
            raise ValidationException(
                "tus upload file does not exist",
                field="Event.Upload.Storage.Path",
                details={"path": source_value}
            )

        filename = metadata.get("filename") or metadata.get("name") or tus_id or source.name
        size = get_file_size(source)
        final_path = await self.finalizer.relocate_external(source, filename)
        logger.info("tus upload %s finalized as %s", tus_id, final_path.name)
        return {
            "status": "completed",
            "upload_id": tus_id,
            "filename": filename,
            "stored_filename": final_path.name,
            "size": size,
        }

    async def _cleanup_expired_sessions(self) -> None:
        """Background task that removes idle sessions and their staging data."""
        logger.info("Upload session cleanup task started")

        while self._running:
            try:
                await asyncio.sleep(self.storage.cleanup_interval)
                await self.expire_sessions()
            except asyncio.CancelledError:
                break
            except (UploaderException, OSError) as e:
                logger.error(f"Session cleanup task error: {e}")

        logger.info("Upload session cleanup task stopped")

    async def expire_sessions(self) -> int:
        """Remove sessions idle for longer than the TTL; returns how many were removed."""
        expired = await self.tracker.expired(self.storage.session_ttl)
        if not expired:
            return 0

        logger.info("Found %d expired sessions; cleaning up", len(expired))
        for session in expired:
            await self.tracker.remove(session.upload_id)
            self.chunk_store.purge_session(session.upload_id)
        return len(expired)
