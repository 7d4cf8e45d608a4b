"""End-to-end tests for the chunk upload orchestration."""
import asyncio
import dataclasses
import io
import os
import re
from datetime import timedelta

import pytest

from video_uploader.core.exceptions import (
    IntegrityException,
    PayloadTooLargeException,
    SessionNotFoundException,
    SizeMismatchException,
    UploaderException,
    ValidationException,
)
from video_uploader.core.config import MIB
from video_uploader.models.upload_session import SessionStatus, utcnow
from video_uploader.services.upload_service import UploadService


async def send(service, upload_id, index, payload, total_chunks, total_size, filename="movie.mp4"):
    return await service.handle_chunk(
        upload_id=upload_id,
        chunk_index=index,
        total_chunks=total_chunks,
        total_size=total_size,
        filename=filename,
        source=io.BytesIO(payload),
    )


class GatedSource:
    """Async chunk source that blocks its first read until released."""

    def __init__(self, payload: bytes):
        self._stream = io.BytesIO(payload)
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def read(self, size: int = -1) -> bytes:
        self.started.set()
        await self.gate.wait()
        return self._stream.read(size)


class TestChunkUploadFlow:
    """Test the full chunk to final file flow."""

    @pytest.mark.asyncio
    async def test_three_chunk_upload(self, upload_service, output_dir, staging_dir):
        """Test chunks of 1 MiB, 1 MiB and 512 KiB producing one 2.5 MiB file."""
        chunks = [os.urandom(1048576), os.urandom(1048576), os.urandom(524288)]
        total_size = 2621440

        first = await send(upload_service, "up_abc", 0, chunks[0], 3, total_size)
        assert first["status"] == "in_progress"
        assert first["received_chunks"] == 1
        assert first["progress"] == 33.33

        second = await send(upload_service, "up_abc", 1, chunks[1], 3, total_size)
        assert second["status"] == "in_progress"
        assert second["received_chunks"] == 2

        result = await send(upload_service, "up_abc", 2, chunks[2], 3, total_size)
        assert result["status"] == "completed"
        assert result["size"] == total_size
        assert re.match(r"^[0-9a-f]{8}_\d{14}_movie\.mp4$", result["stored_filename"])

        final_path = output_dir / result["stored_filename"]
        assert final_path.read_bytes() == b"".join(chunks)
        assert not (staging_dir / "up_abc").exists()

        session = await upload_service.status("up_abc")
        assert session.status == SessionStatus.COMPLETED
        assert session.stored_filename == result["stored_filename"]

    @pytest.mark.asyncio
    async def test_out_of_order_arrival(self, upload_service, output_dir):
        chunks = [b"a" * 100, b"b" * 100, b"c" * 50]
        results = [await send(upload_service, "up_1", i, chunks[i], 3, 250) for i in (1, 2, 0)]

        assert [r["status"] for r in results] == ["in_progress", "in_progress", "completed"]
        assert (output_dir / results[-1]["stored_filename"]).read_bytes() == b"".join(chunks)

    @pytest.mark.asyncio
    async def test_single_chunk_upload(self, upload_service, output_dir):
        result = await send(upload_service, "up_1", 0, b"tiny", 1, 4, filename="t.mp4")

        assert result["status"] == "completed"
        assert len(list(output_dir.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_resent_chunk_after_completion(self, upload_service, output_dir):
        """Test that a resend after completion returns the original result."""
        await send(upload_service, "up_1", 0, b"aa", 2, 4)
        completed = await send(upload_service, "up_1", 1, b"bb", 2, 4)

        again = await send(upload_service, "up_1", 1, b"bb", 2, 4)

        assert again == completed
        assert len(list(output_dir.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_concurrent_final_chunks_finalize_once(self, upload_service, output_dir):
        """Test that racing completion detectors produce a single final file."""
        await send(upload_service, "up_1", 0, b"a" * 1000, 3, 3000)
        await send(upload_service, "up_1", 1, b"b" * 1000, 3, 3000)

        results = await asyncio.gather(*(
            send(upload_service, "up_1", 2, b"c" * 1000, 3, 3000) for _ in range(4)
        ))

        completed = [r for r in results if r["status"] == "completed"]
        assert completed
        assert {r["stored_filename"] for r in completed} == {completed[0]["stored_filename"]}
        assert all(r["status"] in ("completed", "assembling") for r in results)
        assert len(list(output_dir.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_size_mismatch_then_retry(self, upload_service, output_dir):
        """Test that a failed reassembly can be retried by resending a chunk."""
        await send(upload_service, "up_1", 0, b"aaaa", 2, 10)

        with pytest.raises(SizeMismatchException):
            await send(upload_service, "up_1", 1, b"bbbb", 2, 10)

        failed = await upload_service.status("up_1")
        assert failed.status == SessionStatus.FAILED
        assert "size mismatch" in failed.error_message
        assert list(output_dir.iterdir()) == []

        result = await send(upload_service, "up_1", 1, b"bbbbbb", 2, 10)
        assert result["status"] == "completed"
        assert (output_dir / result["stored_filename"]).read_bytes() == b"aaaabbbbbb"


class TestChunkValidation:

    @pytest.mark.asyncio
    async def test_total_size_over_limit(self, upload_service):
        with pytest.raises(PayloadTooLargeException):
            await send(upload_service, "up_1", 0, b"a", 2, 17 * MIB)

    @pytest.mark.asyncio
    async def test_chunk_over_limit(self, upload_service, staging_dir):
        with pytest.raises(PayloadTooLargeException):
            await send(upload_service, "up_1", 0, b"a" * (2 * MIB + 1), 2, 4 * MIB)

        assert not (staging_dir / "up_1" / "chunk_0").exists()

    @pytest.mark.parametrize("index, total_chunks", [(3, 3), (-1, 3), (0, 0)])
    @pytest.mark.asyncio
    async def test_index_out_of_range(self, upload_service, index, total_chunks):
        with pytest.raises(ValidationException):
            await send(upload_service, "up_1", index, b"a", total_chunks, 10)

    @pytest.mark.asyncio
    async def test_empty_filename(self, upload_service):
        with pytest.raises(ValidationException) as exc_info:
            await send(upload_service, "up_1", 0, b"a", 1, 1, filename="  ")
        assert exc_info.value.details["field"] == "filename"

    @pytest.mark.asyncio
    async def test_conflicting_declaration(self, upload_service):
        await send(upload_service, "up_1", 0, b"a", 3, 10)

        with pytest.raises(ValidationException):
            await send(upload_service, "up_1", 1, b"a", 4, 10)

    @pytest.mark.asyncio
    async def test_unsafe_upload_id(self, upload_service):
        with pytest.raises(ValidationException):
            await send(upload_service, "../up", 0, b"a", 1, 1)

    @pytest.mark.parametrize("total_chunks, total_size", [(20_000_000, 10), (11, 10), (2, 0)])
    @pytest.mark.asyncio
    async def test_more_chunks_than_bytes(self, upload_service, total_chunks, total_size):
        """Test that a chunk count no byte split could produce is refused up front."""
        with pytest.raises(ValidationException) as exc_info:
            await send(upload_service, "up_1", 0, b"x", total_chunks, total_size)

        assert exc_info.value.details["field"] == "total_chunks"
        assert await upload_service.tracker.get("up_1") is None

    @pytest.mark.asyncio
    async def test_chunk_count_ceiling(self, storage_config):
        service = UploadService(dataclasses.replace(storage_config, max_total_chunks=4))

        with pytest.raises(ValidationException) as exc_info:
            await send(service, "up_1", 0, b"x", 5, 100)

        assert exc_info.value.details["max_total_chunks"] == 4

    @pytest.mark.asyncio
    async def test_chunk_larger_than_declared_total(self, upload_service, staging_dir):
        with pytest.raises(PayloadTooLargeException):
            await send(upload_service, "up_1", 0, b"x" * 11, 2, 10)

        assert not (staging_dir / "up_1" / "chunk_0").exists()

    @pytest.mark.asyncio
    async def test_staged_bytes_bounded_by_declared_total(self, upload_service):
        """Test that chunks together may not outgrow the declared size."""
        assert (await send(upload_service, "up_1", 0, b"a" * 6, 3, 10))["status"] == "in_progress"

        with pytest.raises(PayloadTooLargeException) as exc_info:
            await send(upload_service, "up_1", 1, b"b" * 6, 3, 10)

        assert exc_info.value.details["staged_bytes"] == 12
        assert await upload_service.chunk_store.list_chunk_indices("up_1") == {0}
        assert await upload_service.chunk_store.staged_bytes("up_1") == 6
        assert (await upload_service.status("up_1")).received_chunks == {0}


class TestSessionManagement:

    @pytest.mark.asyncio
    async def test_status_unknown(self, upload_service):
        with pytest.raises(SessionNotFoundException):
            await upload_service.status("nope")

    @pytest.mark.asyncio
    async def test_abort(self, upload_service, staging_dir):
        await send(upload_service, "up_1", 0, b"a", 2, 2)

        assert await upload_service.abort("up_1") == {"status": "cancelled", "upload_id": "up_1"}
        assert not (staging_dir / "up_1").exists()
        with pytest.raises(SessionNotFoundException):
            await upload_service.status("up_1")
        with pytest.raises(SessionNotFoundException):
            await upload_service.abort("up_1")

    @pytest.mark.asyncio
    async def test_abort_while_assembling(self, upload_service):
        await send(upload_service, "up_1", 0, b"a", 2, 2)
        await upload_service.chunk_store.write_chunk("up_1", 1, io.BytesIO(b"b"))
        await upload_service.tracker.record_chunk_and_check_complete("up_1", 1, 2, 2, "movie.mp4")
        assert await upload_service.tracker.claim_completion("up_1")

        with pytest.raises(IntegrityException):
            await upload_service.abort("up_1")

    @pytest.mark.asyncio
    async def test_abort_during_chunk_copy(self, upload_service, staging_dir):
        """Test that a chunk whose session is cancelled mid-copy reports the session as gone."""
        await send(upload_service, "up_x", 0, b"a", 2, 2)
        source = GatedSource(b"b")
        pending = asyncio.create_task(upload_service.handle_chunk(
            upload_id="up_x", chunk_index=1, total_chunks=2, total_size=2, filename="movie.mp4", source=source,
        ))
        await source.started.wait()

        await upload_service.abort("up_x")
        source.gate.set()

        with pytest.raises(SessionNotFoundException):
            await pending
        assert await upload_service.tracker.get("up_x") is None
        assert not (staging_dir / "up_x").exists()

    @pytest.mark.asyncio
    async def test_abort_between_write_and_record(self, upload_service, staging_dir, monkeypatch):
        await send(upload_service, "up_x", 0, b"a", 3, 3)
        write_chunk = upload_service.chunk_store.write_chunk

        async def write_then_cancel(*args, **kwargs):
            written = await write_chunk(*args, **kwargs)
            await upload_service.tracker.remove("up_x")
            return written

        monkeypatch.setattr(upload_service.chunk_store, "write_chunk", write_then_cancel)

        with pytest.raises(SessionNotFoundException):
            await send(upload_service, "up_x", 1, b"b", 3, 3)

        assert await upload_service.tracker.get("up_x") is None
        assert not (staging_dir / "up_x" / "chunk_1").exists()

    @pytest.mark.asyncio
    async def test_expire_sessions(self, upload_service, staging_dir):
        await send(upload_service, "idle", 0, b"a", 2, 2)
        await send(upload_service, "fresh", 0, b"a", 2, 2)
        upload_service.tracker._sessions["idle"].updated_at = utcnow() - timedelta(days=2)

        assert await upload_service.expire_sessions() == 1

        assert not (staging_dir / "idle").exists()
        assert (staging_dir / "fresh").exists()
        with pytest.raises(SessionNotFoundException):
            await upload_service.status("idle")

    @pytest.mark.asyncio
    async def test_start_wipes_leftovers(self, upload_service, staging_dir, output_dir):
        (staging_dir / "stale_session").mkdir()
        (staging_dir / "stale_session" / "chunk_0").write_bytes(b"old")
        (output_dir / ".0a1b2c3d_20240101000000_a.mp4.partial").write_bytes(b"half")
        (output_dir / "0a1b2c3d_20240101000000_b.mp4").write_bytes(b"kept")

        await upload_service.start()
        try:
            assert list(staging_dir.iterdir()) == []
            assert [p.name for p in output_dir.iterdir()] == ["0a1b2c3d_20240101000000_b.mp4"]
        finally:
            await upload_service.stop()

    @pytest.mark.asyncio
    async def test_background_sweeper(self, storage_config, staging_dir):
        service = UploadService(dataclasses.replace(storage_config, cleanup_interval=0), shutdown_timeout=1)
        await service.start()
        try:
            await send(service, "idle", 0, b"a", 2, 2)
            service.tracker._sessions["idle"].updated_at = utcnow() - timedelta(days=2)
            for _ in range(50):
                if await service.tracker.get("idle") is None:
                    break
                await asyncio.sleep(0.01)
            assert await service.tracker.get("idle") is None
            assert not (staging_dir / "idle").exists()
        finally:
            await service.stop()

    @pytest.mark.asyncio
    async def test_stats_and_client_config(self, upload_service):
        await send(upload_service, "up_1", 0, b"a", 2, 2)

        stats = await upload_service.stats()
        assert stats["sessions"]["uploading"] == 1
        assert stats["staged_sessions"] == 1
        assert stats["running_completions"] == 0

        assert upload_service.client_config() == {
            "max_upload_size": 16 * MIB,
            "max_chunk_size": 2 * MIB,
            "max_concurrent_chunks": 3,
            "max_total_chunks": 100_000,
        }


class TestTusHook:
    """Test relocation of uploads finished by tusd."""

    @pytest.fixture
    def tus_service(self, storage_config, tus_dir):
        return UploadService(dataclasses.replace(storage_config, tus_storage_dir=tus_dir.resolve()))

    @staticmethod
    def post_finish(path, upload_id="abc123", filename="clip.mov"):
        return {
            "Type": "post-finish",
            "Event": {
                "Upload": {
                    "ID": upload_id,
                    "Size": 10,
                    "MetaData": {"filename": filename},
                    "Storage": {"Type": "filestore", "Path": str(path)},
                }
            },
        }

    @pytest.mark.asyncio
    async def test_post_finish_relocates_upload(self, tus_service, tus_dir, output_dir):
        source = tus_dir / "abc123"
        source.write_bytes(b"0123456789")

        result = await tus_service.handle_tus_hook(self.post_finish(source))

        assert result["status"] == "completed"
        assert result["size"] == 10
        assert re.match(r"^[0-9a-f]{8}_\d{14}_clip\.mov$", result["stored_filename"])
        assert (output_dir / result["stored_filename"]).read_bytes() == b"0123456789"
        assert not source.exists()

    @pytest.mark.asyncio
    async def test_path_derived_from_upload_id(self, tus_service, tus_dir, output_dir):
        (tus_dir / "xyz").write_bytes(b"data")
        payload = self.post_finish(tus_dir / "xyz", upload_id="xyz")
        del payload["Event"]["Upload"]["Storage"]

        result = await tus_service.handle_tus_hook(payload)

        assert result["stored_filename"].endswith("_clip.mov")

    @pytest.mark.asyncio
    async def test_other_hooks_ignored(self, tus_service):
        result = await tus_service.handle_tus_hook({"Event": {}}, hook_name="pre-create")
        assert result == {"status": "ignored", "hook": "pre-create"}

    @pytest.mark.asyncio
    async def test_path_outside_tus_dir_rejected(self, tus_service, tmp_path):
        outside = tmp_path / "secret.txt"
        outside.write_bytes(b"secret")

        with pytest.raises(ValidationException):
            await tus_service.handle_tus_hook(self.post_finish(outside))
        assert outside.exists()

    @pytest.mark.asyncio
    async def test_missing_file_rejected(self, tus_service, tus_dir):
        with pytest.raises(ValidationException):
            await tus_service.handle_tus_hook(self.post_finish(tus_dir / "gone"))

    @pytest.mark.asyncio
    async def test_disabled_without_tus_dir(self, upload_service, tus_dir):
        with pytest.raises(UploaderException) as exc_info:
            await upload_service.handle_tus_hook(self.post_finish(tus_dir / "abc123"))
        assert exc_info.value.error_code == "TUS_HOOK_DISABLED"
