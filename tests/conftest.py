"""Shared fixtures: temporary storage layout, settings and service instances."""
from pathlib import Path

import pytest

from video_uploader.core.config import MIB, Settings, StorageConfig
from video_uploader.services.chunk_store import ChunkStore
from video_uploader.services.finalizer import Finalizer
from video_uploader.services.reassembler import Reassembler
from video_uploader.services.session_tracker import SessionTracker
from video_uploader.services.upload_service import UploadService

TEST_BUFFER_SIZE = 4 * 1024


@pytest.fixture
def staging_dir(tmp_path) -> Path:
    path = tmp_path / "temp_uploads"
    path.mkdir()
    return path


@pytest.fixture
def output_dir(tmp_path) -> Path:
    path = tmp_path / "uploads"
    path.mkdir()
    return path


@pytest.fixture
def tus_dir(tmp_path) -> Path:
    path = tmp_path / "tus"
    path.mkdir()
    return path


@pytest.fixture
def storage_config(staging_dir, output_dir) -> StorageConfig:
    return StorageConfig(
        upload_path=output_dir,
        temp_upload_path=staging_dir,
        tus_storage_dir=None,
        max_upload_bytes=16 * MIB,
        max_chunk_bytes=2 * MIB,
        copy_buffer_size=TEST_BUFFER_SIZE,
        session_ttl=3600,
        cleanup_interval=300,
        request_timeout=60,
    )


@pytest.fixture
def settings(staging_dir, output_dir) -> Settings:
    return Settings(
        _env_file=None,
        upload_path=str(output_dir),
        temp_upload_path=str(staging_dir),
        max_upload_size=16,
        max_memory=2,
        max_concurrent_chunks=3,
        copy_buffer_size=TEST_BUFFER_SIZE,
        log_enable_file=False,
    )


@pytest.fixture
def chunk_store(staging_dir) -> ChunkStore:
    return ChunkStore(staging_dir, max_chunk_bytes=2 * MIB, buffer_size=TEST_BUFFER_SIZE)


@pytest.fixture
def tracker(chunk_store) -> SessionTracker:
    return SessionTracker(chunk_store)


@pytest.fixture
def reassembler(chunk_store) -> Reassembler:
    return Reassembler(chunk_store, buffer_size=TEST_BUFFER_SIZE)


@pytest.fixture
def finalizer(output_dir) -> Finalizer:
    return Finalizer(output_dir, buffer_size=TEST_BUFFER_SIZE)


@pytest.fixture
def upload_service(storage_config) -> UploadService:
    return UploadService(storage_config, max_concurrent_chunks=3, shutdown_timeout=5)
