"""Chunked file upload API endpoints."""
import asyncio
import logging
from typing import Union

from fastapi import APIRouter, Depends, File, Form, Request, UploadFile

from video_uploader.api.deps import get_settings, get_upload_service
from video_uploader.core.config import Settings
from video_uploader.models.upload_session import utcnow
from video_uploader.schemas.upload import (
    ChunkProgressResponse,
    ClientConfigResponse,
    SessionStatusResponse,
    UploadCancelledResponse,
    UploadCompletedResponse,
    UploadStatsResponse,
)
from video_uploader.services.transfer import CancellationToken
from video_uploader.services.upload_service import UploadService
from video_uploader.utils.logger import get_logger

logger: logging.Logger = get_logger(__name__)

router = APIRouter()

DISCONNECT_POLL_INTERVAL = 0.5


async def _watch_disconnect(request: Request, token: CancellationToken) -> None:
    """Cancel ``token`` as soon as the client goes away."""
    while not token.cancelled:
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)
        if await request.is_disconnected():
            logger.info("Client disconnected during %s", request.url.path)
            token.cancel("client disconnected")
            return


@router.post(
    "/upload/chunk",
    response_model=Union[UploadCompletedResponse, ChunkProgressResponse]
)
async def upload_chunk(
    request: Request,
    upload_id: str = Form(...),
    chunk_index: int = Form(...),
    total_chunks: int = Form(...),
    filename: str = Form(...),
    total_size: int = Form(...),
    chunk: UploadFile = File(...),
    settings: Settings = Depends(get_settings),
    service: UploadService = Depends(get_upload_service)
):
    """
    Upload one chunk of a file.

    The session is created by its first chunk. The request whose chunk
    completes the set reassembles the file and receives the final name.

    Args:
        upload_id: Client-generated session ID
        chunk_index: 0-based index of this chunk
        total_chunks: Total number of chunks
        filename: Original filename
        total_size: Total file size in bytes
        chunk: Chunk payload

    Returns:
        dict: Progress or completion information
    """
    token = CancellationToken(timeout=settings.request_timeout)
    watcher = asyncio.create_task(_watch_disconnect(request, token))
    try:
        return await service.handle_chunk(
            upload_id=upload_id,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            total_size=total_size,
            filename=filename,
            source=chunk,
            cancel_token=token,
        )
    finally:
        watcher.cancel()
        await chunk.close()


@router.get("/upload/status/{upload_id}", response_model=SessionStatusResponse)
async def get_upload_status(
    upload_id: str,
    service: UploadService = Depends(get_upload_service)
):
    """
    Get upload session status.

    Args:
        upload_id: Upload session ID

    Returns:
        SessionStatusResponse: Received and missing chunks, state and final name
    """
    session = await service.status(upload_id)
    return SessionStatusResponse(
        upload_id=session.upload_id,
        filename=session.filename,
        status=session.status.value,
        total_chunks=session.total_chunks,
        total_size=session.total_size,
        received_chunks=session.received_count,
        missing_chunks=session.missing_chunks,
        progress=session.progress,
        stored_filename=session.stored_filename,
        error_message=session.error_message,
        created_at=session.created_at,
        updated_at=session.updated_at,
    )


@router.delete("/upload/{upload_id}", response_model=UploadCancelledResponse)
async def cancel_upload(
    upload_id: str,
    service: UploadService = Depends(get_upload_service)
):
    """
    Cancel an upload session and remove its staged chunks.

    Args:
        upload_id: Upload session ID

    Returns:
        dict: Cancellation status
    """
    return await service.abort(upload_id)


@router.get("/upload/stats", response_model=UploadStatsResponse)
async def get_upload_stats(service: UploadService = Depends(get_upload_service)):
    """Session counters by state."""
    stats = await service.stats()
    return UploadStatsResponse(timestamp=utcnow(), **stats)


@router.get("/upload/config", response_model=ClientConfigResponse)
async def get_client_config(service: UploadService = Depends(get_upload_service)):
    """Limits the browser client uses to split files."""
    return service.client_config()
