"""Completion callbacks from external upload servers."""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header

from video_uploader.api.deps import get_upload_service
from video_uploader.schemas.upload import TusHookRequest, TusHookResponse
from video_uploader.services.upload_service import UploadService
from video_uploader.utils.logger import get_logger

logger: logging.Logger = get_logger(__name__)

router = APIRouter()


@router.post("/hooks/tus", response_model=TusHookResponse, response_model_exclude_none=True)
async def tus_hook(
    hook: TusHookRequest,
    hook_name: Optional[str] = Header(None, alias="Hook-Name"),
    service: UploadService = Depends(get_upload_service)
):
    """
    Receive a tusd HTTP hook.

    On ``post-finish`` the finished upload is moved from the tusd file store
    into the output directory under the usual final name. Other hook types
    are acknowledged and ignored.
    """
    payload = {"Type": hook.type, "Event": hook.event}
    return await service.handle_tus_hook(payload, hook_name=hook_name)
