"""Request-scoped dependencies shared by the routers."""
from fastapi import Request

from video_uploader.core.config import Settings
from video_uploader.services.upload_service import UploadService


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.upload_service
