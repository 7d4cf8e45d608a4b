"""Main FastAPI application."""
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import HTTPException, RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from video_uploader.api import hooks, upload
from video_uploader.core.config import MIB, ConfigManager, Settings
from video_uploader.core.exceptions import ErrorCategory, PayloadTooLargeException, UploaderException
from video_uploader.models.upload_session import utcnow
from video_uploader.services.upload_service import UploadService
from video_uploader.utils.logger import configure_logging, get_logger

logger: logging.Logger = get_logger(__name__)

# Multipart framing and the small form fields on top of the chunk payload
FORM_OVERHEAD_BYTES = MIB
CHUNK_UPLOAD_PATH = "/api/v1/upload/chunk"


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    """Application lifecycle management

    Wipes the staging area and starts the session sweeper on startup; stops
    the sweeper and waits for running completions on shutdown.
    """
    settings: Settings = app.state.settings
    logger.info("Starting %s...", settings.app_name)

    await app.state.upload_service.start()

    yield  # Application runtime

    logger.info("Shutting down %s...", settings.app_name)
    await app.state.upload_service.stop()


def create_application(settings: Optional[Settings] = None) -> FastAPI:
    """Create and configure FastAPI application instance

    Settings are loaded once here (or passed in) and handed to every
    component through ``app.state``.
    """
    if settings is None:
        settings = ConfigManager().settings

    configure_logging(settings.get_logging_config())

    application = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Chunked video upload service: resumable chunk uploads reassembled into the output directory",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    application.state.settings = settings
    application.state.upload_service = UploadService(
        settings.get_storage_config(),
        max_concurrent_chunks=settings.max_concurrent_chunks,
        shutdown_timeout=settings.shutdown_timeout,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_body_limit(application, settings.max_chunk_bytes + FORM_OVERHEAD_BYTES)
    _register_exception_handlers(application)
    _register_routes(application)

    logger.info(
        f"Application '{settings.app_name}' v{settings.app_version} "
        "created successfully"
    )

    return application


def _error_response(status_code: int, request: Request, error: Dict[str, Any]) -> JSONResponse:
    error["timestamp"] = utcnow().isoformat()
    error["path"] = str(request.url.path)
    return JSONResponse(status_code=status_code, content={"error": error})


def _register_body_limit(app: FastAPI, limit: int) -> None:
    """Reject oversized chunk requests before the multipart body is parsed"""

    @app.middleware("http")
    async def chunk_body_limit(request: Request, call_next):
        if request.method == "POST" and request.url.path == CHUNK_UPLOAD_PATH:
            content_length = request.headers.get("content-length")
            if content_length and content_length.isdigit() and int(content_length) > limit:
                exc = PayloadTooLargeException(
                    f"Request body exceeds the limit of {limit} bytes",
                    limit=limit,
                    details={"content_length": int(content_length)}
                )
                logger.warning(exc.message)
                return _error_response(413, request, {
                    "code": exc.error_code,
                    "message": exc.message,
                    "category": exc.category.value,
                    "severity": exc.severity.value,
                    "details": exc.details,
                })
        return await call_next(request)


def _register_exception_handlers(app: FastAPI) -> None:
    """Register global exception handlers for consistent error responses"""

    @app.exception_handler(UploaderException)
    async def uploader_exception_handler(request: Request, exc: UploaderException) -> JSONResponse:
        """Handle upload service exceptions"""
        log = logger.error if exc.category in (ErrorCategory.STORAGE, ErrorCategory.SYSTEM) else logger.warning
        log(
            f"Upload exception occurred: {exc.message}",
            extra={
                "error_code": exc.error_code,
                "category": exc.category.value,
                "severity": exc.severity.value,
                "details": exc.details,
                "request_path": request.url.path,
                "request_method": request.method
            }
        )

        return _error_response(_map_error_category_to_status_code(exc.category), request, {
            "code": exc.error_code,
            "message": exc.message,
            "category": exc.category.value,
            "severity": exc.severity.value,
            "details": exc.details,
        })

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        """Handle FastAPI HTTP exceptions"""
        logger.warning(f"HTTP exception: {exc.status_code} - {exc.detail}")
        return _error_response(exc.status_code, request, {
            "code": f"HTTP_{exc.status_code}",
            "message": exc.detail,
        })

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """Handle missing or malformed request fields"""
        logger.warning(f"Validation error: {exc.errors()}")
        return _error_response(422, request, {
            "code": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": _jsonable_errors(exc.errors()),
        })

    @app.exception_handler(StarletteHTTPException)
    async def starlette_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        """Handle Starlette base HTTP exceptions"""
        logger.warning(f"Starlette HTTP exception: {exc.status_code} - {exc.detail}")
        return _error_response(exc.status_code, request, {
            "code": f"HTTP_{exc.status_code}",
            "message": exc.detail,
        })

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for uncaught exceptions"""
        logger.error(
            f"Unhandled exception: {type(exc).__name__}: {exc}",
            exc_info=True,
            extra={
                "request_path": request.url.path,
                "request_method": request.method,
                "exception_type": type(exc).__name__
            }
        )

        if isinstance(exc, PermissionError):
            status_code = 403
            message = "Permission denied"
        elif isinstance(exc, TimeoutError):
            status_code = 504
            message = "Request timeout"
        else:
            status_code = 500
            message = "Internal server error"

        return _error_response(status_code, request, {
            "code": "INTERNAL_SERVER_ERROR",
            "message": message,
            "type": type(exc).__name__,
        })


def _jsonable_errors(errors: Any) -> Any:
    """Drop non-serializable context (exception instances) from pydantic errors"""
    cleaned = []
    for error in errors:
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        error.pop("input", None)
        cleaned.append(error)
    return cleaned


def _register_routes(app: FastAPI) -> None:
    """Register API routes with the FastAPI application"""
    # Chunk upload routes
    app.include_router(
        upload.router,
        prefix="/api/v1",
        tags=["upload"]
    )
    # External completion callbacks
    app.include_router(
        hooks.router,
        prefix="/api/v1",
        tags=["hooks"]
    )

    @app.get("/health", tags=["health"])
    async def health(request: Request) -> Dict[str, Any]:
        settings: Settings = request.app.state.settings
        return {
            "status": "healthy",
            "version": settings.app_version,
            "timestamp": utcnow().isoformat(),
        }


def _map_error_category_to_status_code(category: ErrorCategory) -> int:
    """Map custom error categories to standard HTTP status codes

    Args:
        category: ErrorCategory enum value

    Returns:
        Corresponding HTTP status code
    """
    status_code_mapping: Dict[ErrorCategory, int] = {
        ErrorCategory.VALIDATION: 422,  # Unprocessable Entity
        ErrorCategory.PAYLOAD: 413,     # Payload Too Large
        ErrorCategory.NOT_FOUND: 404,   # Not Found
        ErrorCategory.INTEGRITY: 409,   # Conflict
        ErrorCategory.STORAGE: 500,     # Internal Server Error
        ErrorCategory.SYSTEM: 500       # Internal Server Error
    }
    return status_code_mapping.get(category, 500)  # Default to 500


def run(config_file: Optional[str] = None) -> None:
    """Serve the application with uvicorn"""
    # Lazy import uvicorn to avoid dependency if not running directly
    import uvicorn

    app_settings = ConfigManager(config_file or os.getenv("UPLOADER_CONFIG_FILE")).settings
    app = create_application(app_settings)

    logger.info(f"Starting {app_settings.app_name} v{app_settings.app_version}")
    logger.info(f"Environment: {app_settings.environment.value}")
    logger.info(f"Debug mode: {app_settings.debug}")

    uvicorn.run(
        app,
        host=app_settings.host,
        port=app_settings.port,
        log_level=app_settings.log_level.value.lower(),
        timeout_graceful_shutdown=app_settings.shutdown_timeout,
        access_log=True
    )


if __name__ == "__main__":
    run()
