"""Utility modules - provide common utility functions and classes."""
from video_uploader.utils.file_utils import (
    FileProcessor,
    get_file_size,
    is_safe_path_segment,
    is_within_directory,
    sanitize_filename,
)
from video_uploader.utils.logger import configure_logging, get_logger, setup_logger

__all__ = [
    "FileProcessor",
    "get_file_size",
    "is_safe_path_segment",
    "is_within_directory",
    "sanitize_filename",
    "configure_logging",
    "setup_logger",
    "get_logger",
]
