"""Utility functions for file operations"""
import os
import re
import shutil
import unicodedata
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Iterator, Union

from video_uploader.utils.logger import get_logger

logger = get_logger(__name__)

# Upload ids become directory names inside the staging area
SAFE_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9._-]{1,128}$")

DEFAULT_FILENAME = "upload"
MAX_FILENAME_LENGTH = 200


@dataclass
class FileInfo:
    """File information data class"""
    path: Path
    size: int
    modified_time: datetime
    is_dir: bool = False


class FileProcessor:
    """Filesystem helpers shared by the staging and output stores"""

    @staticmethod
    def get_file_info(file_path: Union[str, Path]) -> FileInfo:
        """
        Get basic file information

        Args:
            file_path: Path to the file

        Returns:
            FileInfo: File information object

        Raises:
            FileNotFoundError: If the path does not exist
        """
        file_path = Path(file_path)
        stat = file_path.stat()
        return FileInfo(
            path=file_path,
            size=stat.st_size,
            modified_time=datetime.fromtimestamp(stat.st_mtime),
            is_dir=file_path.is_dir()
        )

    @staticmethod
    def safe_remove(path: Union[str, Path]) -> bool:
        """
        Delete a file or directory, logging instead of raising on failure

        Args:
            path: Path to file or directory

        Returns:
            bool: True if deletion succeeded, False otherwise
        """
        path = Path(path)

        try:
            if path.is_file() or path.is_symlink():
                path.unlink()
                logger.debug(f"File removed: {path}")
                return True
            elif path.is_dir():
                shutil.rmtree(path)
                logger.debug(f"Directory removed: {path}")
                return True
            else:
                logger.debug(f"Path does not exist: {path}")
                return False

        except OSError as e:
            logger.error(f"Failed to remove path {path}: {e}")
            return False

    @staticmethod
    def ensure_directory(path: Union[str, Path], mode: int = 0o755) -> Path:
        """
        Ensure directory exists; create if it doesn't

        Args:
            path: Directory path
            mode: Directory permission mode

        Returns:
            Path: Created directory path
        """
        path = Path(path)
        path.mkdir(parents=True, exist_ok=True, mode=mode)
        return path

    @staticmethod
    def purge_directory_contents(directory: Union[str, Path]) -> int:
        """
        Remove every entry inside a directory, keeping the directory itself

        Returns:
            int: Number of entries removed
        """
        directory = Path(directory)
        if not directory.is_dir():
            return 0

        removed = 0
        for entry in directory.iterdir():
            if FileProcessor.safe_remove(entry):
                removed += 1
        return removed

    @staticmethod
    def iter_files(directory: Union[str, Path], suffix: str = "") -> Iterator[Path]:
        """Yield regular files directly inside a directory, optionally filtered by suffix"""
        directory = Path(directory)
        if not directory.is_dir():
            return
        with os.scandir(directory) as entries:
            for entry in entries:
                if entry.is_file() and entry.name.endswith(suffix):
                    yield Path(entry.path)


def is_safe_path_segment(value: str) -> bool:
    """Check that a client-supplied token can be used as one path segment"""
    if not value or value in (".", ".."):
        return False
    return bool(SAFE_SEGMENT_PATTERN.match(value))


def sanitize_filename(filename: str) -> str:
    """
    Reduce an untrusted client filename to a bare, safe file name

    Directory components are stripped for both separators, control characters
    are dropped and names that would resolve to a directory fall back to
    ``upload``.
    """
    if not filename:
        return DEFAULT_FILENAME

    name = unicodedata.normalize("NFC", filename)
    name = name.replace("\\", "/").split("/")[-1]
    name = "".join(ch for ch in name if ch.isprintable()).strip()

    if not name or name in (".", ".."):
        return DEFAULT_FILENAME

    if len(name) > MAX_FILENAME_LENGTH:
        stem, ext = os.path.splitext(name)
        name = stem[:MAX_FILENAME_LENGTH - len(ext)] + ext

    return name


def is_within_directory(path: Union[str, Path], directory: Union[str, Path]) -> bool:
    """Return True when ``path`` resolves to a location inside ``directory``"""
    resolved = Path(path).resolve()
    base = Path(directory).resolve()
    return resolved != base and base in resolved.parents


def get_file_size(file_path: Union[str, Path]) -> int:
    """Get file size in bytes"""
    return FileProcessor.get_file_info(file_path).size
