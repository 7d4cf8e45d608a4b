"""Commits reassembled artifacts to the output directory under collision-resistant names."""
import asyncio
import errno
import os
import secrets
from datetime import datetime
from pathlib import Path
from typing import Union

import aiofiles
import aiofiles.os

from video_uploader.core.decorators import async_performance_monitor
from video_uploader.core.exceptions import FinalizeException, StorageException
from video_uploader.services.transfer import DEFAULT_BUFFER_SIZE, copy_stream
from video_uploader.utils.file_utils import FileProcessor, is_within_directory, sanitize_filename
from video_uploader.utils.logger import get_logger

logger = get_logger(__name__)

PARTIAL_SUFFIX = ".partial"
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
MAX_NAME_ATTEMPTS = 5


class Finalizer:
    """
    Moves a staging artifact into the output directory.

    Within one filesystem the move is a single atomic rename. Across
    filesystems the artifact is copied to a hidden ``.<name>.partial`` file,
    fsynced and renamed into place, so a crash never leaves a truncated file
    under a final name. Leftover ``.partial`` files are removed by
    :meth:`sweep_partials` at startup.
    """

    def __init__(self, output_dir: Union[str, Path], buffer_size: int = DEFAULT_BUFFER_SIZE):
        self.output_dir = Path(output_dir)
        self.buffer_size = buffer_size

    @staticmethod
    def build_final_name(original_filename: str) -> str:
        """``<8 hex>_<YYYYMMDDHHMMSS>_<sanitized name>``"""
        timestamp = datetime.now().strftime(TIMESTAMP_FORMAT)
        return f"{secrets.token_hex(4)}_{timestamp}_{sanitize_filename(original_filename)}"

    def _reserve_destination(self, original_filename: str) -> Path:
        for _ in range(MAX_NAME_ATTEMPTS):
            destination = self.output_dir / self.build_final_name(original_filename)
            if not is_within_directory(destination, self.output_dir):
                raise FinalizeException(
                    "Destination escapes the output directory",
                    details={"filename": original_filename}
                )
            if not destination.exists():
                return destination
        raise FinalizeException(
            f"Could not find a free output name after {MAX_NAME_ATTEMPTS} attempts",
            details={"filename": original_filename}
        )

    @async_performance_monitor("upload.finalize", slow_threshold=10.0)
    async def finalize(self, staging_path: Union[str, Path], original_filename: str) -> Path:
        """
        Move a verified staging artifact into the output directory.

        Args:
            staging_path: Reassembled artifact
            original_filename: Client filename, sanitized for the final name

        Returns:
            Path: Final file location

        Raises:
            FinalizeException: Naming or relocation failed; staging is left intact
        """
        return await self._commit(Path(staging_path), original_filename)

    async def relocate_external(self, source_path: Union[str, Path], original_filename: str) -> Path:
        """Finalize a file produced outside the staging area, e.g. by tusd."""
        return await self._commit(Path(source_path), original_filename)

    async def _commit(self, source: Path, original_filename: str) -> Path:
        try:
            FileProcessor.ensure_directory(self.output_dir)
            destination = self._reserve_destination(original_filename)
            await self._relocate(source, destination)
        except FinalizeException:
            raise
        except (StorageException, OSError) as e:
            reason = e.message if isinstance(e, StorageException) else str(e)
            logger.error("Finalize of %s failed: %s", source, reason)
            raise FinalizeException(
                f"Failed to finalize {source.name}: {reason}",
                details={"source": str(source), "filename": original_filename},
                original_error=e
            ) from e

        logger.info("Finalized %s as %s", original_filename, destination.name)
        return destination

    async def _relocate(self, source: Path, destination: Path) -> None:
        try:
            await aiofiles.os.replace(source, destination)
        except OSError as e:
            if e.errno != errno.EXDEV:
                raise
            logger.info("Cross-device finalize for %s, copying", destination.name)
            await self._copy_across_devices(source, destination)

    async def _copy_across_devices(self, source: Path, destination: Path) -> None:
        partial = destination.with_name(f".{destination.name}{PARTIAL_SUFFIX}")
        try:
            async with aiofiles.open(source, "rb") as src, aiofiles.open(partial, "wb") as out:
                await copy_stream(out, src, buffer_size=self.buffer_size)
                await out.flush()
                await asyncio.get_running_loop().run_in_executor(None, os.fsync, out.fileno())
            await aiofiles.os.replace(partial, destination)
        except (StorageException, OSError):
            FileProcessor.safe_remove(partial)
            raise
        FileProcessor.safe_remove(source)

    def purge_staging(self, session_dir: Union[str, Path]) -> bool:
        """Remove per-session staging state once the final file is committed."""
        return FileProcessor.safe_remove(session_dir)

    def sweep_partials(self) -> int:
        """Delete ``.partial`` leftovers of interrupted cross-device copies."""
        removed = 0
        for path in list(FileProcessor.iter_files(self.output_dir, suffix=PARTIAL_SUFFIX)):
            if path.name.startswith(".") and FileProcessor.safe_remove(path):
                removed += 1
        if removed:
            logger.warning("Removed %d interrupted finalize leftovers from %s", removed, self.output_dir)
        return removed
