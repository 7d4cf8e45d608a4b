"""Cancellation-aware byte stream copy used for every staging and output transfer."""
import inspect
import time
from typing import Any, Optional

from video_uploader.core.exceptions import (
    PayloadTooLargeException,
    ShortWriteException,
    TransferCancelledException,
)

DEFAULT_BUFFER_SIZE = 32 * 1024


class CancellationToken:
    """Cooperative cancellation signal with an optional deadline.

    The owner of a transfer (usually one HTTP request) calls :meth:`cancel`
    when the client goes away; the deadline covers requests that stall.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._cancelled = False
        self._reason = "cancelled"
        self._deadline = time.monotonic() + timeout if timeout is not None else None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._cancelled:
            self._cancelled = True
            self._reason = reason

    @property
    def cancelled(self) -> bool:
        if not self._cancelled and self._deadline is not None and time.monotonic() >= self._deadline:
            self._cancelled = True
            self._reason = "timed out"
        return self._cancelled

    @property
    def reason(self) -> str:
        return self._reason


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def copy_stream(
    destination: Any,
    source: Any,
    cancel_token: Optional[CancellationToken] = None,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
    limit: Optional[int] = None,
) -> int:
    """
    Copy ``source`` into ``destination`` in fixed-size blocks.

    Both ends may be synchronous file objects or expose awaitable
    ``read``/``write`` (aiofiles handles, Starlette ``UploadFile``).

    Args:
        destination: Writable file-like object
        source: Readable file-like object
        cancel_token: Checked before every read
        buffer_size: Maximum bytes per read
        limit: Maximum total bytes accepted; exceeding it aborts the copy

    Returns:
        int: Number of bytes copied

    Raises:
        TransferCancelledException: The token was cancelled or its deadline passed
        ShortWriteException: The destination accepted fewer bytes than were read
        PayloadTooLargeException: More than ``limit`` bytes were supplied
    """
    if buffer_size <= 0:
        raise ValueError("buffer_size must be positive")

    written_total = 0
    while True:
        if cancel_token is not None and cancel_token.cancelled:
            raise TransferCancelledException(written_total, cancel_token.reason)

        block = await _maybe_await(source.read(buffer_size))
        if not block:
            break

        if limit is not None and written_total + len(block) > limit:
            raise PayloadTooLargeException(
                f"Payload exceeds the limit of {limit} bytes",
                limit=limit,
                details={"bytes_copied": written_total}
            )

        written = await _maybe_await(destination.write(block))
        if written is not None and written != len(block):
            written_total += max(written, 0)
            raise ShortWriteException(len(block), written, written_total)
        written_total += len(block)

    return written_total
