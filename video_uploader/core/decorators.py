"""Decorators for cross-cutting concerns: error logging and latency monitoring."""
import asyncio
import time
from functools import wraps
from typing import Any, Awaitable, Callable, Optional, TypeVar

from video_uploader.core.exceptions import ErrorCategory, ErrorSeverity, UploaderException
from video_uploader.utils.logger import get_logger

logger = get_logger(__name__)

AsyncF = TypeVar('AsyncF', bound=Callable[..., Awaitable[Any]])


def async_exception_handler(
    exception_type: type = Exception,
    default_message: str = "Async operation failed",
    log_error: bool = True,
    custom_handler: Optional[Callable[[Exception], Any]] = None
):
    """
    Log failures of a coroutine and normalize unexpected exceptions.

    Exceptions that are not instances of ``exception_type`` (and not already
    an :class:`UploaderException`) are wrapped into an ``UploaderException``
    so that the HTTP layer always receives the structured error shape.

    Args:
        exception_type: Exception type passed through unchanged.
        default_message: Message used when wrapping unexpected exceptions.
        log_error: Whether to log the error automatically.
        custom_handler: Optional callback invoked with the exception before re-raising.
    """

    def decorator(func: AsyncF) -> AsyncF:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if log_error:
                    if isinstance(e, UploaderException):
                        logger.error(
                            f"Async function {func.__name__} failed: {e.message}",
                            extra={"error_details": e.to_dict()}
                        )
                    else:
                        logger.error(
                            f"Async function {func.__name__} failed: {str(e)}",
                            exc_info=True
                        )

                if custom_handler:
                    result = custom_handler(e)
                    if asyncio.iscoroutine(result):
                        await result

                if isinstance(e, (exception_type, UploaderException)):
                    raise
                raise UploaderException(
                    message=f"{default_message}: {e}",
                    error_code="ASYNC_EXECUTION_ERROR",
                    category=ErrorCategory.SYSTEM,
                    severity=ErrorSeverity.HIGH,
                    original_error=e
                ) from e

        return wrapper  # type: ignore

    return decorator


def async_performance_monitor(
    operation_name: Optional[str] = None,
    log_slow_operations: bool = True,
    slow_threshold: float = 1.0,
):
    """
    Measure coroutine latency and flag slow calls.

    Args:
        operation_name: Custom label for the monitored operation.
        log_slow_operations: Emit warnings when threshold is exceeded.
        slow_threshold: Seconds beyond which the call is considered slow.
    """

    def decorator(func: AsyncF) -> AsyncF:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            op_name = operation_name or f"{func.__module__}.{func.__name__}"
            start_time = time.monotonic()

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                execution_time = time.monotonic() - start_time
                logger.warning(
                    f"Operation failed: {op_name} in {execution_time:.2f}s",
                    extra={"operation": op_name, "error": str(e), "execution_time": execution_time}
                )
                raise

            execution_time = time.monotonic() - start_time
            log_info = {
                "operation": op_name,
                "duration_ms": round(execution_time * 1000, 2),
                "status": "success"
            }
            if log_slow_operations and execution_time > slow_threshold:
                logger.warning(f"Slow async operation detected: {log_info}")
            else:
                logger.debug(f"Async operation completed: {log_info}")
            return result

        return wrapper  # type: ignore

    return decorator
