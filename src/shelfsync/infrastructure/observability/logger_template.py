"""Shared logger utilities and templates.

Hey future me - this makes logging consistent across all modules!

USAGE:
    logger = logging.getLogger(__name__)

    async with log_operation(logger, "ledger.apply", requested=3):
        await run_channels()
"""

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any


# Yo, this context manager logs start/end with automatic duration tracking. The **context
# args become extra fields in both logs. On exception it logs the failure with exc_info=True
# and re-raises so the caller can handle it.
@asynccontextmanager
async def log_operation(
    logger: logging.Logger,
    operation: str,
    **context: Any,
) -> AsyncIterator[None]:
    """Context manager for logging operation start/end with automatic timing.

    Logs:
    - {operation}.started with context fields
    - {operation}.completed with context + duration_ms
    - {operation}.failed with context + duration_ms + error details (if exception)

    Args:
        logger: Module logger
        operation: Operation name (e.g., "ledger.apply")
        **context: Additional fields to include in logs

    Example:
        >>> async with log_operation(logger, "ledger.remove", requested=2):
        ...     await remove()

        # Logs:
        # INFO: ledger.remove.started {"requested": 2}
        # INFO: ledger.remove.completed {"requested": 2, "duration_ms": 12}
    """
    start = time.monotonic()
    logger.info(f"{operation}.started", extra=context)

    try:
        yield
    except Exception as e:
        duration_ms = int((time.monotonic() - start) * 1000)
        logger.error(
            f"{operation}.failed",
            extra={
                **context,
                "duration_ms": duration_ms,
                "error": str(e),
                "error_type": type(e).__name__,
            },
            exc_info=True,
        )
        raise

    duration_ms = int((time.monotonic() - start) * 1000)
    logger.info(
        f"{operation}.completed",
        extra={**context, "duration_ms": duration_ms},
    )
