"""
Non-critical side effects

Timeline writes and notifications run after money has moved. Their failure is
logged and never propagates into the release or refund that triggered them.
"""

import functools
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


def run_non_critical(label: str, func: Callable[..., Any], *args, **kwargs) -> Optional[Any]:
    """Call func, logging and discarding any exception"""
    try:
        return func(*args, **kwargs)
    except Exception as e:
        logger.error(f"⚠️ NON_CRITICAL_FAILED: {label}: {type(e).__name__}: {e}")
        return None


async def run_non_critical_async(
    label: str, func: Callable[..., Awaitable[Any]], *args, **kwargs
) -> Optional[Any]:
    """Await func, logging and discarding any exception"""
    try:
        return await func(*args, **kwargs)
    except Exception as e:
        logger.error(f"⚠️ NON_CRITICAL_FAILED: {label}: {type(e).__name__}: {e}")
        return None


def non_critical(func: Callable) -> Callable:
    """
    Decorator for best-effort async side effects
    Catches exceptions and logs them without failing the caller
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        return await run_non_critical_async(func.__qualname__, func, *args, **kwargs)

    return wrapper
