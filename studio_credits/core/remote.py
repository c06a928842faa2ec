"""
Bounded remote calls.

No call into the shared store or the auth service may stay pending
forever: it either answers within its timeout or becomes ``Unreachable``.
Read paths may retry with backoff; user-initiated writes surface the
failure immediately so the UI never appears to hang.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, TypeVar

from .errors import Unreachable

logger = logging.getLogger(__name__)

T = TypeVar("T")


def call_with_timeout(fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """Run ``fn`` on a worker thread and wait at most ``timeout`` seconds.

    A call that overruns is classified as a definite failure; its thread is
    abandoned and its result, if any, discarded.

    Raises:
        Unreachable: If the call does not finish in time
    """
    executor = ThreadPoolExecutor(max_workers=1)
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        name = getattr(fn, "__name__", repr(fn))
        raise Unreachable(f"{name} timed out after {timeout:g}s") from None
    finally:
        executor.shutdown(wait=False)


def retry_read(
    fn: Callable[[], T],
    attempts: int = 3,
    backoff: float = 0.2,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Retry a read while the store is unreachable.

    Args:
        fn: Zero-argument read operation
        attempts: Total number of tries (at least 1)
        backoff: Seconds to wait after the first failure; grows linearly
        sleep: Injected for tests

    Raises:
        Unreachable: From the last attempt
    """
    attempt = 1
    while True:
        try:
            return fn()
        except Unreachable as e:
            if attempt >= attempts:
                raise
            logger.warning("Read failed (attempt %d/%d): %s", attempt, attempts, e)
            if backoff > 0:
                sleep(backoff * attempt)
            attempt += 1
