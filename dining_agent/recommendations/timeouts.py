from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, TypeVar

from .errors import UpstreamTimeout

T = TypeVar("T")

# Shared across requests; workers hold no request state.
_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="stage")


def call_with_timeout(fn: Callable[..., T], timeout: float, *args: Any, label: str = "stage") -> T:
    """Run *fn* and wait at most *timeout* seconds for it.

    Raises :class:`UpstreamTimeout` when the budget is exceeded. The worker
    thread is left to finish on its own; its result is discarded.
    """
    future = _executor.submit(fn, *args)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout as exc:
        future.cancel()
        raise UpstreamTimeout(f"{label} exceeded {timeout:.1f}s budget") from exc
