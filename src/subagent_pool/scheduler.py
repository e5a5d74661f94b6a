"""Concurrency-limited fan-out over a fixed number of worker loops.

Each loop claims the next unclaimed index from a shared cursor, runs that
item to completion, and writes the result into a preallocated slot. Results
therefore line up with the input regardless of completion order, and an idle
loop immediately picks up the next item.
"""

from __future__ import annotations

import logging
import math
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def clamp_concurrency(concurrency: Any, n_items: int) -> int:
    """Floor the requested concurrency and clamp it to ``[1, n_items]``."""
    try:
        value = float(concurrency)
    except (TypeError, ValueError):
        value = 1.0
    limit = math.floor(value) if math.isfinite(value) else 1
    return max(1, min(limit, n_items))


class _IndexCursor:
    """Hands out each index in ``range(total)`` exactly once."""

    def __init__(self, total: int) -> None:
        self._total = total
        self._next = 0
        self._lock = threading.Lock()

    def claim(self) -> int | None:
        with self._lock:
            if self._next >= self._total:
                return None
            index = self._next
            self._next += 1
            return index


def run_with_concurrency_limit(
    items: Sequence[T],
    concurrency: Any,
    runner: Callable[[T, int], R],
) -> list[R]:
    """Run ``runner(item, index)`` for every item with bounded parallelism.

    Args:
        items: Work items, in the order results should be returned.
        concurrency: Maximum simultaneous runner invocations.
        runner: Called once per item with the item and its input index.

    Returns:
        Results in input order.

    Raises:
        Exception: The first exception raised by ``runner``, after every
            worker loop has stopped.
    """
    if not items:
        return []

    limit = clamp_concurrency(concurrency, len(items))
    results: list[Any] = [None] * len(items)
    cursor = _IndexCursor(len(items))

    def _worker_loop() -> None:
        while True:
            index = cursor.claim()
            if index is None:
                return
            results[index] = runner(items[index], index)

    logger.debug("Running %d items with %d worker loops", len(items), limit)
    with ThreadPoolExecutor(max_workers=limit, thread_name_prefix="subagent-worker") as executor:
        futures = [executor.submit(_worker_loop) for _ in range(limit)]
        wait(futures)

    for future in futures:
        future.result()
    return results
