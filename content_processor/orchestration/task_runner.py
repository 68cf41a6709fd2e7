"""Bounded-concurrency task runner.

Runs an async processor over a list of items with at most K in flight,
refilling each freed slot from the queue until it is empty or the run is
cancelled. Cancellation is cooperative: it stops admissions, never
interrupts a task that has already started.
"""

import asyncio
import logging
from collections import deque
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative stop signal shared by a run's runners and stages."""

    def __init__(self) -> None:
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called."""
        return self._cancelled

    def cancel(self) -> None:
        """Request that no new work be admitted."""
        self._cancelled = True


class BoundedTaskRunner:
    """Executes a processor over items with a concurrency limit.

    Features:
    - At most max_concurrent processor calls outstanding
    - Every item attempted exactly once unless cancelled before it starts
    - Processor exceptions logged and treated as completion of that item
    - Optional delay before the first admission and after each task
    """

    def __init__(
        self,
        max_concurrent: int,
        initial_delay: float = 0.0,
        after_delay: float = 0.0,
        name: str = "runner",
    ):
        """Initialize the runner.

        Args:
            max_concurrent: Maximum processor calls in flight (K >= 1).
            initial_delay: Seconds to wait before the first admission.
            after_delay: Seconds a slot waits after a task before refilling.
            name: Label used in log messages.
        """
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got {max_concurrent}")
        self._max_concurrent = max_concurrent
        self._initial_delay = initial_delay
        self._after_delay = after_delay
        self._name = name

    @property
    def max_concurrent(self) -> int:
        """Configured concurrency limit."""
        return self._max_concurrent

    async def run(
        self,
        items: Iterable[T],
        process: Callable[[T], Awaitable[None]],
        token: Optional[CancellationToken] = None,
    ) -> None:
        """Process all items, resolving when every started task has finished.

        Args:
            items: Items to process, admitted in order.
            process: Async processor; its results are ignored.
            token: Cancellation token checked before each admission.
        """
        queue = deque(items)
        if not queue:
            return
        if token is not None and token.cancelled:
            logger.debug(f"[{self._name}] cancelled before start; {len(queue)} items skipped")
            return

        if self._initial_delay > 0:
            await asyncio.sleep(self._initial_delay)

        async def slot(index: int) -> None:
            while queue:
                if token is not None and token.cancelled:
                    return
                item = queue.popleft()
                try:
                    await process(item)
                except Exception:
                    logger.exception(f"[{self._name}] processor failed in slot {index}")
                if self._after_delay > 0 and queue:
                    await asyncio.sleep(self._after_delay)

        slot_count = min(self._max_concurrent, len(queue))
        logger.debug(
            f"[{self._name}] processing {len(queue)} items with {slot_count} slots"
        )
        await asyncio.gather(*(slot(i) for i in range(slot_count)))

        if queue:
            logger.info(f"[{self._name}] stopped with {len(queue)} items not started")
