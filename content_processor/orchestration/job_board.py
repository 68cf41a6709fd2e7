"""Single-writer owner of a run's job set.

Stages never mutate jobs. They send TransitionRequest batches to the board,
whose loop applies them one message at a time against the current snapshot
and swaps in a new JobSet. Requests that break the state machine (including
anything leaving ERROR) are rejected, which is how late results from
abandoned or aborted work get discarded.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from ..types.job import JobSet, JobStatus, TransitionRequest, can_transition

logger = logging.getLogger(__name__)


@dataclass
class _Update:
    requests: list[TransitionRequest]
    future: asyncio.Future


@dataclass
class _Abort:
    reason: str
    future: asyncio.Future


@dataclass
class _Event:
    name: str
    detail: dict = field(default_factory=dict)


_Message = Union[_Update, _Abort, _Event, None]


class JobBoard:
    """Applies job transitions sequentially and publishes snapshots."""

    def __init__(
        self,
        jobs: JobSet,
        on_change: Optional[Callable[[JobSet], None]] = None,
    ):
        """Initialize the board.

        Args:
            jobs: Initial job set for the run.
            on_change: Called with the current snapshot after every message.
        """
        self._jobs = jobs
        self._on_change = on_change
        self._queue: asyncio.Queue[_Message] = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def jobs(self) -> JobSet:
        """Current snapshot. Never mutated; replaced on every update."""
        return self._jobs

    @property
    def closed(self) -> bool:
        return self._closed

    def start(self) -> None:
        """Start the update loop on the running event loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def apply(self, requests: list[TransitionRequest]) -> list[bool]:
        """Submit transitions and wait until they are applied.

        Args:
            requests: Transitions to apply in order.

        Returns:
            One flag per request, True if it was applied.
        """
        if not requests:
            return []
        if self._closed:
            logger.debug(f"Board closed; dropping {len(requests)} transition(s)")
            return [False] * len(requests)

        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Update(list(requests), future))
        return await future

    async def abort_all(self, reason: str) -> int:
        """Move every non-terminal job to ERROR.

        Returns:
            Number of jobs aborted.
        """
        if self._closed:
            return 0
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_Abort(reason, future))
        return await future

    def post_event(self, name: str, **detail: object) -> None:
        """Wake the loop so listeners re-evaluate the current snapshot."""
        if not self._closed:
            self._queue.put_nowait(_Event(name, dict(detail)))

    async def close(self) -> None:
        """Stop the loop after the messages already queued."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)
        if self._task is not None:
            await self._task

    async def _loop(self) -> None:
        while True:
            message = await self._queue.get()
            if message is None:
                break

            if isinstance(message, _Update):
                result = self._apply(message.requests)
                if not message.future.done():
                    message.future.set_result(result)
            elif isinstance(message, _Abort):
                count = self._abort(message.reason)
                if not message.future.done():
                    message.future.set_result(count)
            else:
                logger.debug(f"Board event: {message.name} {message.detail}")

            if self._on_change is not None:
                try:
                    self._on_change(self._jobs)
                except Exception:
                    logger.exception("Job board listener failed")

        # Release anyone still waiting on a message queued after close
        while not self._queue.empty():
            message = self._queue.get_nowait()
            if isinstance(message, _Update) and not message.future.done():
                message.future.set_result([False] * len(message.requests))
            elif isinstance(message, _Abort) and not message.future.done():
                message.future.set_result(0)

    def _apply(self, requests: list[TransitionRequest]) -> list[bool]:
        current = self._jobs
        updated = {}
        result = []

        for request in requests:
            job = updated.get(request.job_id) or current.by_id(request.job_id)
            if job is None:
                logger.debug(f"Unknown job {request.job_id}; transition ignored")
                result.append(False)
                continue
            if not can_transition(job.status, request.status):
                logger.debug(
                    f"Rejected {job.status.name} -> {request.status.name} for {job.url}"
                )
                result.append(False)
                continue

            changes = dict(request.changes)
            if request.status == JobStatus.COMPLETED:
                if changes.get("processed_content") is None:
                    logger.warning(f"COMPLETED without content rejected for {job.url}")
                    result.append(False)
                    continue
            else:
                changes["processed_content"] = None

            updated[job.id] = job.evolve(status=request.status, **changes)
            result.append(True)

        if updated:
            self._jobs = current.replace(updated.values())
        return result

    def _abort(self, reason: str) -> int:
        aborted = [
            job.evolve(status=JobStatus.ERROR, error=reason, processed_content=None)
            for job in self._jobs
            if not job.status.is_terminal
        ]
        if aborted:
            self._jobs = self._jobs.replace(aborted)
            logger.info(f"Aborted {len(aborted)} job(s): {reason}")
        return len(aborted)
