"""Pipeline orchestrator.

Owns a run from start to finish:
1. Validates settings and freezes them into a RunConfiguration
2. Builds the job set and the job board that serializes all updates
3. Starts the extraction stage, and the rewrite stage whenever jobs
   become READY_FOR_LLM
4. Assembles the final document once every job is terminal and both
   stages are idle, or immediately when stopped
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from ..clients.extraction_client import ExtractionClient
from ..clients.rewrite_client import RewriteClient
from ..core.config import AppSettings, RunConfiguration
from ..core.exceptions import ConfigurationError
from ..output.document_writer import join_document
from ..types.job import ContentStats, Job, JobSet, JobStatus, TokenUsage
from .extraction_stage import ExtractionStage
from .job_board import JobBoard
from .rewrite_stage import RewriteStage
from .task_runner import CancellationToken
from .usage_governor import UsageGovernor

logger = logging.getLogger(__name__)

ABORT_REASON = "Run aborted by operator."


@dataclass
class RunResult:
    """Outcome of a single run."""

    jobs: JobSet
    document: str
    started_at: datetime
    completed_at: datetime
    aborted: bool = False
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    output_stats: ContentStats = field(default_factory=ContentStats)

    @property
    def completed_count(self) -> int:
        return len(self.jobs.with_status(JobStatus.COMPLETED))

    @property
    def error_count(self) -> int:
        return len(self.jobs.with_status(JobStatus.ERROR))

    @property
    def success(self) -> bool:
        """True if the run finished on its own with no failed jobs."""
        return not self.aborted and self.error_count == 0

    @property
    def duration_seconds(self) -> float:
        return (self.completed_at - self.started_at).total_seconds()


class PipelineOrchestrator:
    """Coordinates extraction and rewriting for a list of URLs.

    Only one run may be active at a time. The governor and token usage
    outlive individual runs; output statistics are per run.
    """

    def __init__(
        self,
        governor: UsageGovernor,
        extraction_client: Optional[ExtractionClient] = None,
        rewrite_client: Optional[RewriteClient] = None,
        progress_callback: Optional[Callable[[Job], None]] = None,
    ):
        """Initialize the orchestrator.

        Args:
            governor: Usage governor gating every remote call.
            extraction_client: Client override; built per run when omitted.
            rewrite_client: Client override; built per run when omitted.
            progress_callback: Called with each job after it changes.
        """
        self._governor = governor
        self._extraction_client = extraction_client
        self._rewrite_client = rewrite_client
        self._progress_callback = progress_callback
        self._token_usage = TokenUsage()

        self._config: Optional[RunConfiguration] = None
        self._board: Optional[JobBoard] = None
        self._token: Optional[CancellationToken] = None
        self._extraction: Optional[ExtractionStage] = None
        self._rewrite: Optional[RewriteStage] = None
        self._extraction_task: Optional[asyncio.Task] = None
        self._rewrite_task: Optional[asyncio.Task] = None
        self._shutdown_task: Optional[asyncio.Task] = None
        self._draining: set[asyncio.Task] = set()
        self._done: Optional[asyncio.Event] = None
        self._output_stats = ContentStats()
        self._started_at: Optional[datetime] = None
        self._result: Optional[RunResult] = None
        self._last_jobs = JobSet()

    @property
    def jobs(self) -> JobSet:
        """Latest job snapshot of the current or last run."""
        if self._board is not None:
            return self._board.jobs
        return self._last_jobs

    @property
    def is_running(self) -> bool:
        return self._done is not None and not self._done.is_set()

    @property
    def extraction_active(self) -> bool:
        return self._extraction_task is not None and not self._extraction_task.done()

    @property
    def rewrite_active(self) -> bool:
        return self._rewrite_task is not None and not self._rewrite_task.done()

    @property
    def token_usage(self) -> TokenUsage:
        """Token usage accumulated since construction or the last reset."""
        return self._token_usage

    @property
    def last_result(self) -> Optional[RunResult]:
        return self._result

    async def start(self, urls: list[str], settings: AppSettings) -> None:
        """Start a run without waiting for it to finish.

        Args:
            urls: Raw URL list; trimmed, blanks dropped, duplicates removed.
            settings: Settings to freeze for the run.

        Raises:
            ConfigurationError: If the settings fail validation.
            RuntimeError: If a run is already active.
        """
        if self.is_running:
            raise RuntimeError("A run is already in progress")

        errors = settings.validate()
        if errors:
            raise ConfigurationError(errors)

        config = settings.snapshot()
        jobs = JobSet.from_urls(urls)

        self._config = config
        self._token = CancellationToken()
        self._output_stats = ContentStats()
        self._result = None
        self._extraction_task = None
        self._rewrite_task = None
        self._shutdown_task = None
        self._done = asyncio.Event()
        self._started_at = datetime.now()
        self._last_jobs = jobs
        # Snapshots from an earlier, still draining board are ignored
        board = JobBoard(jobs, on_change=lambda snapshot: self._on_change(board, snapshot))
        self._board = board

        extraction_client = self._extraction_client or ExtractionClient(
            debug=config.debug_mode
        )
        rewrite_client = self._rewrite_client or RewriteClient(
            api_key=config.gemini_api_key, debug=config.debug_mode
        )
        self._extraction = ExtractionStage(config, extraction_client, self._governor)
        self._rewrite = RewriteStage(
            config, rewrite_client, self._governor, self._token_usage, self._output_stats
        )

        logger.info(f"Starting run with {len(jobs)} URL(s)")
        self._board.start()

        if not jobs:
            self._finish(aborted=False)
            return

        self._extraction_task = self._launch(self._extraction)

    async def wait(self) -> RunResult:
        """Wait for the current run to finish and its workers to drain.

        Raises:
            RuntimeError: If no run has been started.
        """
        if self._done is None:
            raise RuntimeError("No run has been started")
        await self._done.wait()
        if self._shutdown_task is not None:
            await self._shutdown_task
        return self._result

    async def run(self, urls: list[str], settings: AppSettings) -> RunResult:
        """Start a run and wait for it."""
        await self.start(urls, settings)
        return await self.wait()

    async def stop(self) -> Optional[RunResult]:
        """Abort the current run.

        Stops admissions, moves every non-terminal job to ERROR and finishes
        the run with whatever has completed. In-flight calls are left to
        drain in the background; their results are discarded. Safe to call
        repeatedly.

        Returns:
            The run result, or None if no run was ever started.
        """
        if self._done is None:
            return None
        if self._done.is_set():
            return self._result

        logger.info("Stopping run")
        self._token.cancel()
        await self._board.abort_all(ABORT_REASON)
        self._finish(aborted=True)
        return self._result

    def reset_usage(self) -> None:
        """Reset governor counters and accumulated token usage."""
        self._governor.reset()
        self._token_usage.reset()

    def _launch(self, stage) -> asyncio.Task:
        board, done = self._board, self._done
        task = asyncio.create_task(stage.run(board, self._token), name=f"stage-{stage.name}")
        task.add_done_callback(lambda t: self._stage_done(stage.name, t, board, done))
        return task

    def _stage_done(
        self, name: str, task: asyncio.Task, board: JobBoard, done: asyncio.Event
    ) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"{name} stage crashed: {error!r}")
            if not done.is_set():
                self._track(board.abort_all(f"{name} stage failed: {error}"))
            return
        # Re-evaluate in case work arrived while the stage was winding down
        board.post_event("stage_idle", stage=name)

    def _track(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._draining.add(task)
        task.add_done_callback(self._draining.discard)
        return task

    def _on_change(self, board: JobBoard, jobs: JobSet) -> None:
        if board is not self._board:
            return
        previous = self._last_jobs
        self._last_jobs = jobs
        if self._progress_callback is not None and jobs is not previous:
            for job in jobs:
                if previous.by_id(job.id) is not job:
                    self._progress_callback(job)
        self._evaluate(jobs)

    def _evaluate(self, jobs: JobSet) -> None:
        if self._done is None or self._done.is_set() or self._token.cancelled:
            return

        if jobs.any_in(JobStatus.READY_FOR_LLM) and not self.rewrite_active:
            self._rewrite_task = self._launch(self._rewrite)
            return

        if jobs.any_in(JobStatus.READY_FOR_EXTRACTION) and not self.extraction_active:
            self._extraction_task = self._launch(self._extraction)
            return

        if jobs.all_terminal() and not self.extraction_active and not self.rewrite_active:
            self._finish(aborted=False)

    def _finish(self, aborted: bool) -> None:
        if self._done.is_set():
            return

        jobs = self._board.jobs
        self._result = RunResult(
            jobs=jobs,
            document=join_document(jobs, self._config.output_separator),
            started_at=self._started_at,
            completed_at=datetime.now(),
            aborted=aborted,
            token_usage=self._token_usage.model_copy(),
            output_stats=self._output_stats.model_copy(),
        )
        counts = jobs.counts()
        logger.info(
            f"Run {'aborted' if aborted else 'finished'}: "
            f"{counts[JobStatus.COMPLETED]} completed, {counts[JobStatus.ERROR]} failed"
        )
        self._done.set()
        tasks = [t for t in (self._extraction_task, self._rewrite_task) if t is not None]
        self._shutdown_task = self._track(self._shutdown(self._board, tasks))

    async def _shutdown(self, board: JobBoard, tasks: list[asyncio.Task]) -> None:
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await board.close()
