"""Rewrite stage: READY_FOR_LLM -> PROCESSING_LLM -> COMPLETED | ERROR.

One Gemini call per job. A pass never starts while any job is still
PROCESSING_LLM, so re-entering the stage cannot admit a job twice.
"""

import logging
import time

from ..clients.rewrite_client import RewriteClient, RewriteRequest, is_accepted_finish
from ..core.config import RunConfiguration
from ..types.job import (
    ContentStats,
    Job,
    JobMetrics,
    JobStatus,
    TokenUsage,
    TransitionRequest,
)
from .job_board import JobBoard
from .task_runner import BoundedTaskRunner, CancellationToken
from .usage_governor import Provider, UsageGovernor

logger = logging.getLogger(__name__)


class RewriteStage:
    """Drives extracted jobs through LLM rewriting.

    Token usage is accumulated into a caller-owned TokenUsage that outlives
    the run; output statistics are per run.
    """

    name = "rewrite"

    def __init__(
        self,
        config: RunConfiguration,
        client: RewriteClient,
        governor: UsageGovernor,
        token_usage: TokenUsage,
        output_stats: ContentStats,
    ):
        self._config = config
        self._client = client
        self._governor = governor
        self._token_usage = token_usage
        self._output_stats = output_stats
        settings = config.rewrite
        self._runner = BoundedTaskRunner(
            settings.max_parallel,
            initial_delay=settings.initial_delay,
            after_delay=settings.after_delay,
            name=self.name,
        )

    async def run(self, board: JobBoard, token: CancellationToken) -> None:
        """Run passes until a pass finds nothing ready.

        Args:
            board: Job board for the run.
            token: Run cancellation token.
        """
        while not token.cancelled:
            if await self.run_pass(board, token) == 0:
                break
        logger.debug("Rewrite stage idle")

    async def run_pass(self, board: JobBoard, token: CancellationToken) -> int:
        """Rewrite every job currently READY_FOR_LLM.

        Returns:
            Number of jobs taken into the pass; 0 if nothing was ready or a
            previous pass still has jobs in flight.
        """
        jobs = board.jobs
        if jobs.any_in(JobStatus.PROCESSING_LLM):
            logger.debug("Rewrite pass skipped; jobs still processing")
            return 0

        ready = jobs.with_status(JobStatus.READY_FOR_LLM)
        if not ready:
            return 0

        logger.info(f"Rewriting {len(ready)} document(s)")

        async def process(job: Job) -> None:
            await self._process_job(board, job, token)

        await self._runner.run(ready, process, token)
        return len(ready)

    async def _process_job(
        self, board: JobBoard, job: Job, token: CancellationToken
    ) -> None:
        if token.cancelled:
            return

        (admitted,) = await board.apply(
            [TransitionRequest(job_id=job.id, status=JobStatus.PROCESSING_LLM)]
        )
        if not admitted:
            return

        if job.raw_content is None:
            await board.apply(
                [
                    TransitionRequest(
                        job_id=job.id,
                        status=JobStatus.ERROR,
                        changes={"error": "No extracted content to rewrite."},
                    )
                ]
            )
            return

        request = RewriteRequest.from_settings(job.raw_content, self._config.rewrite)
        started = time.monotonic()

        try:
            # A missing key is refused before the call is counted
            self._client.ensure_api_key()
            async with self._governor.guard(Provider.REWRITE):
                response = await self._client.rewrite(request)
        except Exception as e:
            logger.warning(f"Rewrite failed for {job.url}: {e}")
            status = JobStatus.ERROR
            changes = {"error": str(e)}
        else:
            status, changes = self._outcome(job, request, response, started)

        if token.cancelled:
            return

        (applied,) = await board.apply(
            [TransitionRequest(job_id=job.id, status=status, changes=changes)]
        )
        if applied and status == JobStatus.COMPLETED:
            self._token_usage.add(changes["metrics"].usage)
            self._output_stats.add(changes["processed_stats"])

    def _outcome(self, job, request, response, started):
        """Turn a provider response into the job's next status and fields."""
        elapsed = time.monotonic() - started
        reason = response.finish_reason
        changes = {
            "rewrite_response_time": elapsed,
            "raw_stats": ContentStats.from_text(job.raw_content),
            "metrics": JobMetrics(finish_reason=reason, usage=response.usage),
        }
        if self._config.debug_mode:
            changes["rewrite_response"] = response.raw
            changes["rewrite_request"] = request.config_dict()

        if not is_accepted_finish(reason):
            changes["error"] = f"Stop Reason: {reason}"
            return JobStatus.ERROR, changes

        changes["processed_content"] = response.text
        changes["processed_stats"] = ContentStats.from_text(response.text)
        return JobStatus.COMPLETED, changes
