"""Extraction stage: READY_FOR_EXTRACTION -> EXTRACTING -> READY_FOR_LLM | ERROR.

Jobs are grouped into fixed-size batches and each batch is one Tavily
request, run through the bounded runner at the configured parallelism.
"""

import logging
from typing import Sequence

from ..clients.extraction_client import (
    ExtractionClient,
    ExtractionRequest,
    ExtractionResponse,
    RetryPolicy,
)
from ..core.config import RunConfiguration
from ..types.job import Job, JobStatus, TransitionRequest
from .job_board import JobBoard
from .task_runner import BoundedTaskRunner, CancellationToken
from .usage_governor import Provider, UsageGovernor

logger = logging.getLogger(__name__)

GENERIC_FAILURE = "Extraction failed"


def chunk(items: Sequence[Job], size: int) -> list[list[Job]]:
    """Split items into consecutive chunks of at most size."""
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class ExtractionStage:
    """Drives jobs through content extraction."""

    name = "extraction"

    def __init__(
        self,
        config: RunConfiguration,
        client: ExtractionClient,
        governor: UsageGovernor,
    ):
        self._config = config
        self._client = client
        self._governor = governor
        settings = config.extraction
        self._runner = BoundedTaskRunner(
            settings.max_parallel,
            initial_delay=settings.initial_delay,
            after_delay=settings.after_delay,
            name=self.name,
        )
        self._retry_policy = RetryPolicy.from_settings(settings)

    async def run(self, board: JobBoard, token: CancellationToken) -> None:
        """Extract until no job is left in READY_FOR_EXTRACTION.

        Args:
            board: Job board for the run.
            token: Run cancellation token.
        """
        while not token.cancelled:
            ready = board.jobs.with_status(JobStatus.READY_FOR_EXTRACTION)
            if not ready:
                break

            batches = chunk(ready, self._config.extraction.batch_size)
            logger.info(f"Extracting {len(ready)} URL(s) in {len(batches)} batch(es)")

            async def process(batch: list[Job]) -> None:
                await self._process_batch(board, batch, token)

            await self._runner.run(batches, process, token)

        logger.debug("Extraction stage idle")

    def _build_request(self, urls: list[str]) -> ExtractionRequest:
        return ExtractionRequest(
            api_key=self._config.tavily_api_key,
            urls=urls,
            extract_depth=self._config.extract_depth,
            timeout_seconds=self._config.extraction.timeout,
            retry_policy=self._retry_policy,
        )

    async def _process_batch(
        self,
        board: JobBoard,
        batch: list[Job],
        token: CancellationToken,
    ) -> None:
        if token.cancelled:
            return

        applied = await board.apply(
            [TransitionRequest(job_id=job.id, status=JobStatus.EXTRACTING) for job in batch]
        )
        admitted = [job for job, ok in zip(batch, applied) if ok]
        if not admitted:
            return

        try:
            async with self._governor.guard(Provider.EXTRACTION):
                response = await self._client.extract(
                    self._build_request([job.url for job in admitted])
                )
        except Exception as e:
            logger.warning(f"Extraction batch of {len(admitted)} failed: {e}")
            if token.cancelled:
                return
            await board.apply(
                [
                    TransitionRequest(
                        job_id=job.id, status=JobStatus.ERROR, changes={"error": str(e)}
                    )
                    for job in admitted
                ]
            )
            return

        if token.cancelled:
            return
        await board.apply(self._partition(admitted, response))

    def _partition(
        self, jobs: list[Job], response: ExtractionResponse
    ) -> list[TransitionRequest]:
        """Map a batch response onto per-job transitions."""
        requests = []
        for job in jobs:
            page = response.find_success(job.url)
            if page is not None:
                changes = {"raw_content": page.content}
                if self._config.debug_mode:
                    changes["extraction_result"] = page.raw
                    changes["extraction_response_time"] = response.response_time
                requests.append(
                    TransitionRequest(
                        job_id=job.id, status=JobStatus.READY_FOR_LLM, changes=changes
                    )
                )
                continue

            failure = response.find_failure(job.url)
            reason = failure.reason if failure is not None else GENERIC_FAILURE
            changes = {"error": reason}
            if self._config.debug_mode and failure is not None:
                changes["extraction_result"] = failure.raw
                changes["extraction_response_time"] = response.response_time
            requests.append(
                TransitionRequest(job_id=job.id, status=JobStatus.ERROR, changes=changes)
            )
        return requests
