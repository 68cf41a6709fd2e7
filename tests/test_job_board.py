"""Tests for the single-writer job board."""

import pytest
import pytest_asyncio

from content_processor.orchestration.job_board import JobBoard
from content_processor.types.job import JobSet, JobStatus, TransitionRequest


@pytest_asyncio.fixture
async def board():
    jobs = JobSet.from_urls(["https://a.com", "https://b.com"])
    board = JobBoard(jobs)
    board.start()
    yield board
    await board.close()


def request(job, status, **changes):
    return TransitionRequest(job_id=job.id, status=status, changes=changes)


class TestJobBoard:
    """Tests for JobBoard."""

    @pytest.mark.asyncio
    async def test_applies_legal_transition(self, board):
        job = board.jobs.jobs[0]
        original = board.jobs

        result = await board.apply([request(job, JobStatus.EXTRACTING)])

        assert result == [True]
        assert board.jobs.by_id(job.id).status == JobStatus.EXTRACTING
        # Old snapshot untouched
        assert original.by_id(job.id).status == JobStatus.READY_FOR_EXTRACTION

    @pytest.mark.asyncio
    async def test_rejects_illegal_transition(self, board):
        job = board.jobs.jobs[0]

        result = await board.apply([request(job, JobStatus.COMPLETED, processed_content="x")])

        assert result == [False]
        assert board.jobs.by_id(job.id).status == JobStatus.READY_FOR_EXTRACTION

    @pytest.mark.asyncio
    async def test_error_is_absorbing(self, board):
        job = board.jobs.jobs[0]
        await board.apply([request(job, JobStatus.ERROR, error="boom")])

        result = await board.apply([request(job, JobStatus.EXTRACTING)])

        assert result == [False]
        updated = board.jobs.by_id(job.id)
        assert updated.status == JobStatus.ERROR
        assert updated.error == "boom"

    @pytest.mark.asyncio
    async def test_completed_requires_content(self, board):
        job = board.jobs.jobs[0]
        for status in (
            JobStatus.EXTRACTING,
            JobStatus.READY_FOR_LLM,
            JobStatus.PROCESSING_LLM,
        ):
            await board.apply([request(job, status)])

        assert await board.apply([request(job, JobStatus.COMPLETED)]) == [False]
        assert await board.apply(
            [request(job, JobStatus.COMPLETED, processed_content="done")]
        ) == [True]
        assert board.jobs.by_id(job.id).processed_content == "done"

    @pytest.mark.asyncio
    async def test_batch_results_per_request(self, board):
        a, b = board.jobs.jobs

        result = await board.apply(
            [
                request(a, JobStatus.EXTRACTING),
                request(b, JobStatus.READY_FOR_LLM),
                request(a, JobStatus.READY_FOR_LLM, raw_content="text"),
            ]
        )

        assert result == [True, False, True]
        assert board.jobs.by_id(a.id).raw_content == "text"

    @pytest.mark.asyncio
    async def test_abort_all_moves_non_terminal_to_error(self, board):
        a, b = board.jobs.jobs
        await board.apply([request(a, JobStatus.ERROR, error="earlier")])

        count = await board.abort_all("stopped")

        assert count == 1
        assert board.jobs.by_id(a.id).error == "earlier"
        assert board.jobs.by_id(b.id).status == JobStatus.ERROR
        assert board.jobs.by_id(b.id).error == "stopped"

    @pytest.mark.asyncio
    async def test_on_change_receives_snapshots(self):
        seen = []
        jobs = JobSet.from_urls(["https://a.com"])
        board = JobBoard(jobs, on_change=seen.append)
        board.start()

        await board.apply([request(jobs.jobs[0], JobStatus.EXTRACTING)])
        await board.close()

        assert seen[-1].jobs[0].status == JobStatus.EXTRACTING

    @pytest.mark.asyncio
    async def test_closed_board_drops_requests(self, board):
        job = board.jobs.jobs[0]
        await board.close()

        assert board.closed
        assert await board.apply([request(job, JobStatus.EXTRACTING)]) == [False]
        assert board.jobs.by_id(job.id).status == JobStatus.READY_FOR_EXTRACTION
