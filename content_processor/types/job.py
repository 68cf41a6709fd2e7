"""Job, job set and state machine models."""

import uuid
from enum import IntEnum
from typing import Any, Iterable, Iterator, Optional

from pydantic import BaseModel, Field


class JobStatus(IntEnum):
    """One-way state machine for a job."""

    READY_FOR_EXTRACTION = 1
    EXTRACTING = 2
    READY_FOR_LLM = 3
    PROCESSING_LLM = 4
    COMPLETED = 5
    ERROR = -1

    @property
    def is_terminal(self) -> bool:
        """True for COMPLETED and ERROR."""
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)

    @property
    def label(self) -> str:
        """Short human-readable status."""
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    JobStatus.READY_FOR_EXTRACTION: "Queued",
    JobStatus.EXTRACTING: "Extracting",
    JobStatus.READY_FOR_LLM: "Ready for LLM",
    JobStatus.PROCESSING_LLM: "Processing LLM",
    JobStatus.COMPLETED: "Completed",
    JobStatus.ERROR: "Error",
}

# ERROR is reachable from every non-terminal state and has no exits.
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.READY_FOR_EXTRACTION: frozenset({JobStatus.EXTRACTING, JobStatus.ERROR}),
    JobStatus.EXTRACTING: frozenset({JobStatus.READY_FOR_LLM, JobStatus.ERROR}),
    JobStatus.READY_FOR_LLM: frozenset({JobStatus.PROCESSING_LLM, JobStatus.ERROR}),
    JobStatus.PROCESSING_LLM: frozenset({JobStatus.COMPLETED, JobStatus.ERROR}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.ERROR: frozenset(),
}


def can_transition(source: JobStatus, target: JobStatus) -> bool:
    """Check whether a job may move from source to target."""
    return target in ALLOWED_TRANSITIONS[source]


class ContentStats(BaseModel):
    """Size and line statistics for a piece of content."""

    lines: int = Field(default=0)
    size: int = Field(default=0, description="UTF-8 size in bytes")

    @classmethod
    def from_text(cls, text: Optional[str]) -> "ContentStats":
        """Measure text; None or empty text counts as zero lines."""
        if not text:
            return cls()
        return cls(lines=len(text.split("\n")), size=len(text.encode("utf-8")))

    def add(self, other: "ContentStats") -> None:
        """Accumulate another measurement into this one."""
        self.lines += other.lines
        self.size += other.size


class TokenUsage(BaseModel):
    """Token usage counts reported by the rewrite provider."""

    prompt_tokens: int = Field(default=0)
    candidates_tokens: int = Field(default=0)
    thoughts_tokens: int = Field(default=0)
    total_tokens: int = Field(default=0)

    def add(self, other: "TokenUsage") -> None:
        """Accumulate another usage record into this one."""
        self.prompt_tokens += other.prompt_tokens
        self.candidates_tokens += other.candidates_tokens
        self.thoughts_tokens += other.thoughts_tokens
        self.total_tokens += other.total_tokens

    def reset(self) -> None:
        """Zero all counts."""
        self.prompt_tokens = 0
        self.candidates_tokens = 0
        self.thoughts_tokens = 0
        self.total_tokens = 0


class JobMetrics(BaseModel):
    """Rewrite outcome metrics."""

    finish_reason: Optional[str] = Field(default=None)
    usage: Optional[TokenUsage] = Field(default=None)


def _new_job_id() -> str:
    return uuid.uuid4().hex


class Job(BaseModel):
    """One URL's progress through the pipeline.

    Jobs are treated as values: every change produces a new Job via
    evolve(), and only the orchestrator swaps them into the job set.
    """

    id: str = Field(default_factory=_new_job_id)
    url: str
    status: JobStatus = Field(default=JobStatus.READY_FOR_EXTRACTION)
    raw_content: Optional[str] = Field(default=None)
    processed_content: Optional[str] = Field(default=None)
    error: Optional[str] = Field(default=None)
    metrics: Optional[JobMetrics] = Field(default=None)

    # Debug-mode diagnostics
    extraction_result: Optional[dict[str, Any]] = Field(default=None)
    extraction_response_time: Optional[float] = Field(default=None)
    rewrite_request: Optional[dict[str, Any]] = Field(default=None)
    rewrite_response: Optional[dict[str, Any]] = Field(default=None)
    rewrite_response_time: Optional[float] = Field(default=None)
    raw_stats: Optional[ContentStats] = Field(default=None)
    processed_stats: Optional[ContentStats] = Field(default=None)

    def evolve(self, **changes: Any) -> "Job":
        """Return a copy of this job with fields replaced."""
        return self.model_copy(update=changes)


class TransitionRequest(BaseModel):
    """A stage's request to move a job to a new status."""

    job_id: str
    status: JobStatus
    changes: dict[str, Any] = Field(default_factory=dict)


class JobSet:
    """Immutable, ordered collection of jobs for one run."""

    __slots__ = ("_jobs", "_index")

    def __init__(self, jobs: Iterable[Job] = ()):
        self._jobs: tuple[Job, ...] = tuple(jobs)
        self._index = {job.id: i for i, job in enumerate(self._jobs)}

    @classmethod
    def from_urls(cls, urls: Iterable[str]) -> "JobSet":
        """Build a fresh job set from raw URL input.

        Entries are trimmed, blanks dropped and duplicates removed while
        keeping first-seen order.
        """
        seen: set[str] = set()
        jobs = []
        for raw in urls:
            url = (raw or "").strip()
            if not url or url in seen:
                continue
            seen.add(url)
            jobs.append(Job(url=url))
        return cls(jobs)

    def __iter__(self) -> Iterator[Job]:
        return iter(self._jobs)

    def __len__(self) -> int:
        return len(self._jobs)

    def __bool__(self) -> bool:
        return bool(self._jobs)

    def __repr__(self) -> str:
        return f"JobSet({len(self._jobs)} jobs)"

    @property
    def jobs(self) -> tuple[Job, ...]:
        """Jobs in creation order."""
        return self._jobs

    def by_id(self, job_id: str) -> Optional[Job]:
        """Look up a job by id."""
        i = self._index.get(job_id)
        return self._jobs[i] if i is not None else None

    def with_status(self, *statuses: JobStatus) -> list[Job]:
        """Jobs currently in any of the given statuses."""
        return [job for job in self._jobs if job.status in statuses]

    def any_in(self, *statuses: JobStatus) -> bool:
        """Whether any job is in one of the given statuses."""
        return any(job.status in statuses for job in self._jobs)

    def all_terminal(self) -> bool:
        """Whether every job is COMPLETED or ERROR."""
        return all(job.status.is_terminal for job in self._jobs)

    def completed(self) -> list[Job]:
        """Completed jobs with content, in job set order."""
        return [
            job
            for job in self._jobs
            if job.status == JobStatus.COMPLETED and job.processed_content is not None
        ]

    def counts(self) -> dict[JobStatus, int]:
        """Number of jobs per status."""
        result = {status: 0 for status in JobStatus}
        for job in self._jobs:
            result[job.status] += 1
        return result

    def replace(self, updated: Iterable[Job]) -> "JobSet":
        """Return a new job set with the given jobs swapped in by id."""
        jobs = list(self._jobs)
        for job in updated:
            i = self._index.get(job.id)
            if i is not None:
                jobs[i] = job
        return JobSet(jobs)
