"""Type definitions and Pydantic models."""

from .job import (
    ALLOWED_TRANSITIONS,
    ContentStats,
    Job,
    JobMetrics,
    JobSet,
    JobStatus,
    TokenUsage,
    TransitionRequest,
    can_transition,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "ContentStats",
    "Job",
    "JobMetrics",
    "JobSet",
    "JobStatus",
    "TokenUsage",
    "TransitionRequest",
    "can_transition",
]
