"""Run orchestration: concurrency, governance, stages and the coordinator."""

from .extraction_stage import ExtractionStage
from .job_board import JobBoard
from .orchestrator import ABORT_REASON, PipelineOrchestrator, RunResult
from .rewrite_stage import RewriteStage
from .task_runner import BoundedTaskRunner, CancellationToken
from .usage_governor import (
    LOCK_MESSAGE,
    AsyncUsageContext,
    Provider,
    Ticket,
    TripScope,
    UsageGovernor,
    UsageLimits,
)

__all__ = [
    # Concurrency
    "BoundedTaskRunner",
    "CancellationToken",
    # Governance
    "UsageGovernor",
    "UsageLimits",
    "Provider",
    "TripScope",
    "Ticket",
    "AsyncUsageContext",
    "LOCK_MESSAGE",
    # Pipeline
    "JobBoard",
    "ExtractionStage",
    "RewriteStage",
    "PipelineOrchestrator",
    "RunResult",
    "ABORT_REASON",
]
