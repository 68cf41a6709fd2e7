"""API clients for the extraction (Tavily) and rewrite (Gemini) providers."""

from .extraction_client import (
    ExtractedPage,
    ExtractionClient,
    ExtractionRequest,
    ExtractionResponse,
    FailedExtraction,
    RetryPolicy,
)
from .rewrite_client import (
    ACCEPTED_FINISH_REASONS,
    RewriteClient,
    RewriteRequest,
    RewriteResponse,
    RewriteTimeoutError,
    is_accepted_finish,
)

__all__ = [
    # Extraction
    "ExtractionClient",
    "ExtractionRequest",
    "ExtractionResponse",
    "ExtractedPage",
    "FailedExtraction",
    "RetryPolicy",
    # Rewrite
    "RewriteClient",
    "RewriteRequest",
    "RewriteResponse",
    "RewriteTimeoutError",
    "ACCEPTED_FINISH_REASONS",
    "is_accepted_finish",
]
