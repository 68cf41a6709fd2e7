"""Tavily Extract API client.

Sends a batch of URLs in one request and returns per-URL successes and
failures. Retry policy lives here, not in the stages:
- Timeouts and unexpected statuses consume a timeout retry
- Rate limiting (429) consumes a rate-limit retry
- Client, auth and server errors fail immediately
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from ..core.config import ExtractionSettings
from ..core.exceptions import ProviderError

logger = logging.getLogger(__name__)

PROVIDER_NAME = "tavily"
TAVILY_EXTRACT_URL = "https://api.tavily.com/extract"

# Statuses that re-raise without consuming a retry
NON_RETRYABLE_STATUS_CODES = {400, 401, 403, 432, 433, 500}
RATE_LIMIT_STATUS = 429


@dataclass(frozen=True)
class RetryPolicy:
    """Retry counts and delays for extraction requests."""

    timeout_retry_count: int = 2
    timeout_retry_delay: float = 5.0
    rate_limit_retry_count: int = 3
    rate_limit_retry_delay: float = 30.0
    backoff: str = "fixed"  # fixed or exponential

    @classmethod
    def from_settings(cls, settings: ExtractionSettings) -> "RetryPolicy":
        return cls(
            timeout_retry_count=settings.timeout_retry_count,
            timeout_retry_delay=settings.timeout_retry_delay,
            rate_limit_retry_count=settings.rate_limit_retry_count,
            rate_limit_retry_delay=settings.rate_limit_retry_delay,
            backoff=settings.backoff,
        )

    def delay(self, base: float, retries_used: int) -> float:
        """Delay before the next attempt.

        Args:
            base: Configured delay in seconds.
            retries_used: Retries of this kind already consumed (0-based).
        """
        if self.backoff == "exponential":
            return base * (2**retries_used)
        return base


@dataclass
class ExtractionRequest:
    """A batch extraction request."""

    api_key: str
    urls: list[str]
    extract_depth: str = "basic"
    timeout_seconds: float = 60.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class ExtractedPage:
    """Successful extraction of one URL."""

    url: str
    content: str
    title: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class FailedExtraction:
    """Provider-reported failure for one URL."""

    url: str
    reason: str
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExtractionResponse:
    """Parsed extraction response."""

    succeeded: list[ExtractedPage] = field(default_factory=list)
    failed: list[FailedExtraction] = field(default_factory=list)
    response_time: Optional[float] = None
    request_id: Optional[str] = None

    def find_success(self, url: str) -> Optional[ExtractedPage]:
        """Successful result for a URL, if any."""
        for page in self.succeeded:
            if page.url == url:
                return page
        return None

    def find_failure(self, url: str) -> Optional[FailedExtraction]:
        """Failure entry for a URL, if any."""
        for failure in self.failed:
            if failure.url == url:
                return failure
        return None


def _failure_reason(error: Any) -> str:
    """Render a provider failure reason as text."""
    if isinstance(error, str):
        return error
    return json.dumps(error)


def parse_response(data: dict[str, Any]) -> ExtractionResponse:
    """Convert a Tavily JSON payload into an ExtractionResponse."""
    succeeded = [
        ExtractedPage(
            url=item.get("url", ""),
            content=item.get("raw_content") or "",
            title=item.get("title"),
            raw=item,
        )
        for item in data.get("results") or []
    ]
    failed = [
        FailedExtraction(
            url=item.get("url", ""),
            reason=_failure_reason(item.get("error")),
            raw=item,
        )
        for item in data.get("failed_results") or []
    ]
    return ExtractionResponse(
        succeeded=succeeded,
        failed=failed,
        response_time=data.get("response_time"),
        request_id=data.get("request_id"),
    )


class ExtractionClient:
    """Async client for the Tavily Extract endpoint."""

    def __init__(self, endpoint: str = TAVILY_EXTRACT_URL, debug: bool = False):
        """Initialize the client.

        Args:
            endpoint: Extract endpoint URL.
            debug: Log request and response bodies.
        """
        self._endpoint = endpoint
        self._debug = debug

    def _build_payload(self, request: ExtractionRequest) -> dict[str, Any]:
        return {
            "api_key": request.api_key,
            "urls": request.urls,
            "extract_depth": request.extract_depth,
            "format": "markdown",
        }

    def _rate_limit_delay(
        self, response: httpx.Response, policy: RetryPolicy, retries_used: int
    ) -> float:
        """Honor Retry-After if present, else the configured delay."""
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                pass
        return policy.delay(policy.rate_limit_retry_delay, retries_used)

    async def extract(self, request: ExtractionRequest) -> ExtractionResponse:
        """Extract content for a batch of URLs.

        Args:
            request: Batch extraction request.

        Returns:
            ExtractionResponse with per-URL results.

        Raises:
            ProviderError: On non-retryable status or exhausted retries.
        """
        policy = request.retry_policy
        timeout_retries_used = 0
        rate_limit_retries_used = 0
        payload = self._build_payload(request)

        if self._debug:
            logger.debug(f"Tavily POST {self._endpoint} urls={request.urls}")

        while True:
            started = time.monotonic()
            try:
                async with httpx.AsyncClient(timeout=request.timeout_seconds) as client:
                    response = await client.post(self._endpoint, json=payload)
            except httpx.TimeoutException:
                last_error = ProviderError(
                    PROVIDER_NAME,
                    f"Request timed out after {request.timeout_seconds:g} seconds.",
                )
            except httpx.RequestError as e:
                last_error = ProviderError(PROVIDER_NAME, f"Request error: {e}")
            else:
                if response.is_success:
                    data = response.json()
                    if self._debug:
                        logger.debug(
                            f"Tavily responded in {time.monotonic() - started:.2f}s: "
                            f"{response.text[:1000]}"
                        )
                    return parse_response(data)

                status = response.status_code
                error_text = response.text or f"HTTP error! status: {status}"

                if status in NON_RETRYABLE_STATUS_CODES:
                    raise ProviderError(PROVIDER_NAME, error_text, status_code=status)

                if status == RATE_LIMIT_STATUS:
                    if rate_limit_retries_used < policy.rate_limit_retry_count:
                        delay = self._rate_limit_delay(
                            response, policy, rate_limit_retries_used
                        )
                        rate_limit_retries_used += 1
                        logger.warning(
                            f"Rate limit exceeded. Retrying in {delay:g}s... "
                            f"({policy.rate_limit_retry_count - rate_limit_retries_used} "
                            f"retries left)"
                        )
                        await asyncio.sleep(delay)
                        continue
                    raise ProviderError(
                        PROVIDER_NAME, "Rate limit retries exhausted.", status_code=status
                    )

                last_error = ProviderError(
                    PROVIDER_NAME, f"Unhandled HTTP error: {status}", status_code=status
                )

            if timeout_retries_used >= policy.timeout_retry_count:
                raise last_error

            delay = policy.delay(policy.timeout_retry_delay, timeout_retries_used)
            timeout_retries_used += 1
            logger.warning(
                f"Request failed ({last_error}). Retrying in {delay:g}s... "
                f"({policy.timeout_retry_count - timeout_retries_used} retries left)"
            )
            await asyncio.sleep(delay)
