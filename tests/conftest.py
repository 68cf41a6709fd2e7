"""Shared fixtures for content processor tests."""

import asyncio
from dataclasses import replace
from typing import Optional

import pytest

from content_processor.clients.extraction_client import (
    ExtractedPage,
    ExtractionResponse,
    FailedExtraction,
)
from content_processor.clients.rewrite_client import RewriteResponse
from content_processor.core.config import AppSettings
from content_processor.core.exceptions import GovernanceError
from content_processor.orchestration.usage_governor import (
    Provider,
    UsageGovernor,
    UsageLimits,
)
from content_processor.types.job import TokenUsage


class FakeExtractionClient:
    """Stands in for ExtractionClient; answers from a url -> content map."""

    def __init__(
        self,
        pages: Optional[dict[str, str]] = None,
        failures: Optional[dict[str, str]] = None,
        error: Optional[Exception] = None,
    ):
        self.pages = pages or {}
        self.failures = failures or {}
        self.error = error
        self.requests = []

    async def extract(self, request):
        self.requests.append(request)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return ExtractionResponse(
            succeeded=[
                ExtractedPage(url=url, content=self.pages[url], raw={"url": url})
                for url in request.urls
                if url in self.pages
            ],
            failed=[
                FailedExtraction(url=url, reason=self.failures[url], raw={"url": url})
                for url in request.urls
                if url in self.failures
            ],
            response_time=0.1,
        )


class FakeRewriteClient:
    """Stands in for RewriteClient.

    Texts listed in ``blocked`` wait on ``gate`` before answering; texts in
    ``finish_reasons`` answer with that finish reason.
    """

    def __init__(
        self,
        blocked: tuple[str, ...] = (),
        finish_reasons: Optional[dict[str, str]] = None,
        errors: Optional[dict[str, Exception]] = None,
        api_key: str = "gemini-test",
    ):
        self.blocked = set(blocked)
        self.api_key = api_key
        self.finish_reasons = finish_reasons or {}
        self.errors = errors or {}
        self.gate = asyncio.Event()
        self.requests = []
        self.active = 0
        self.peak = 0

    def ensure_api_key(self):
        if not self.api_key:
            raise GovernanceError("Gemini API key was not provided.")

    async def rewrite(self, request):
        self.requests.append(request)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            if request.text in self.blocked:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if request.text in self.errors:
                raise self.errors[request.text]
            return RewriteResponse(
                text=f"Rewritten {request.text}",
                finish_reason=self.finish_reasons.get(request.text, "STOP"),
                usage=TokenUsage(prompt_tokens=3, candidates_tokens=2, total_tokens=5),
                raw={"text": request.text},
            )
        finally:
            self.active -= 1


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def settings(monkeypatch):
    """Valid settings with explicit keys and no delays."""
    for name in ("TAVILY_API_KEY", "GEMINI_API_KEY", "API_KEY"):
        monkeypatch.delenv(name, raising=False)
    base = AppSettings(tavily_api_key="tvly-test", gemini_api_key="gemini-test")
    return replace(
        base,
        extraction=replace(
            base.extraction,
            timeout_retry_delay=0,
            rate_limit_retry_delay=0,
        ),
    )


@pytest.fixture
def governor():
    """Governor with generous limits."""
    return UsageGovernor(
        {
            Provider.EXTRACTION: UsageLimits(max_calls=100, max_errors=100),
            Provider.REWRITE: UsageLimits(max_calls=100, max_errors=100),
        }
    )


@pytest.fixture
def wait_for():
    return wait_until


@pytest.fixture
def make_extraction_client():
    return FakeExtractionClient


@pytest.fixture
def make_rewrite_client():
    return FakeRewriteClient
