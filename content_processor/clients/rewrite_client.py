"""Gemini generateContent client.

Rewrites one document per call. Each attempt races the HTTP call against a
local timeout; a call that loses the race is abandoned, not cancelled, and
whatever it eventually returns is dropped.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Optional

import httpx

from ..core.config import RewriteSettings
from ..core.exceptions import GovernanceError, ProviderError
from ..types.job import TokenUsage

logger = logging.getLogger(__name__)

PROVIDER_NAME = "gemini"
GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

RETRY_BASE_DELAY = 2.0  # seconds, multiplied by attempt number
RATE_LIMIT_STATUS = 429
HTTP_TIMEOUT_GRACE = 30.0  # transport timeout slack beyond the local timeout

# Both an explicit stop and a missing reason count as normal completion
ACCEPTED_FINISH_REASONS = frozenset({"STOP", "FINISH_REASON_UNSPECIFIED", None})


def is_accepted_finish(reason: Optional[str]) -> bool:
    """Check whether a finish reason counts as a successful rewrite."""
    return reason in ACCEPTED_FINISH_REASONS


class RewriteTimeoutError(ProviderError):
    """The local timeout fired before the provider answered."""

    def __init__(self, timeout_seconds: float):
        super().__init__(
            PROVIDER_NAME, f"Local timeout of {timeout_seconds:g}s exceeded."
        )


@dataclass
class RewriteRequest:
    """One rewrite call."""

    text: str
    model: str
    temperature: float
    system_instruction: str
    thinking_budget: Optional[int] = None
    max_output_tokens: int = 0
    timeout_seconds: float = 120.0
    retries: int = 2

    @classmethod
    def from_settings(cls, text: str, settings: RewriteSettings) -> "RewriteRequest":
        return cls(
            text=text,
            model=settings.model,
            temperature=settings.temperature,
            system_instruction=settings.system_instruction or " ",
            thinking_budget=settings.thinking_budget,
            max_output_tokens=settings.max_output_tokens,
            timeout_seconds=settings.timeout,
            retries=settings.retries,
        )

    def config_dict(self) -> dict[str, Any]:
        """Request parameters without the document text."""
        data = asdict(self)
        data.pop("text")
        return data


@dataclass
class RewriteResponse:
    """Parsed rewrite result."""

    text: str
    finish_reason: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    raw: dict[str, Any] = field(default_factory=dict)


def build_payload(request: RewriteRequest) -> dict[str, Any]:
    """Build the generateContent request body."""
    generation_config: dict[str, Any] = {"temperature": request.temperature}
    if request.max_output_tokens and request.max_output_tokens > 0:
        generation_config["maxOutputTokens"] = request.max_output_tokens
    # -1 is auto and 0 disables thinking, so any number is sent as-is
    if isinstance(request.thinking_budget, int) and not isinstance(
        request.thinking_budget, bool
    ):
        generation_config["thinkingConfig"] = {
            "thinkingBudget": request.thinking_budget
        }

    return {
        "contents": [{"role": "user", "parts": [{"text": request.text}]}],
        "systemInstruction": {"parts": [{"text": request.system_instruction}]},
        "generationConfig": generation_config,
    }


def parse_response(data: dict[str, Any]) -> RewriteResponse:
    """Convert a generateContent payload into a RewriteResponse."""
    candidates = data.get("candidates") or []
    first = candidates[0] if candidates else {}
    parts = (first.get("content") or {}).get("parts") or []
    text = "".join(
        part.get("text", "") for part in parts if not part.get("thought")
    )

    usage_data = data.get("usageMetadata") or {}
    usage = TokenUsage(
        prompt_tokens=usage_data.get("promptTokenCount") or 0,
        candidates_tokens=usage_data.get("candidatesTokenCount") or 0,
        thoughts_tokens=usage_data.get("thoughtsTokenCount") or 0,
        total_tokens=usage_data.get("totalTokenCount") or 0,
    )

    return RewriteResponse(
        text=text,
        finish_reason=first.get("finishReason"),
        usage=usage,
        raw=data,
    )


def _is_retryable(error: Exception) -> bool:
    if isinstance(error, RewriteTimeoutError):
        return True
    return isinstance(error, ProviderError) and error.status_code == RATE_LIMIT_STATUS


class RewriteClient:
    """Async client for Gemini generateContent."""

    def __init__(
        self,
        api_key: str,
        api_base: str = GEMINI_API_BASE,
        retry_base_delay: float = RETRY_BASE_DELAY,
        debug: bool = False,
    ):
        """Initialize the client.

        Args:
            api_key: Gemini API key.
            api_base: API base URL.
            retry_base_delay: Backoff base; attempt n waits base * n seconds.
            debug: Log request and response bodies.
        """
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._retry_base_delay = retry_base_delay
        self._debug = debug
        # Strong references so abandoned calls are not garbage collected
        self._abandoned: set[asyncio.Task] = set()

    def ensure_api_key(self) -> None:
        """Raise GovernanceError if no API key is configured."""
        if not self._api_key:
            raise GovernanceError("Gemini API key was not provided.")

    @property
    def abandoned_calls(self) -> int:
        """Number of timed-out calls still running in the background."""
        return len(self._abandoned)

    def _url(self, model: str) -> str:
        return f"{self._api_base}/models/{model}:generateContent"

    async def _post(self, request: RewriteRequest) -> RewriteResponse:
        """Single HTTP attempt."""
        url = self._url(request.model)
        payload = build_payload(request)
        if self._debug:
            logger.debug(f"Gemini POST {url} config={request.config_dict()}")

        timeout = request.timeout_seconds + HTTP_TIMEOUT_GRACE
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"x-goog-api-key": self._api_key},
                )
        except httpx.TimeoutException:
            raise RewriteTimeoutError(request.timeout_seconds)
        except httpx.RequestError as e:
            raise ProviderError(PROVIDER_NAME, f"Request error: {e}")

        if self._debug:
            logger.debug(f"Gemini status {response.status_code}: {response.text[:1000]}")

        if not response.is_success:
            raise ProviderError(
                PROVIDER_NAME,
                f"[{response.status_code}] {_error_message(response)}",
                status_code=response.status_code,
            )

        return parse_response(response.json())

    def _discard_abandoned(self, task: asyncio.Task) -> None:
        """Drop the outcome of a call that lost the timeout race."""
        self._abandoned.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.debug(f"Abandoned Gemini call failed late: {error}")
        else:
            logger.debug("Abandoned Gemini call finished late; result discarded")

    async def _attempt(self, request: RewriteRequest) -> RewriteResponse:
        """Race one HTTP attempt against the local timeout."""
        task = asyncio.ensure_future(self._post(request))
        done, _ = await asyncio.wait({task}, timeout=request.timeout_seconds)
        if task in done:
            return task.result()

        self._abandoned.add(task)
        task.add_done_callback(self._discard_abandoned)
        raise RewriteTimeoutError(request.timeout_seconds)

    async def rewrite(self, request: RewriteRequest) -> RewriteResponse:
        """Rewrite a document with retries for timeouts and rate limits.

        Args:
            request: Rewrite request.

        Returns:
            RewriteResponse from the first successful attempt.

        Raises:
            GovernanceError: If no API key is configured.
            ProviderError: On a non-retryable error or exhausted retries.
        """
        self.ensure_api_key()

        for attempt in range(request.retries + 1):
            try:
                return await self._attempt(request)
            except ProviderError as e:
                if not _is_retryable(e) or attempt >= request.retries:
                    raise
                delay = self._retry_base_delay * (attempt + 1)
                logger.warning(
                    f"Gemini attempt {attempt + 1} failed with retryable error: "
                    f"{e}. Retrying in {delay:g}s..."
                )
                await asyncio.sleep(delay)

        raise ProviderError(PROVIDER_NAME, "Gemini request failed after all retries.")


def _error_message(response: httpx.Response) -> str:
    """Pull the provider's error message out of an error response."""
    try:
        data = response.json()
    except ValueError:
        return response.text or f"HTTP error! status: {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
    return response.text
