"""Configuration management for Content Processor.

Loads API keys from environment variables with .env file support and
holds the tunable pipeline settings. A frozen RunConfiguration snapshot is
taken at the start of every run so stages never observe mid-run edits.
"""

import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

# Load .env file from project root
_env_path = Path(__file__).parent.parent.parent / ".env"
load_dotenv(_env_path)

DEFAULT_SEPARATOR = "\n\n---\n\n"
DEFAULT_OUTPUT_FILENAME = "processed_content.md"

DEFAULT_SYSTEM_INSTRUCTION = (
    "You receive the raw Markdown extracted from a single web page. "
    "Remove navigation, cookie banners, advertisements and other boilerplate. "
    "Return only the main article content as clean, well-structured Markdown, "
    "keeping headings, lists, tables and links. Do not add commentary."
)

# Validation ranges
MAX_CALLS_RANGE = (1, 500)
MAX_ERRORS_RANGE = (1, 150)
BATCH_SIZE_RANGE = (1, 20)

VALID_BACKOFF = ("fixed", "exponential")
VALID_TRIP_SCOPES = ("single", "all")


@dataclass(frozen=True)
class ExtractionSettings:
    """Tavily batching, concurrency and retry settings."""

    batch_size: int = 5
    max_parallel: int = 2
    initial_delay: float = 0.0  # seconds before the first batch
    after_delay: float = 0.0  # seconds a slot waits after each batch
    timeout: float = 60.0
    timeout_retry_count: int = 2
    timeout_retry_delay: float = 5.0
    rate_limit_retry_count: int = 3
    rate_limit_retry_delay: float = 30.0
    backoff: str = "fixed"


@dataclass(frozen=True)
class RewriteSettings:
    """Gemini model and concurrency settings."""

    model: str = "gemini-2.5-flash"
    system_instruction: str = DEFAULT_SYSTEM_INSTRUCTION
    temperature: float = 0.2
    thinking_budget: Optional[int] = -1  # -1 auto, 0 off
    max_output_tokens: int = 0  # 0 leaves the model default
    max_parallel: int = 3
    initial_delay: float = 0.0
    after_delay: float = 0.0
    timeout: float = 120.0
    retries: int = 2


@dataclass(frozen=True)
class RunConfiguration:
    """Immutable settings snapshot in effect for one run."""

    tavily_api_key: str
    gemini_api_key: str
    extract_depth: str
    output_filename: str
    output_separator: str
    debug_mode: bool
    extraction: ExtractionSettings
    rewrite: RewriteSettings


@dataclass
class AppSettings:
    """Application settings.

    Field names follow the persisted settings document; nested sections are
    replaced wholesale when edited.
    """

    urls: list[str] = field(default_factory=list)
    tavily_api_key: str = ""
    gemini_api_key: str = ""
    tavily_allow: bool = True
    gemini_allow: bool = True
    max_tavily_calls: Optional[int] = 50
    max_gemini_calls: Optional[int] = 100
    max_tavily_errors: Optional[int] = 10
    max_gemini_errors: Optional[int] = 10
    extract_depth: str = "basic"
    output_filename: str = DEFAULT_OUTPUT_FILENAME
    output_separator: str = "\\n\\n---\\n\\n"
    debug_mode: bool = False
    trip_scope: str = "all"
    extraction: ExtractionSettings = field(default_factory=ExtractionSettings)
    rewrite: RewriteSettings = field(default_factory=RewriteSettings)

    @property
    def effective_tavily_key(self) -> str:
        """Tavily key from settings, falling back to the environment."""
        return self.tavily_api_key or os.environ.get("TAVILY_API_KEY", "")

    @property
    def effective_gemini_key(self) -> str:
        """Gemini key from settings, falling back to the environment."""
        return (
            self.gemini_api_key
            or os.environ.get("GEMINI_API_KEY", "")
            or os.environ.get("API_KEY", "")
        )

    @property
    def tavily_valid(self) -> bool:
        """Whether the extraction provider may be enabled."""
        return not self._limit_errors() and bool(self.effective_tavily_key)

    @property
    def gemini_valid(self) -> bool:
        """Whether the rewrite provider may be enabled."""
        return not self._limit_errors() and bool(self.effective_gemini_key)

    def _limit_errors(self) -> list[str]:
        errors = []
        limits = [
            self.max_gemini_calls,
            self.max_tavily_calls,
            self.max_gemini_errors,
            self.max_tavily_errors,
        ]
        if any(v is None for v in limits):
            errors.append("One or more API security limit values are missing.")
            return errors

        lo, hi = MAX_CALLS_RANGE
        if not (lo <= self.max_gemini_calls <= hi and lo <= self.max_tavily_calls <= hi):
            errors.append(f"Max API calls must be between {lo} and {hi}.")

        lo, hi = MAX_ERRORS_RANGE
        if not (lo <= self.max_gemini_errors <= hi and lo <= self.max_tavily_errors <= hi):
            errors.append(f"Max Errors must be between {lo} and {hi}.")
        return errors

    def validate(self) -> list[str]:
        """Validate the settings.

        Returns:
            List of validation error messages, empty if valid.
        """
        errors = self._limit_errors()

        lo, hi = BATCH_SIZE_RANGE
        if not lo <= self.extraction.batch_size <= hi:
            errors.append(f"Batch size must be between {lo} and {hi}.")
        if self.extraction.max_parallel < 1 or self.rewrite.max_parallel < 1:
            errors.append("Max parallel runs must be at least 1.")
        if self.extraction.backoff not in VALID_BACKOFF:
            errors.append(f"Backoff must be one of: {', '.join(VALID_BACKOFF)}.")
        if self.trip_scope not in VALID_TRIP_SCOPES:
            errors.append(f"Trip scope must be one of: {', '.join(VALID_TRIP_SCOPES)}.")

        if self.gemini_allow and not self.effective_gemini_key:
            errors.append("Gemini API Key is missing.")
        if self.tavily_allow and not self.effective_tavily_key:
            errors.append("Tavily API Key is missing.")

        return errors

    def snapshot(self) -> RunConfiguration:
        """Freeze the settings in effect for a run."""
        return RunConfiguration(
            tavily_api_key=self.effective_tavily_key,
            gemini_api_key=self.effective_gemini_key,
            extract_depth=self.extract_depth,
            output_filename=self.output_filename or DEFAULT_OUTPUT_FILENAME,
            output_separator=self.output_separator,
            debug_mode=self.debug_mode,
            extraction=self.extraction,
            rewrite=self.rewrite,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AppSettings":
        """Build settings from a (possibly partial) dict.

        Unknown keys are ignored; nested sections are merged key-wise over
        their defaults.
        """
        base = cls()
        top_level = {f.name for f in fields(cls)} - {"extraction", "rewrite"}
        values = {k: v for k, v in data.items() if k in top_level}
        if "urls" in values:
            values["urls"] = list(values["urls"] or [])

        extraction = _merge_section(base.extraction, data.get("extraction"))
        rewrite = _merge_section(base.rewrite, data.get("rewrite"))

        return replace(base, extraction=extraction, rewrite=rewrite, **values)


def _merge_section(section: Any, overrides: Optional[dict[str, Any]]) -> Any:
    """Apply known keys from overrides onto a frozen settings section."""
    if not overrides:
        return section
    known = {f.name for f in fields(section)}
    return replace(section, **{k: v for k, v in overrides.items() if k in known})


def get_settings() -> AppSettings:
    """Load settings from the persistent store merged over defaults.

    Returns:
        AppSettings instance.
    """
    from .settings_store import get_settings_store

    return get_settings_store().load_settings()
