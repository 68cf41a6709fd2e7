"""Exception hierarchy for the content processor.

Errors are grouped by where they surface:
- ProviderError: a remote call failed after the client's own retries
- GovernanceError: a call was refused before it was made
- ConfigurationError: settings failed validation and the app is locked
"""

from typing import Optional


class ContentProcessorError(Exception):
    """Base class for all content processor errors."""


class ProviderError(ContentProcessorError):
    """Remote provider call failed.

    Attributes:
        provider: Provider name (e.g., 'tavily', 'gemini')
        message: Human-readable reason
        status_code: HTTP status code if the failure came from a response
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
    ):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class GovernanceError(ContentProcessorError):
    """A remote call was refused before being attempted."""


class KillSwitchError(GovernanceError):
    """Usage governor denied a call for a provider."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(reason)


class ConfigurationError(ContentProcessorError):
    """Settings failed validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(" ".join(errors) if errors else "Invalid configuration")
