"""Usage governor (kill switch) for remote API calls.

Counts calls and errors per provider for the life of the process and
refuses calls once a configured threshold is reached. Tripping disables the
provider (or every provider, depending on trip scope) until reset().
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from ..core.config import AppSettings
from ..core.exceptions import KillSwitchError

logger = logging.getLogger(__name__)

LOCK_MESSAGE = "KILL SWITCH: Max API calls/errors reached. App locked."


class Provider(str, Enum):
    """Remote providers gated by the governor."""

    EXTRACTION = "tavily"
    REWRITE = "gemini"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()


class TripScope(str, Enum):
    """Which providers a threshold breach disables."""

    SINGLE = "single"
    ALL = "all"


@dataclass
class UsageLimits:
    """Thresholds for one provider."""

    max_calls: int
    max_errors: int


@dataclass
class ProviderUsage:
    """Counters and state for one provider."""

    calls: int = 0
    errors: int = 0
    configured: bool = True  # allow flag on and credential present
    tripped: bool = False

    @property
    def enabled(self) -> bool:
        return self.configured and not self.tripped


class Ticket:
    """Authorization for exactly one remote call."""

    def __init__(self, governor: "UsageGovernor", provider: Provider, call_number: int):
        self._governor = governor
        self._provider = provider
        self._call_number = call_number
        self._failed = False

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def call_number(self) -> int:
        """1-based index of this call for its provider."""
        return self._call_number

    def record_failure(self) -> None:
        """Count the call as an error. Only the first call has an effect."""
        if self._failed:
            return
        self._failed = True
        self._governor._record_error(self._provider)


class UsageGovernor:
    """Process-wide call/error counters gating every remote call.

    Features:
    - Per-provider call and error thresholds
    - Configurable trip scope (disable one provider or all)
    - Thread-safe counter updates
    - Manual reset that re-validates credentials
    """

    def __init__(
        self,
        limits: dict[Provider, UsageLimits],
        enabled: Optional[dict[Provider, bool]] = None,
        trip_scope: TripScope = TripScope.ALL,
        on_trip: Optional[Callable[[list[Provider], str], None]] = None,
        on_reset: Optional[Callable[[list[Provider]], None]] = None,
        credential_check: Optional[Callable[[Provider], bool]] = None,
    ):
        """Initialize the governor.

        Args:
            limits: Thresholds per provider.
            enabled: Whether each provider is configured (flag and credential).
            trip_scope: Providers disabled when a threshold is crossed.
            on_trip: Called with the disabled providers and the reason.
            on_reset: Called with the providers re-enabled by reset().
            credential_check: Re-validates a provider's configuration on reset.
        """
        self._limits = dict(limits)
        self._trip_scope = TripScope(trip_scope)
        self._on_trip = on_trip
        self._on_reset = on_reset
        self._credential_check = credential_check
        self._lock = threading.Lock()
        self._lock_message: Optional[str] = None

        enabled = enabled or {}
        self._usage: dict[Provider, ProviderUsage] = {
            provider: ProviderUsage(configured=enabled.get(provider, True))
            for provider in Provider
        }

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        on_trip: Optional[Callable[[list[Provider], str], None]] = None,
        on_reset: Optional[Callable[[list[Provider]], None]] = None,
    ) -> "UsageGovernor":
        """Build a governor from application settings."""
        limits = {
            Provider.EXTRACTION: UsageLimits(
                max_calls=settings.max_tavily_calls or 0,
                max_errors=settings.max_tavily_errors or 0,
            ),
            Provider.REWRITE: UsageLimits(
                max_calls=settings.max_gemini_calls or 0,
                max_errors=settings.max_gemini_errors or 0,
            ),
        }

        def credential_check(provider: Provider) -> bool:
            if provider is Provider.EXTRACTION:
                return settings.tavily_valid
            return settings.gemini_valid

        enabled = {
            Provider.EXTRACTION: settings.tavily_allow and settings.tavily_valid,
            Provider.REWRITE: settings.gemini_allow and settings.gemini_valid,
        }
        return cls(
            limits,
            enabled=enabled,
            trip_scope=TripScope(settings.trip_scope),
            on_trip=on_trip,
            on_reset=on_reset,
            credential_check=credential_check,
        )

    @property
    def trip_scope(self) -> TripScope:
        return self._trip_scope

    @property
    def lock_message(self) -> Optional[str]:
        """Persistent message shown while the kill switch is tripped."""
        return self._lock_message

    def is_enabled(self, provider: Provider) -> bool:
        """Whether calls to the provider are currently allowed."""
        with self._lock:
            return self._usage[provider].enabled

    def authorize(self, provider: Provider) -> Ticket:
        """Authorize one call, incrementing the call counter.

        Args:
            provider: Provider about to be called.

        Returns:
            Ticket for the call.

        Raises:
            KillSwitchError: If the provider is disabled or a limit is reached.
        """
        tripped: Optional[tuple[list[Provider], str]] = None

        with self._lock:
            usage = self._usage[provider]
            limits = self._limits[provider]
            name = provider.display_name

            if not usage.enabled:
                raise KillSwitchError(
                    provider.value, f"{name} API calls are disabled by kill switch."
                )

            reason = None
            if usage.calls >= limits.max_calls:
                reason = f"{name} call limit reached."
            elif usage.errors >= limits.max_errors:
                reason = f"{name} error limit reached."

            if reason is not None:
                tripped = (self._trip(provider), reason)
            else:
                usage.calls += 1
                ticket = Ticket(self, provider, usage.calls)

        if tripped is not None:
            providers, reason = tripped
            logger.error(f"KILL SWITCH ACTIVATED: {reason}")
            if self._on_trip:
                self._on_trip(providers, reason)
            raise KillSwitchError(provider.value, f"KILL SWITCH: {reason}")

        return ticket

    def _trip(self, provider: Provider) -> list[Provider]:
        """Disable providers per trip scope. Caller holds the lock."""
        if self._trip_scope is TripScope.ALL:
            affected = list(Provider)
        else:
            affected = [provider]
        for p in affected:
            self._usage[p].tripped = True
        self._lock_message = LOCK_MESSAGE
        return affected

    def _record_error(self, provider: Provider) -> None:
        with self._lock:
            self._usage[provider].errors += 1

    def guard(self, provider: Provider) -> "AsyncUsageContext":
        """Async context manager that authorizes a call and records failures."""
        return AsyncUsageContext(self, provider)

    def reset(self) -> list[Provider]:
        """Zero all counters and re-enable providers with valid credentials.

        Returns:
            Providers that are enabled after the reset.
        """
        with self._lock:
            enabled = []
            for provider, usage in self._usage.items():
                usage.calls = 0
                usage.errors = 0
                usage.tripped = False
                if self._credential_check is not None:
                    usage.configured = self._credential_check(provider)
                else:
                    usage.configured = True
                if usage.enabled:
                    enabled.append(provider)
            self._lock_message = None

        logger.info(f"Usage counters reset; enabled: {[p.value for p in enabled]}")
        if self._on_reset:
            self._on_reset(enabled)
        return enabled

    def get_status(self) -> dict[str, Any]:
        """Get current counters and state."""
        with self._lock:
            return {
                "trip_scope": self._trip_scope.value,
                "lock_message": self._lock_message,
                "providers": {
                    provider.value: {
                        "calls": usage.calls,
                        "errors": usage.errors,
                        "max_calls": self._limits[provider].max_calls,
                        "max_errors": self._limits[provider].max_errors,
                        "enabled": usage.enabled,
                        "tripped": usage.tripped,
                    }
                    for provider, usage in self._usage.items()
                },
            }


class AsyncUsageContext:
    """Async context manager wrapping one governed call."""

    def __init__(self, governor: UsageGovernor, provider: Provider):
        self._governor = governor
        self._provider = provider
        self._ticket: Optional[Ticket] = None

    async def __aenter__(self) -> Ticket:
        self._ticket = self._governor.authorize(self._provider)
        return self._ticket

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        # Cancellation is not a provider failure
        if (
            exc_type is not None
            and issubclass(exc_type, Exception)
            and self._ticket is not None
        ):
            self._ticket.record_failure()
