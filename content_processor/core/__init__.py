"""Core infrastructure for Content Processor."""

from .config import (
    AppSettings,
    ExtractionSettings,
    RewriteSettings,
    RunConfiguration,
    get_settings,
)
from .exceptions import (
    ConfigurationError,
    ContentProcessorError,
    GovernanceError,
    KillSwitchError,
    ProviderError,
)
from .settings_store import SettingsStore, get_settings_store

__all__ = [
    # Config
    "AppSettings",
    "ExtractionSettings",
    "RewriteSettings",
    "RunConfiguration",
    "get_settings",
    # Settings store
    "SettingsStore",
    "get_settings_store",
    # Exceptions
    "ContentProcessorError",
    "ProviderError",
    "GovernanceError",
    "KillSwitchError",
    "ConfigurationError",
]
