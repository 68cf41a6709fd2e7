"""Persistent settings storage.

Stores user overrides of the default settings (API keys, limits, URLs, model
options) and the kill-switch provider flags, as JSON in the platform config
directory.
"""

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any, Optional

import orjson
import platformdirs

from .config import AppSettings, ExtractionSettings, RewriteSettings
from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

APP_NAME = "content-processor"
APP_AUTHOR = "content-processor"
SETTINGS_VERSION = 2

SECTIONS = {"extraction": ExtractionSettings, "rewrite": RewriteSettings}
TOP_LEVEL_KEYS = frozenset(f.name for f in fields(AppSettings)) - set(SECTIONS)


def get_config_dir() -> Path:
    """Get the platform-specific config directory."""
    return Path(platformdirs.user_config_dir(APP_NAME, APP_AUTHOR))


def get_settings_path() -> Path:
    return get_config_dir() / f"settings-v{SETTINGS_VERSION}.json"


def setting_path(key: str) -> list[str]:
    """Split a settings key such as ``rewrite.model`` into its parts.

    Raises:
        ConfigurationError: If the key names no known setting.
    """
    parts = key.split(".")
    if len(parts) == 1 and parts[0] in TOP_LEVEL_KEYS:
        return parts
    if len(parts) == 2 and parts[0] in SECTIONS:
        if parts[1] in {f.name for f in fields(SECTIONS[parts[0]])}:
            return parts
    raise ConfigurationError([f"Unknown setting: {key}"])


class SettingsStore:
    """Stored overrides on top of the default AppSettings."""

    def __init__(self, settings_path: Optional[Path] = None):
        """Initialize the settings store.

        Args:
            settings_path: Path to settings file. Uses default if None.
        """
        self._path = settings_path or get_settings_path()
        self._overrides: dict[str, Any] = self._read()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def overrides(self) -> dict[str, Any]:
        """Copy of the stored overrides, sections included."""
        return {
            key: dict(value) if isinstance(value, dict) else value
            for key, value in self._overrides.items()
        }

    def _read(self) -> dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = orjson.loads(self._path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.warning(f"Could not parse saved settings, using defaults: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring settings file {self._path}: not a JSON object")
            return {}
        logger.debug(f"Loaded settings from {self._path}")
        return data

    def _write(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_bytes(orjson.dumps(self._overrides, option=orjson.OPT_INDENT_2))
            logger.debug(f"Saved settings to {self._path}")
        except (OSError, orjson.JSONEncodeError) as e:
            logger.warning(f"Failed to save settings: {e}")

    def update(self, key: str, value: Any) -> None:
        """Override one setting and persist the file.

        Args:
            key: Setting name; section fields use ``section.field``.
            value: New value.

        Raises:
            ConfigurationError: If the key names no known setting.
        """
        path = setting_path(key)
        target = self._overrides
        if len(path) == 2:
            section = target.get(path[0])
            if not isinstance(section, dict):
                section = target[path[0]] = {}
            target = section
        target[path[-1]] = value
        self._write()

    def load_settings(self) -> AppSettings:
        """Build AppSettings from defaults merged with stored overrides."""
        return AppSettings.from_dict(self._overrides)

    def set_provider_flags(
        self,
        tavily: Optional[bool] = None,
        gemini: Optional[bool] = None,
    ) -> None:
        """Persist the kill-switch allow flags.

        Args:
            tavily: New tavily_allow value, or None to leave unchanged.
            gemini: New gemini_allow value, or None to leave unchanged.
        """
        if tavily is not None:
            self._overrides["tavily_allow"] = tavily
        if gemini is not None:
            self._overrides["gemini_allow"] = gemini
        self._write()


# Module-level default instance
_default_store: Optional[SettingsStore] = None


def get_settings_store() -> SettingsStore:
    """Get or create the default settings store."""
    global _default_store
    if _default_store is None:
        _default_store = SettingsStore()
    return _default_store
