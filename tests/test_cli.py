"""Tests for the CLI commands that manage settings and the kill switch."""

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from content_processor import __version__
from content_processor.cli import app
from content_processor.core.settings_store import SettingsStore

runner = CliRunner()


@pytest.fixture
def store(tmp_path, monkeypatch):
    for name in ("TAVILY_API_KEY", "GEMINI_API_KEY", "API_KEY"):
        monkeypatch.delenv(name, raising=False)
    store = SettingsStore(tmp_path / "settings.json")
    with patch("content_processor.cli.get_settings_store", return_value=store), patch(
        "content_processor.cli.get_settings", side_effect=store.load_settings
    ):
        yield store


class TestCli:
    """Tests for CLI commands."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_settings_set_parses_json_values(self, store):
        result = runner.invoke(
            app,
            ["settings", "--set", "extraction.batch_size=7", "--set", "extract_depth=advanced"],
        )

        assert result.exit_code == 0
        settings = store.load_settings()
        assert settings.extraction.batch_size == 7
        assert settings.extract_depth == "advanced"

    def test_settings_rejects_bad_assignment(self, store):
        result = runner.invoke(app, ["settings", "--set", "no-equals-sign"])
        assert result.exit_code == 1

    def test_settings_rejects_unknown_key(self, store):
        result = runner.invoke(app, ["settings", "--set", "extraction.bogus=1"])

        assert result.exit_code == 1
        assert "Unknown setting: extraction.bogus" in result.output
        assert store.overrides == {}

    def test_check_reports_missing_keys(self, store):
        result = runner.invoke(app, ["check"])

        assert result.exit_code == 1
        assert "Tavily API Key is missing." in result.output

    def test_check_valid(self, store):
        store.update("tavily_api_key", "t")
        store.update("gemini_api_key", "g")

        result = runner.invoke(app, ["check"])

        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_run_refuses_when_locked(self, store):
        store.update("tavily_api_key", "t")
        store.update("gemini_api_key", "g")
        store.set_provider_flags(tavily=False, gemini=False)

        result = runner.invoke(app, ["run", "https://a.com"])

        assert result.exit_code == 1
        assert "KILL SWITCH" in result.output

    def test_unlock_reenables_providers_with_keys(self, store):
        store.update("tavily_api_key", "t")
        store.set_provider_flags(tavily=False, gemini=False)

        result = runner.invoke(app, ["unlock"])

        assert result.exit_code == 0
        settings = store.load_settings()
        assert settings.tavily_allow is True
        assert settings.gemini_allow is False
