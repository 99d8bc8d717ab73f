"""Unit tests for main.py - Application wiring and CLI."""

import logging
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from config import Config
from main import Application, cli
from watcher import CacheSyncError


@pytest.fixture
def app_config():
    return Config.default()


class TestApplication:
    """Tests for Application.initialize."""

    def test_initialize_enables_configured_plugins(self, app_config, fake_store):
        app_config.plugins.enabled_plugins = ["portworx", "logger"]
        app = Application(app_config, store=fake_store)

        app.initialize()

        assert app.registry.execution_order == ["portworx", "logger"]
        assert app.watcher.store is fake_store
        assert app.health.watcher is app.watcher

    def test_unknown_plugin_is_skipped(self, app_config, fake_store, caplog):
        app_config.plugins.enabled_plugins = ["logger", "missing"]
        app = Application(app_config, store=fake_store)

        with caplog.at_level(logging.WARNING):
            app.initialize()

        assert app.registry.execution_order == ["logger"]
        assert "Failed to enable plugin missing" in caplog.text

    def test_duplicate_plugin_is_enabled_once(self, app_config, fake_store):
        app_config.plugins.enabled_plugins = ["logger", "logger"]
        app = Application(app_config, store=fake_store)

        app.initialize()

        assert app.registry.execution_order == ["logger"]

    def test_warns_when_nothing_enabled(self, app_config, fake_store, caplog):
        app_config.plugins.enabled_plugins = []
        app = Application(app_config, store=fake_store)

        with caplog.at_level(logging.WARNING):
            app.initialize()

        assert "No cleanup plugins enabled" in caplog.text

    def test_plugin_overrides_applied(self, app_config, fake_store):
        app_config.plugins.plugin_configs = {"logger": {"format": "json"}}
        app = Application(app_config, store=fake_store)

        app.initialize()

        assert app.registry.get_plugin("logger").format == "json"


class TestCli:
    """Tests for the command line entry point."""

    def test_options_override_config(self):
        with patch("main.main", new=AsyncMock()) as run:
            result = CliRunner().invoke(
                cli, ["--kubeconfig", "/tmp/kc", "--port", "9090", "--log-level", "DEBUG"]
            )

        assert result.exit_code == 0, result.output
        config = run.call_args.args[0]
        assert config.kubernetes.kubeconfig == "/tmp/kc"
        assert config.health.port == 9090
        assert config.health.log_level == "DEBUG"

    def test_cache_sync_failure_exits_nonzero(self):
        failing = AsyncMock(side_effect=CacheSyncError("not synced"))
        with patch("main.main", new=failing):
            result = CliRunner().invoke(cli, [])

        assert result.exit_code == 1
