"""Tests for the command line interface."""

import pytest
from rich.console import Console
from typer.testing import CliRunner

import peelog.core.app
from peelog import __version__
from peelog.cli.main import app
from peelog.core.config import Config

from conftest import FakeAuthProvider, FakeRemote

runner = CliRunner()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a temporary profile and in-memory backends."""
    config = Config(
        data_dir=tmp_path / "data",
        log_dir=tmp_path / "logs",
        config_dir=tmp_path / "config",
        timezone="UTC",
    )
    auth_provider = FakeAuthProvider()
    auth_provider.add_account("ana@example.com", "secret1", "user-1", "Ana")
    remote = FakeRemote()
    real_app = peelog.core.app.PeeLogApp

    def build(cfg):
        return real_app(cfg, auth_provider=auth_provider, remote=remote, monitor_connectivity=False)

    monkeypatch.setattr("peelog.cli.main.get_config", lambda: config)
    monkeypatch.setattr("peelog.cli.main.console", Console(width=200))
    monkeypatch.setattr("peelog.core.app.PeeLogApp", build)
    return config, remote


class TestCommands:
    def test_version(self, cli_env):
        result = runner.invoke(app, ["version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_guest_log_and_history(self, cli_env):
        assert runner.invoke(app, ["guest"]).exit_code == 0

        logged = runner.invoke(app, ["log", "paleYellow", "--notes", "after lunch"])
        history = runner.invoke(app, ["history"])

        assert logged.exit_code == 0
        assert "Pale Yellow" in logged.output
        assert history.exit_code == 0
        assert "Pale Yellow" in history.output
        assert "after lunch" in history.output

    def test_history_with_location(self, cli_env):
        runner.invoke(app, ["guest"])
        runner.invoke(app, ["log", "clear", "--place", "Office", "--lat", "51.5", "--lon", "-0.12"])
        runner.invoke(app, ["log", "amber", "--notes", "no coordinates"])

        result = runner.invoke(app, ["history", "--with-location"])

        assert result.exit_code == 0
        assert "Office" in result.output
        assert "no coordinates" not in result.output

    def test_unknown_quality(self, cli_env):
        runner.invoke(app, ["guest"])

        result = runner.invoke(app, ["log", "purple"])

        assert result.exit_code == 1
        assert "Unknown quality" in result.output

    def test_unknown_range(self, cli_env):
        result = runner.invoke(app, ["stats", "--range", "bogus"])

        assert result.exit_code == 1
        assert "Unknown range" in result.output

    def test_login_pushes_logged_events(self, cli_env):
        _, remote = cli_env

        login = runner.invoke(app, ["login", "--email", "ana@example.com", "--password", "secret1"])
        runner.invoke(app, ["log", "clear"])

        assert login.exit_code == 0
        assert len(remote.ids("user-1")) == 1

    def test_bad_credentials(self, cli_env):
        result = runner.invoke(app, ["login", "--email", "ana@example.com", "--password", "wrong-pass"])

        assert result.exit_code == 1

    def test_status_shows_pending_work(self, cli_env):
        runner.invoke(app, ["guest"])
        runner.invoke(app, ["log", "amber"])

        result = runner.invoke(app, ["status"])

        assert result.exit_code == 0
        assert "guest" in result.output
        assert "Database size" in result.output
