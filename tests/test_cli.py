"""Tests for the CLI commands."""

import json
from contextlib import asynccontextmanager

import pytest
from click.testing import CliRunner

from todo_studio import cli as cli_module
from todo_studio.cli import cli
from todo_studio.models import User

pytestmark = pytest.mark.unit


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Run from an empty directory so no stray config file is picked up."""
    monkeypatch.chdir(tmp_path)
    for name in ("APP_URL", "LOG_FORMAT", "LOG_LEVEL", "LOG_ROOT", "INTEGRATION_ENCRYPTION_KEY"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("APP_URL", "https://todo.example.com")
    monkeypatch.setenv("INTEGRATION_ENCRYPTION_KEY", "ab" * 32)
    monkeypatch.setattr(cli_module, "configure_logging", lambda **kwargs: None)
    return tmp_path


@pytest.fixture
def memory_store(store, monkeypatch):
    """Route every command's database access to the in-memory store."""

    @asynccontextmanager
    async def _open_store(config):
        yield store

    monkeypatch.setattr(cli_module, "_open_store", _open_store)
    return store


class TestVersion:
    def test_version_flag(self, runner):
        result = runner.invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output


class TestHelp:
    def test_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])
        assert result.exit_code == 0
        for command in ("serve", "init-db", "create-user", "sync", "rotate-token"):
            assert command in result.output

    def test_rotate_token_rejects_unknown_kind(self, runner, isolated_env):
        result = runner.invoke(cli, ["rotate-token", "--user-id", "u1", "--kind", "rss"])
        assert result.exit_code == 2


class TestConfigOption:
    def test_invalid_config_file_exits_with_error(self, runner, isolated_env):
        config_file = isolated_env / "todo_studio.toml"
        config_file.write_text("[app\n")
        result = runner.invoke(cli, ["--config", str(config_file), "create-user", "--help"])
        assert result.exit_code == 1
        assert "configuration_error" in result.output

    def test_missing_config_path_is_usage_error(self, runner, isolated_env):
        result = runner.invoke(cli, ["--config", "nope.toml", "init-db"])
        assert result.exit_code == 2


class TestCommands:
    def test_create_user_prints_id(self, runner, isolated_env, memory_store):
        result = runner.invoke(
            cli,
            ["create-user", "--email", " Dana@Example.com ", "--username", "Dana"],
        )
        assert result.exit_code == 0, result.output
        user_id = result.output.strip()
        user = memory_store.users[user_id]
        assert user.email == "dana@example.com"
        assert user.username == "dana"
        assert user.display_name is None

    def test_rotate_token_prints_new_url(self, runner, isolated_env, memory_store):
        memory_store.users["user-dana"] = User(
            id="user-dana", email="dana@example.com", username="dana", display_name="Dana"
        )
        result = runner.invoke(cli, ["rotate-token", "--user-id", "user-dana", "--kind", "ics"])
        assert result.exit_code == 0, result.output
        assert result.output.strip().startswith("https://todo.example.com/api/feeds/ics/")

    def test_sync_without_connection_reports_domain_error(
        self, runner, isolated_env, memory_store
    ):
        result = runner.invoke(cli, ["sync", "--user-id", "user-nobody"])
        assert result.exit_code == 1
        assert "Error (not_connected)" in result.output

    def test_sync_output_is_json(self, runner, isolated_env, memory_store, monkeypatch):
        class _Result:
            def as_dict(self):
                return {"created": 0, "updated": 0, "deleted": 0, "total_active": 0, "failed": 0}

        async def _fake_sync(self, user_id):
            return _Result()

        monkeypatch.setattr("todo_studio.integrations.sync.CalendarSyncEngine.sync", _fake_sync)
        result = runner.invoke(cli, ["sync", "--user-id", "user-dana"])
        assert result.exit_code == 0, result.output
        assert json.loads(result.output) == _Result().as_dict()
