"""Tests for bulwark.cli — config show/validate and --version."""

from __future__ import annotations

import json
import os

import pytest
from typer.testing import CliRunner

from bulwark import __version__
from bulwark.cli.app import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.startswith("BULWARK_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def logging_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(
        "bulwark.cli.config.configure_logging", lambda **kwargs: calls.append(kwargs)
    )
    return calls


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert result.output.startswith("bulwark ")

    def test_fallback_version_is_set(self):
        assert __version__


class TestShowConfig:
    def test_show_json_format(self):
        result = runner.invoke(app, ["config", "show", "--format", "json"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["limiter"]["capacity"] == 10
        assert data["store_backend"] == "memory"

    def test_show_env_format(self, monkeypatch):
        monkeypatch.setenv("BULWARK_BREAKER__MINIMUM_CALLS", "25")
        result = runner.invoke(app, ["config", "show", "--format", "env"])
        assert result.exit_code == 0
        assert "BULWARK_BREAKER__MINIMUM_CALLS=25" in result.output
        assert "BULWARK_STORE_BACKEND=memory" in result.output

    def test_show_table_format(self):
        result = runner.invoke(app, ["config", "show"])
        assert result.exit_code == 0
        assert "cache.ttl_seconds" in result.output

    def test_unknown_format(self):
        result = runner.invoke(app, ["config", "show", "--format", "yaml"])
        assert result.exit_code == 2


class TestValidateConfig:
    def test_valid(self):
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_invalid_exits_1(self, monkeypatch):
        monkeypatch.setenv("BULWARK_LIMITER__CAPACITY", "0")
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 1

    def test_redis_backend_has_no_warning(self, monkeypatch):
        monkeypatch.setenv("BULWARK_STORE_BACKEND", "redis")
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert "WARNING" not in result.output


class TestLoggingSettings:
    def test_commands_apply_log_settings(self, monkeypatch, logging_calls):
        monkeypatch.setenv("BULWARK_LOG_LEVEL", "debug")
        monkeypatch.setenv("BULWARK_JSON_LOGS", "true")
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 0
        assert logging_calls == [{"level": "DEBUG", "json_format": True}]

    def test_defaults_to_info_and_auto_format(self, logging_calls):
        result = runner.invoke(app, ["config", "show", "--format", "json"])
        assert result.exit_code == 0
        assert logging_calls == [{"level": "INFO", "json_format": None}]

    def test_unknown_log_level_is_rejected(self, monkeypatch, logging_calls):
        monkeypatch.setenv("BULWARK_LOG_LEVEL", "LOUD")
        result = runner.invoke(app, ["config", "validate"])
        assert result.exit_code == 1
        assert logging_calls == []
