"""Tests for testpilot.config."""

from __future__ import annotations

import pydantic
import pytest

from testpilot.config import EngineConfig, ProcessConfig, RouterConfig, TerminalConfig


class TestDefaults:
    def test_process(self) -> None:
        config = ProcessConfig()
        assert config.kill_grace_period == 2.0
        assert config.shutdown_timeout == 5.0
        assert config.force_kill_timeout == 5.0
        assert config.history_size == 100

    def test_terminal(self) -> None:
        config = TerminalConfig()
        assert (config.cols, config.rows) == (80, 24)
        assert config.buffer_lines == 10_000
        assert config.term == "xterm-256color"
        assert config.line_terminator == "\n"

    def test_router(self) -> None:
        config = RouterConfig()
        assert config.max_parallel == 4
        assert config.fail_fast is False
        assert config.retry_count == 0
        assert config.backoff_unit == 1.0


class TestValidation:
    def test_max_parallel_at_least_one(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            RouterConfig(max_parallel=0)

    def test_terminal_dimensions_positive(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            TerminalConfig(cols=0)

    def test_negative_retry_count(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            RouterConfig(retry_count=-1)


class TestResolveShell:
    def test_explicit(self) -> None:
        assert TerminalConfig(shell="/bin/bash").resolve_shell() == "/bin/bash"

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("SHELL", "/usr/bin/zsh")
        assert TerminalConfig().resolve_shell() == "/usr/bin/zsh"

    def test_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("SHELL", raising=False)
        assert TerminalConfig(shell="  ").resolve_shell() == "/bin/sh"


class TestEngineConfigLoad:
    def test_defaults_without_env(self) -> None:
        config = EngineConfig.load({})
        assert config == EngineConfig()

    def test_env_overrides(self) -> None:
        config = EngineConfig.load(
            {
                "TESTPILOT_MAX_PARALLEL": "8",
                "TESTPILOT_FAIL_FAST": "true",
                "TESTPILOT_RETRY_COUNT": "2",
                "TESTPILOT_SHUTDOWN_TIMEOUT": "1.5",
                "TESTPILOT_KILL_GRACE_PERIOD": "0.25",
                "TESTPILOT_SHELL": "/bin/dash",
                "TESTPILOT_BUFFER_LINES": "500",
            }
        )
        assert config.router.max_parallel == 8
        assert config.router.fail_fast is True
        assert config.router.retry_count == 2
        assert config.process.shutdown_timeout == 1.5
        assert config.process.kill_grace_period == 0.25
        assert config.terminal.shell == "/bin/dash"
        assert config.terminal.buffer_lines == 500

    @pytest.mark.parametrize(("raw", "expected"), [("1", True), ("YES", True), ("0", False)])
    def test_fail_fast_parsing(self, raw: str, expected: bool) -> None:
        assert EngineConfig.load({"TESTPILOT_FAIL_FAST": raw}).router.fail_fast is expected

    def test_reads_process_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TESTPILOT_MAX_PARALLEL", "3")
        assert EngineConfig.load().router.max_parallel == 3

    def test_invalid_env_value(self) -> None:
        with pytest.raises(pydantic.ValidationError):
            EngineConfig.load({"TESTPILOT_MAX_PARALLEL": "0"})
