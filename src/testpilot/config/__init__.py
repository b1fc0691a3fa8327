"""Configuration — Pydantic models for testpilot settings."""

from __future__ import annotations

import os
from typing import Any

from pydantic import BaseModel, Field


class ProcessConfig(BaseModel):
    """Process lifecycle timing and bookkeeping."""

    kill_grace_period: float = Field(
        default=2.0,
        ge=0,
        description="Seconds to wait after a graceful signal before escalating to SIGKILL",
    )
    shutdown_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Seconds shutdown() waits for natural exit after SIGTERM",
    )
    force_kill_timeout: float = Field(
        default=5.0,
        ge=0,
        description="Seconds to wait for the exit event after SIGKILL",
    )
    history_size: int = Field(
        default=100, ge=0, description="Reaped processes kept for introspection"
    )


class TerminalConfig(BaseModel):
    """Pseudo-terminal session configuration."""

    shell: str | None = Field(
        default=None, description="Shell to spawn. Defaults to $SHELL, then /bin/sh"
    )
    shell_args: list[str] = Field(default_factory=list)
    cwd: str | None = Field(default=None)
    env: dict[str, str] = Field(default_factory=dict)
    term: str = Field(default="xterm-256color", description="Value of TERM in the session")
    cols: int = Field(default=80, ge=1)
    rows: int = Field(default=24, ge=1)
    buffer_lines: int = Field(
        default=10_000, ge=1, description="Capacity of the output ring buffer"
    )
    default_timeout: float = Field(
        default=30.0, gt=0, description="Pattern-wait timeout when none is given"
    )
    line_terminator: str = Field(default="\n")

    def resolve_shell(self) -> str:
        shell = (self.shell or "").strip()
        if shell:
            return shell
        env_shell = os.environ.get("SHELL", "").strip()
        return env_shell or "/bin/sh"


class RouterConfig(BaseModel):
    """Scenario dispatch configuration."""

    max_parallel: int = Field(default=4, ge=1)
    fail_fast: bool = Field(default=False)
    retry_count: int = Field(
        default=0, ge=0, description="Additional attempts after a failed execute()"
    )
    backoff_unit: float = Field(
        default=1.0,
        ge=0,
        description="Retry k waits backoff_unit * 2**k seconds",
    )


class EngineConfig(BaseModel):
    """Top-level testpilot configuration."""

    process: ProcessConfig = Field(default_factory=ProcessConfig)
    terminal: TerminalConfig = Field(default_factory=TerminalConfig)
    router: RouterConfig = Field(default_factory=RouterConfig)

    @classmethod
    def load(cls, environ: dict[str, str] | None = None) -> EngineConfig:
        """Build config from defaults overridden by env vars.

        Env vars:
            TESTPILOT_MAX_PARALLEL       - Router concurrency ceiling
            TESTPILOT_FAIL_FAST          - "1"/"true"/"yes" enables fail-fast
            TESTPILOT_RETRY_COUNT        - Additional attempts per scenario
            TESTPILOT_SHUTDOWN_TIMEOUT   - Seconds to wait before SIGKILL on shutdown
            TESTPILOT_KILL_GRACE_PERIOD  - Seconds between SIGTERM and SIGKILL
            TESTPILOT_SHELL              - Shell for PTY sessions
            TESTPILOT_BUFFER_LINES       - PTY output buffer capacity
        """
        env = os.environ if environ is None else environ
        config_data: dict[str, Any] = {"process": {}, "terminal": {}, "router": {}}

        router = config_data["router"]
        if env.get("TESTPILOT_MAX_PARALLEL"):
            router["max_parallel"] = int(env["TESTPILOT_MAX_PARALLEL"])
        if env.get("TESTPILOT_FAIL_FAST"):
            router["fail_fast"] = env["TESTPILOT_FAIL_FAST"].lower() in ("1", "true", "yes")
        if env.get("TESTPILOT_RETRY_COUNT"):
            router["retry_count"] = int(env["TESTPILOT_RETRY_COUNT"])

        process = config_data["process"]
        if env.get("TESTPILOT_SHUTDOWN_TIMEOUT"):
            process["shutdown_timeout"] = float(env["TESTPILOT_SHUTDOWN_TIMEOUT"])
        if env.get("TESTPILOT_KILL_GRACE_PERIOD"):
            process["kill_grace_period"] = float(env["TESTPILOT_KILL_GRACE_PERIOD"])

        terminal = config_data["terminal"]
        if env.get("TESTPILOT_SHELL"):
            terminal["shell"] = env["TESTPILOT_SHELL"]
        if env.get("TESTPILOT_BUFFER_LINES"):
            terminal["buffer_lines"] = int(env["TESTPILOT_BUFFER_LINES"])

        return cls.model_validate(config_data)
