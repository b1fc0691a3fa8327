"""CLI agent — runs scenario commands as managed child processes."""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shlex
import subprocess
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Sequence

from testpilot.agent.base import (
    AgentType,
    BaseAgent,
    normalize_action,
    output_matches,
    parse_expected,
)
from testpilot.errors import EngineError, WaitTimeoutError
from testpilot.model import OrchestratorScenario, TestStep
from testpilot.process.manager import ProcessLifecycleManager, SpawnOptions

_EXECUTE_ACTIONS = frozenset({"execute", "run", "command", "runcommand", "executecommand"})


@dataclass
class CommandResult:
    """One finished command. ``duration`` is in seconds."""

    command: str
    exit_code: int | None
    stdout: str
    stderr: str
    duration: float
    signal: int | None = None

    @property
    def output(self) -> str:
        return "\n".join(part.rstrip("\n") for part in (self.stdout, self.stderr) if part)


@dataclass
class CLISession:
    """Per-scenario state: working directory, environment, command log."""

    cwd: str
    env: dict[str, str] = field(default_factory=dict)
    history: list[CommandResult] = field(default_factory=list)

    @property
    def last(self) -> CommandResult:
        if not self.history:
            raise EngineError("No command history available")
        return self.history[-1]


class CLIAgent(BaseAgent[CLISession]):
    """Run CLI scenarios one command at a time.

    Every command is spawned through the process lifecycle manager in its
    own process group; a command that outlives its timeout has its whole
    group killed.

    Supported actions:
        execute / run / command / runCommand  - run ``target``; ``value`` is
            a JSON env object or stdin text; ``expected`` checks the output
        execute_with_input  - run ``target`` with ``value`` on stdin
        validate_output     - check the last command's output
        validate_exit_code  - check the last command's exit code
        capture_output      - return the last command's output
        set_environment     - set ``target`` to ``value`` for later commands
        change_directory    - change the working directory
        file_exists / directory_exists
        wait                - sleep ``value`` seconds
    """

    name: ClassVar[str] = "cli"
    type: ClassVar[AgentType] = AgentType.CLI

    def __init__(
        self,
        process_manager: ProcessLifecycleManager | None = None,
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        default_timeout: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(logger=logger)
        self._owns_manager = process_manager is None
        self._manager = process_manager or ProcessLifecycleManager(logger=self._log)
        self._cwd = cwd or os.getcwd()
        self._env = dict(env or {})
        self._default_timeout = default_timeout

    async def _setup(self) -> None:
        if not os.path.isdir(self._cwd):
            raise EngineError(f"Working directory does not exist: {self._cwd}")

    async def _teardown(self) -> None:
        await self._manager.kill_all_processes()
        if self._owns_manager:
            await self._manager.shutdown()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def run_command(
        self,
        command: str,
        args: Sequence[str] = (),
        *,
        stdin_text: str | None = None,
        timeout: float | None = None,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
    ) -> CommandResult:
        """Run a command to completion and capture its output.

        Raises:
            WaitTimeoutError: the command ran past ``timeout``; its process
                group has been killed.
        """
        timeout = timeout or self._default_timeout
        cmdline = shlex.join([command, *args])
        started = time.monotonic()
        process = await self._manager.start_process(
            command,
            args,
            SpawnOptions(
                cwd=cwd or self._cwd,
                env={**self._env, **(env or {})},
                stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
            ),
        )
        self._log.info("Running command: %s (pid=%d)", cmdline, process.pid)

        async def _communicate() -> tuple[bytes, bytes]:
            if stdin_text is not None and process.stdin is not None:
                process.stdin.write(stdin_text.encode("utf-8"))
                await process.stdin.drain()
                process.stdin.close()
            stdout, stderr = await asyncio.gather(
                process.stdout.read() if process.stdout else _empty(),
                process.stderr.read() if process.stderr else _empty(),
            )
            await self._manager.wait_for_process(process.pid)
            return stdout, stderr

        try:
            stdout, stderr = await asyncio.wait_for(_communicate(), timeout=timeout)
        except TimeoutError as e:
            raise WaitTimeoutError(f"Command timeout after {timeout}s: {cmdline}") from e
        finally:
            if self._manager.is_process_running(process.pid):
                await self._manager.kill_process(process.pid)

        result = CommandResult(
            command=cmdline,
            exit_code=process.exit_code,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            duration=time.monotonic() - started,
            signal=process.signal,
        )
        self._log.info(
            "Command finished: %s (exit=%s, %.2fs)", cmdline, result.exit_code, result.duration
        )
        return result

    # ------------------------------------------------------------------
    # Scenario steps
    # ------------------------------------------------------------------

    async def _open_session(self, scenario: OrchestratorScenario) -> CLISession:
        return CLISession(cwd=self._cwd, env=dict(scenario.environment))

    async def _perform(self, step: TestStep, session: CLISession) -> str | None:
        action = normalize_action(step.action)

        if action in _EXECUTE_ACTIONS:
            env, stdin_text = _split_value(step.value)
            result = await self._run_step_command(session, step, env=env, stdin_text=stdin_text)
            expected = parse_expected(step.expected)
            if expected is not None and not output_matches(result.output, expected):
                raise AssertionError(f"Output did not match {step.expected!r}: {result.output!r}")
            return result.output

        if action == "executewithinput":
            result = await self._run_step_command(
                session, step, stdin_text=step.value or "", check=False
            )
            return result.output

        if action == "validateoutput":
            expected = parse_expected(step.expected if step.expected is not None else step.value)
            output = session.last.output
            if not output_matches(output, expected):
                raise AssertionError(f"Output did not match {expected!r}: {output!r}")
            return output

        if action == "validateexitcode":
            wanted = int(step.expected or step.value or 0)
            actual = session.last.exit_code
            if actual != wanted:
                raise AssertionError(f"Expected exit code {wanted}, got {actual}")
            return str(actual)

        if action == "captureoutput":
            last = session.last
            return json.dumps({"stdout": last.stdout, "stderr": last.stderr})

        if action == "setenvironment":
            session.env[step.target] = step.value or ""
            return None

        if action == "changedirectory":
            path = os.path.abspath(os.path.join(session.cwd, step.target))
            if not os.path.isdir(path):
                raise EngineError(f"Not a directory: {path}")
            session.cwd = path
            return path

        if action == "fileexists":
            return str(os.path.exists(os.path.join(session.cwd, step.target))).lower()

        if action == "directoryexists":
            return str(os.path.isdir(os.path.join(session.cwd, step.target))).lower()

        if action == "wait":
            await asyncio.sleep(float(step.value or step.target or 1.0))
            return None

        raise EngineError(f"Unsupported CLI action: {step.action}")

    async def _run_step_command(
        self,
        session: CLISession,
        step: TestStep,
        *,
        env: dict[str, str] | None = None,
        stdin_text: str | None = None,
        check: bool = True,
    ) -> CommandResult:
        argv = shlex.split(step.target)
        if not argv:
            raise EngineError(f"Step {step.action!r} has no command")
        result = await self.run_command(
            argv[0],
            argv[1:],
            stdin_text=stdin_text,
            timeout=step.timeout,
            env={**session.env, **(env or {})},
            cwd=session.cwd,
        )
        session.history.append(result)
        if check and result.exit_code != 0:
            message = f"Command failed with exit code {result.exit_code}"
            if result.signal is not None:
                message = f"Command killed by signal {result.signal}"
            detail = result.stderr.strip() or result.stdout.strip()
            raise EngineError(f"{message}: {detail}" if detail else message)
        return result

    def _session_logs(self, session: CLISession) -> list[str]:
        logs = []
        for result in session.history:
            logs.append(f"[COMMAND] {result.command}")
            if result.stdout.strip():
                logs.append(f"[STDOUT] {result.stdout.strip()}")
            if result.stderr.strip():
                logs.append(f"[STDERR] {result.stderr.strip()}")
        return logs

    def _session_metadata(self, session: CLISession) -> dict[str, Any]:
        return {"command_history": [r.command for r in session.history]}


def _split_value(value: str | None) -> tuple[dict[str, str] | None, str | None]:
    """A step value is either a JSON env object or literal stdin."""
    if value is None:
        return None, None
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        return None, value
    if isinstance(parsed, dict):
        return {str(k): str(v) for k, v in parsed.items()}, None
    return None, value


async def _empty() -> bytes:
    return b""
