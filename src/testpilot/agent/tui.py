"""TUI agent — drives interactive programs through a PTY terminal."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Any, ClassVar

from testpilot.agent.base import (
    AgentType,
    BaseAgent,
    normalize_action,
    output_matches,
    parse_expected,
)
from testpilot.config import TerminalConfig
from testpilot.errors import EngineError, ValidationError
from testpilot.model import OrchestratorScenario, TestStep
from testpilot.process.manager import ProcessLifecycleManager
from testpilot.pty.terminal import PtyTerminal, ShellOptions

# Named keys for send_key; anything else must be ctrl+<letter>
KEY_SEQUENCES = {
    "enter": "\r",
    "return": "\r",
    "tab": "\t",
    "escape": "\x1b",
    "esc": "\x1b",
    "backspace": "\x7f",
    "space": " ",
    "up": "\x1b[A",
    "down": "\x1b[B",
    "right": "\x1b[C",
    "left": "\x1b[D",
    "home": "\x1b[H",
    "end": "\x1b[F",
}

_EXECUTE_ACTIONS = frozenset({"execute", "run", "command", "runcommand", "executecommand"})
_LINE_ACTIONS = frozenset({"sendline", "spawn", "spawntui", "input", "sendinput"})
_RESIZE_RE = re.compile(r"^\s*(\d+)\s*[x, ]\s*(\d+)\s*$")


@dataclass
class TUISession:
    terminal: PtyTerminal


class TUIAgent(BaseAgent[TUISession]):
    """Run TUI scenarios, each in a fresh PTY terminal.

    The terminal is created when the scenario starts and destroyed when
    it ends, so concurrent scenarios never share a session.

    Supported actions:
        execute / runCommand     - run ``target`` and wait for ``expected``
                                   (or the next prompt)
        type / write             - send ``value`` (or ``target``) verbatim
        send_line / spawn        - send ``target`` plus a line terminator
        send_key                 - a named key (enter, tab, up...) or ctrl+<letter>
        control                  - Ctrl+``target``
        wait_for_output          - wait for regex ``target``
        validate_output          - check the visible buffer against ``expected``
        resize                   - ``value`` as COLSxROWS
        clear                    - drop buffered output
        kill_session             - terminate the shell
        wait                     - sleep ``value`` seconds
    """

    name: ClassVar[str] = "tui"
    type: ClassVar[AgentType] = AgentType.TUI

    def __init__(
        self,
        config: TerminalConfig | None = None,
        process_manager: ProcessLifecycleManager | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(logger=logger)
        self._config = config or TerminalConfig()
        self._owns_manager = process_manager is None
        self._manager = process_manager or ProcessLifecycleManager(logger=self._log)

    async def _teardown(self) -> None:
        if self._owns_manager:
            await self._manager.shutdown()

    async def _open_session(self, scenario: OrchestratorScenario) -> TUISession:
        terminal = PtyTerminal(self._config, self._manager, logger=self._log)
        try:
            await terminal.start(shell_options=ShellOptions(env=dict(scenario.environment)))
        except BaseException:
            await terminal.destroy()
            raise
        return TUISession(terminal=terminal)

    async def _close_session(self, session: TUISession) -> None:
        await session.terminal.destroy()

    async def _perform(self, step: TestStep, session: TUISession) -> str | None:
        terminal = session.terminal
        action = normalize_action(step.action)

        if action in _EXECUTE_ACTIONS:
            return await terminal.execute_command(
                step.target, expected_output=step.expected, timeout=step.timeout
            )

        if action in ("type", "write"):
            terminal.write(step.value if step.value is not None else step.target)
            return None

        if action in _LINE_ACTIONS:
            terminal.write_line(step.target or step.value or "")
            return None

        if action == "sendkey":
            _send_key(terminal, step.target or step.value or "")
            return None

        if action == "control":
            terminal.send_control(step.target or step.value or "")
            return None

        if action == "waitforoutput":
            pattern = re.compile(step.target or step.expected or "")
            return await terminal.wait_for_output(pattern, timeout=step.timeout)

        if action == "validateoutput":
            expected = parse_expected(step.expected if step.expected is not None else step.value)
            output = "\n".join(terminal.get_buffer())
            if isinstance(expected, str) and not expected.startswith(("regex:", "contains:")):
                # Plain expectations are substring checks against the screen
                expected = f"contains:{expected}"
            if not output_matches(output, expected):
                raise AssertionError(f"Terminal output did not match {expected!r}")
            return output

        if action in ("resize", "resizeterminal"):
            cols, rows = _parse_size(step.value or step.target)
            terminal.resize(cols, rows)
            return f"{cols}x{rows}"

        if action in ("clear", "clearbuffer"):
            terminal.clear_buffer()
            return None

        if action in ("killsession", "kill"):
            await terminal.kill()
            return None

        if action == "wait":
            await asyncio.sleep(float(step.value or step.target or 1.0))
            return None

        raise EngineError(f"Unsupported TUI action: {step.action}")

    def _session_logs(self, session: TUISession) -> list[str]:
        return session.terminal.get_buffer(200)

    def _session_metadata(self, session: TUISession) -> dict[str, Any]:
        return {"input_history": session.terminal.get_input_history()}


def _send_key(terminal: PtyTerminal, key: str) -> None:
    name = key.strip().lower()
    if name in KEY_SEQUENCES:
        terminal.write(KEY_SEQUENCES[name])
        return
    if name.startswith("ctrl+"):
        terminal.send_control(key.strip()[len("ctrl+"):])
        return
    raise ValidationError(f"Unknown key: {key!r}")


def _parse_size(value: str | None) -> tuple[int, int]:
    match = _RESIZE_RE.match(value or "")
    if match is None:
        raise ValidationError(f"Expected terminal size as COLSxROWS, got {value!r}")
    return int(match.group(1)), int(match.group(2))
