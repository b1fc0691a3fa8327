"""PTY terminal — one interactive shell session on a pseudo-terminal.

The shell is spawned through a ProcessLifecycleManager, so the session
is tracked, signalled and reaped like any other managed process. Output
is read from the master side on the event loop, cleaned, and kept in a
line-oriented ring buffer that callers can wait on.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import pty
import re
import struct
import termios
from dataclasses import dataclass, field
from typing import Callable

from testpilot.config import TerminalConfig
from testpilot.errors import EngineError, NotActiveError, ValidationError, WaitTimeoutError
from testpilot.process.manager import ManagedProcess, ProcessLifecycleManager, SpawnOptions
from testpilot.process.signals import HANGUP_SIGNAL
from testpilot.pty.buffer import RollingBuffer
from testpilot.pty.text import OutputCleaner

_READ_CHUNK_BYTES = 4096
PROMPT_PATTERN = re.compile(r"[$#>] *$")


@dataclass(frozen=True)
class TerminalDimensions:
    cols: int = 80
    rows: int = 24


@dataclass
class ShellOptions:
    """Per-session overrides of the terminal config."""

    shell: str | None = None
    args: list[str] | None = None
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class PtyTerminal:
    """A managed pseudo-terminal session.

    Usage:
        terminal = PtyTerminal(TerminalConfig(shell="/bin/sh"))
        await terminal.start()
        output = await terminal.execute_command("echo $((6 * 7))", expected_output="42")
        await terminal.destroy()

    Each instance owns exactly one PTY and one managed process. When no
    manager is passed in, the terminal creates its own and shuts it down
    on ``destroy()``.
    """

    def __init__(
        self,
        config: TerminalConfig | None = None,
        process_manager: ProcessLifecycleManager | None = None,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or TerminalConfig()
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._owns_manager = process_manager is None
        self._manager = process_manager or ProcessLifecycleManager(logger=self._log)
        self._buffer = RollingBuffer(self._config.buffer_lines)
        self._dimensions = TerminalDimensions(self._config.cols, self._config.rows)
        self._cleaner = OutputCleaner()
        self._input_history: list[str] = []
        self._process: ManagedProcess | None = None
        self._master_fd = -1
        self._loop: asyncio.AbstractEventLoop | None = None
        self._reading = False
        self._active = False
        self._destroyed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        dimensions: TerminalDimensions | None = None,
        shell_options: ShellOptions | None = None,
    ) -> None:
        """Allocate a PTY and spawn the shell on it."""
        if self._destroyed:
            raise NotActiveError("Cannot start a destroyed terminal")
        if self._process is not None:
            raise EngineError("Terminal is already started")

        dims = dimensions or self._dimensions
        _validate_dimensions(dims.cols, dims.rows)
        opts = shell_options or ShellOptions()
        shell = opts.shell or self._config.resolve_shell()
        args = opts.args if opts.args is not None else list(self._config.shell_args)
        env = {**self._config.env, **opts.env, "TERM": self._config.term}

        master_fd, slave_fd = pty.openpty()
        try:
            _set_winsize(master_fd, dims.rows, dims.cols)
            self._process = await self._manager.start_process(
                shell,
                args,
                SpawnOptions(
                    cwd=opts.cwd or self._config.cwd,
                    env=env,
                    stdin=slave_fd,
                    stdout=slave_fd,
                    stderr=slave_fd,
                    attach_tty=True,
                ),
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent never keeps the slave side
            os.close(slave_fd)

        self._master_fd = master_fd
        self._dimensions = dims
        self._active = True
        self._manager.add_exit_listener(self._on_process_exit)

        self._loop = asyncio.get_running_loop()
        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True

        self._log.info(
            "Terminal session started: pid=%d shell=%s size=%dx%d",
            self._process.pid,
            shell,
            dims.cols,
            dims.rows,
        )

    async def kill(self, sig: int = HANGUP_SIGNAL) -> None:
        """Hang up the shell's process group and end the session.

        Safe to call repeatedly. Clears buffered output; a shell that exits
        on its own leaves its output readable instead.
        """
        if self._process is None:
            return
        if self._manager.is_process_running(self._process.pid):
            await self._manager.kill_process(self._process.pid, sig)
        self._end_session()
        self._buffer.clear()

    async def destroy(self) -> None:
        """Kill the session, drop buffered output and history. Idempotent."""
        if self._destroyed:
            return
        self._destroyed = True
        await self.kill()
        self._buffer.clear()
        self._input_history.clear()
        if self._owns_manager:
            await self._manager.shutdown()
            self._manager.destroy()

    def _end_session(self) -> None:
        self._active = False
        self._manager.remove_exit_listener(self._on_process_exit)
        self._stop_reading()

    def _stop_reading(self) -> None:
        if self._reading and self._loop is not None:
            self._loop.remove_reader(self._master_fd)
        self._reading = False
        if self._master_fd >= 0:
            os.close(self._master_fd)
            self._master_fd = -1

    def _on_process_exit(self, process: ManagedProcess) -> None:
        if self._process is None or process.pid != self._process.pid:
            return
        self._active = False
        self._log.info(
            "Terminal session ended: pid=%d code=%s signal=%s",
            process.pid,
            process.exit_code,
            process.signal,
        )

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, _READ_CHUNK_BYTES)
        except BlockingIOError:
            return
        except OSError:
            # EIO once the last slave descriptor is gone
            data = b""

        if not data:
            self._buffer.feed(self._cleaner.flush())
            self._stop_reading()
            self._buffer.notify()
            return
        self._buffer.feed(self._cleaner.feed(data))

    # ------------------------------------------------------------------
    # Input
    # ------------------------------------------------------------------

    def write(self, data: str) -> None:
        """Send raw input to the shell."""
        self._ensure_active()
        payload = data.encode("utf-8")
        while payload:
            written = os.write(self._master_fd, payload)
            payload = payload[written:]
        self._input_history.append(data)

    def write_line(self, data: str) -> None:
        self.write(data + self._config.line_terminator)

    def send_control(self, letter: str) -> None:
        """Send Ctrl+<letter>, e.g. ``send_control("c")`` for an interrupt.

        Raises:
            ValidationError: ``letter`` is not exactly one ASCII letter.
                Checked before anything else, including whether the
                session is active.
            NotActiveError: the session is not running.
        """
        if not (
            isinstance(letter, str) and len(letter) == 1 and letter.isascii() and letter.isalpha()
        ):
            raise ValidationError(f"send_control requires a single letter A-Z, got: {letter!r}")
        self._ensure_active()
        os.write(self._master_fd, bytes([ord(letter.upper()) - 64]))

    def resize(self, cols: int, rows: int) -> None:
        """Propagate new dimensions to the PTY."""
        _validate_dimensions(cols, rows)
        self._ensure_active()
        _set_winsize(self._master_fd, rows, cols)
        self._dimensions = TerminalDimensions(cols, rows)
        self._log.debug("Terminal resized to %dx%d", cols, rows)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    async def execute_command(
        self,
        command: str,
        expected_output: str | re.Pattern[str] | None = None,
        timeout: float | None = None,
    ) -> str:
        """Run ``command`` and return the output captured since it was sent.

        Waits for ``expected_output`` (substring or compiled regex) or, if
        none is given, for the next shell prompt.

        Raises:
            WaitTimeoutError: nothing matched within ``timeout`` seconds.
        """
        self._ensure_active()
        timeout = timeout or self._config.default_timeout
        mark = self._buffer.mark()
        self.write_line(command)

        if expected_output is not None:
            predicate = _matcher(expected_output)
        else:
            # The line holding the old prompt gets the echoed command; the
            # new prompt must show up after it.
            def predicate(text: str) -> bool:
                return PROMPT_PATTERN.search(text.partition("\n")[2]) is not None

        try:
            return await self._wait_until(lambda: self._buffer.since(mark), predicate, timeout)
        except WaitTimeoutError as e:
            raise WaitTimeoutError(
                f"Command execution timeout after {timeout}s: {command}"
            ) from e

    async def wait_for_output(
        self,
        pattern: str | re.Pattern[str],
        timeout: float | None = None,
        since: int | None = None,
    ) -> str:
        """Wait until buffered output matches ``pattern`` and return it.

        ``since`` is a ``mark()`` cursor; without it the whole buffer is
        searched.
        """
        timeout = timeout or self._config.default_timeout
        if since is None:
            source = self._buffer.read_all
        else:
            def source() -> str:
                return self._buffer.since(since)

        return await self._wait_until(source, _matcher(pattern), timeout)

    async def _wait_until(
        self,
        source: Callable[[], str],
        predicate: Callable[[str], bool],
        timeout: float,
    ) -> str:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            text = source()
            if predicate(text):
                return text
            if not self._reading:
                raise NotActiveError("Terminal session ended before the expected output appeared")
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise WaitTimeoutError(f"Timed out after {timeout}s waiting for terminal output")
            await self._buffer.wait_for_data(timeout=remaining)

    def mark(self) -> int:
        """Buffer cursor for ``wait_for_output(..., since=mark)``."""
        return self._buffer.mark()

    def get_buffer(self, lines: int | None = None) -> list[str]:
        return self._buffer.read_tail(lines)

    def clear_buffer(self) -> None:
        self._buffer.clear()

    def get_input_history(self) -> list[str]:
        return list(self._input_history)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def _ensure_active(self) -> None:
        if not self._active or self._master_fd < 0:
            raise NotActiveError("Terminal is not started or has already ended")

    def is_running(self) -> bool:
        return (
            self._active
            and self._process is not None
            and self._manager.is_process_running(self._process.pid)
        )

    @property
    def active(self) -> bool:
        return self._active

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def process(self) -> ManagedProcess | None:
        return self._process

    @property
    def dimensions(self) -> TerminalDimensions:
        return self._dimensions

    @property
    def process_manager(self) -> ProcessLifecycleManager:
        return self._manager


def _matcher(pattern: str | re.Pattern[str]) -> Callable[[str], bool]:
    if isinstance(pattern, re.Pattern):
        return lambda text: pattern.search(text) is not None
    return lambda text: pattern in text


def _validate_dimensions(cols: int, rows: int) -> None:
    if cols < 1 or rows < 1:
        raise ValidationError(f"Terminal dimensions must be at least 1x1, got {cols}x{rows}")


def _set_winsize(fd: int, rows: int, cols: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)
