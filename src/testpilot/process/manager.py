"""Process lifecycle manager — spawn, track, signal and reap child processes.

Every child is started in its own process group so that whatever it
forks can be signalled as a unit. One watcher task per child awaits its
exit; that watcher is the only place the exit status is consumed, which
is what keeps finished children from lingering as zombies.
"""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import enum
import logging
import os
import signal
import subprocess
import weakref
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from testpilot.config import ProcessConfig
from testpilot.errors import ProcessError, WaitTimeoutError
from testpilot.process.signals import (
    FORCE_SIGNAL,
    GRACEFUL_SIGNAL,
    GroupTerminator,
    default_terminator,
)

if os.name == "posix":
    import fcntl
    import termios


class ProcessStatus(enum.StrEnum):
    """Lifecycle states of a managed process."""

    SPAWNED = "spawned"
    RUNNING = "running"
    EXITED = "exited"  # Exited on its own
    KILLED = "killed"  # Exited after we signalled it


@dataclass
class SpawnOptions:
    """How to launch a managed process.

    ``env`` entries are layered over the current environment. The stdio
    arguments accept the ``subprocess`` constants or raw file descriptors.
    """

    cwd: str | None = None
    env: dict[str, str] | None = None
    shell: bool = False
    stdin: int | None = subprocess.DEVNULL
    stdout: int | None = subprocess.PIPE
    stderr: int | None = subprocess.PIPE
    attach_tty: bool = False  # Make stdin the controlling terminal (PTY sessions)


@dataclass(eq=False)
class ManagedProcess:
    """A child process started by a ``ProcessLifecycleManager``.

    Owned by the manager: callers may read it but only the manager's exit
    handler mutates it.
    """

    pid: int
    command: str
    args: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    status: ProcessStatus = ProcessStatus.SPAWNED
    pgid: int | None = None
    exit_code: int | None = None
    signal: int | None = None
    started_at: datetime = field(default_factory=datetime.now)
    ended_at: datetime | None = None
    stdin: asyncio.StreamWriter | None = field(default=None, repr=False)
    stdout: asyncio.StreamReader | None = field(default=None, repr=False)
    stderr: asyncio.StreamReader | None = field(default=None, repr=False)

    @property
    def alive(self) -> bool:
        return self.status in (ProcessStatus.SPAWNED, ProcessStatus.RUNNING)


ExitListener = Callable[[ManagedProcess], None]


@dataclass(eq=False)
class _Tracked:
    info: ManagedProcess
    proc: asyncio.subprocess.Process
    exited: asyncio.Event = field(default_factory=asyncio.Event)
    kill_requested: bool = False
    watcher: asyncio.Task[None] | None = None


class ProcessLifecycleManager:
    """Tracks the child processes it starts and guarantees their cleanup.

    Only processes started through this instance are ever reported or
    signalled; there is no system-wide process scan.
    """

    def __init__(
        self,
        config: ProcessConfig | None = None,
        *,
        terminator: GroupTerminator | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or ProcessConfig()
        self._terminator = terminator or default_terminator()
        self._log = logger if logger is not None else logging.getLogger(__name__)
        self._live: dict[int, _Tracked] = {}
        self._history: deque[ManagedProcess] = deque(maxlen=self._config.history_size)
        self._groups: set[int] = set()  # Live leaders, plus exited leaders with live members
        self._listeners: list[ExitListener] = []
        self._shutting_down = False
        self._destroyed = False
        self._signal_loop: asyncio.AbstractEventLoop | None = None
        self._installed_signals: tuple[int, ...] = ()
        self._shutdown_task: asyncio.Task[None] | None = None
        _register_for_exit_sweep(self)

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def start_process(
        self,
        command: str,
        args: Sequence[str] = (),
        options: SpawnOptions | None = None,
    ) -> ManagedProcess:
        """Spawn ``command`` in a new process group and start tracking it.

        Returns as soon as the child exists; it does not wait for it to
        finish. The exit watcher is registered before this returns.
        """
        if self._shutting_down or self._destroyed:
            raise ProcessError("Cannot start new processes during shutdown")

        opts = options or SpawnOptions()
        args = list(args)
        kwargs: dict[str, object] = {
            "stdin": opts.stdin,
            "stdout": opts.stdout,
            "stderr": opts.stderr,
            "cwd": opts.cwd,
            "env": {**os.environ, **(opts.env or {})},
            **self._terminator.spawn_kwargs(),
        }
        if opts.attach_tty:
            kwargs["preexec_fn"] = _acquire_controlling_tty

        try:
            if opts.shell:
                proc = await asyncio.create_subprocess_shell(
                    " ".join([command, *args]), **kwargs  # type: ignore[arg-type]
                )
            else:
                proc = await asyncio.create_subprocess_exec(
                    command, *args, **kwargs  # type: ignore[arg-type]
                )
        except (OSError, subprocess.SubprocessError) as e:
            raise ProcessError(
                f"Failed to spawn process: {' '.join([command, *args])} - {e}"
            ) from e

        # setsid / CREATE_NEW_PROCESS_GROUP make the child its own group leader
        info = ManagedProcess(
            pid=proc.pid,
            command=command,
            args=args,
            cwd=opts.cwd,
            env=dict(opts.env or {}),
            pgid=proc.pid,
            stdin=proc.stdin,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
        tracked = _Tracked(info=info, proc=proc)
        self._live[proc.pid] = tracked
        self._groups.add(proc.pid)
        tracked.watcher = asyncio.create_task(
            self._watch(tracked), name=f"testpilot-reap-{proc.pid}"
        )
        info.status = ProcessStatus.RUNNING

        self._log.info(
            "Process started: pid=%d pgid=%d cmd=%s",
            info.pid,
            info.pgid,
            " ".join([command, *args]),
        )
        return info

    async def _watch(self, tracked: _Tracked) -> None:
        returncode = await tracked.proc.wait()
        self._handle_exit(tracked, returncode)

    def _handle_exit(self, tracked: _Tracked, returncode: int) -> None:
        info = tracked.info
        if not info.alive:
            return

        info.ended_at = datetime.now()
        if returncode < 0:
            info.signal = -returncode
        else:
            info.exit_code = returncode
        info.status = ProcessStatus.KILLED if tracked.kill_requested else ProcessStatus.EXITED

        self._live.pop(info.pid, None)
        self._history.append(info)
        tracked.exited.set()
        self._prune_groups()

        self._log.info(
            "Process %d %s (code=%s signal=%s)",
            info.pid,
            info.status.value,
            info.exit_code,
            _signal_name(info.signal) if info.signal else None,
        )
        for listener in list(self._listeners):
            try:
                listener(info)
            except Exception:
                self._log.exception("Error in exit listener for process %d", info.pid)

    # ------------------------------------------------------------------
    # Signalling
    # ------------------------------------------------------------------

    async def kill_process(
        self,
        pid: int,
        sig: int = GRACEFUL_SIGNAL,
        grace_period: float | None = None,
    ) -> bool:
        """Signal the process group of ``pid``, escalating to SIGKILL.

        Unknown or already-exited pids are a no-op. Returns True if the
        process was live when the call was made.
        """
        tracked = self._live.get(pid)
        if tracked is None or tracked.exited.is_set():
            return False

        tracked.kill_requested = True
        self._signal(tracked, sig)

        if sig != FORCE_SIGNAL:
            grace = self._config.kill_grace_period if grace_period is None else grace_period
            if await self._wait_exited(tracked, grace):
                return True
            self._log.warning(
                "Process %d still running %.1fs after %s, sending %s",
                pid,
                grace,
                _signal_name(sig),
                _signal_name(FORCE_SIGNAL),
            )
            self._signal(tracked, FORCE_SIGNAL)

        if not await self._wait_exited(tracked, self._config.force_kill_timeout):
            self._log.error("Process %d did not exit after %s", pid, _signal_name(FORCE_SIGNAL))
        return True

    async def kill_all_processes(self, sig: int = GRACEFUL_SIGNAL) -> int:
        """``kill_process`` every live process concurrently. Returns how many were live."""
        pids = list(self._live.keys())
        if not pids:
            return 0
        results = await asyncio.gather(*(self.kill_process(pid, sig) for pid in pids))
        return sum(1 for killed in results if killed)

    def _signal(self, tracked: _Tracked, sig: int) -> bool:
        pgid = tracked.info.pgid or tracked.info.pid
        return self._terminator.terminate_group(pgid, sig)

    def _signal_quietly(self, tracked: _Tracked, sig: int) -> None:
        try:
            self._signal(tracked, sig)
        except ProcessError as e:
            self._log.warning("Could not signal process %d: %s", tracked.info.pid, e)

    # ------------------------------------------------------------------
    # Waiting and shutdown
    # ------------------------------------------------------------------

    async def wait_for_process(
        self, pid: int, timeout: float | None = None
    ) -> ManagedProcess | None:
        """Wait for ``pid`` to exit and return its record.

        Returns None for a pid this manager never started.

        Raises:
            WaitTimeoutError: the process is still running after ``timeout``.
        """
        tracked = self._live.get(pid)
        if tracked is None:
            return self.get_process(pid)
        if not await self._wait_exited(tracked, timeout):
            raise WaitTimeoutError(f"Process {pid} did not exit within {timeout}s")
        return tracked.info

    async def shutdown(self, timeout: float | None = None) -> None:
        """Terminate every live process and wait for all exit events.

        SIGTERM first; stragglers still running after ``timeout`` seconds
        get SIGKILL. Returns once every tracked process has been reaped
        (bounded by ``force_kill_timeout`` after the SIGKILL).
        """
        timeout = self._config.shutdown_timeout if timeout is None else timeout
        self._shutting_down = True

        live = list(self._live.values())
        pending: list[_Tracked] = []
        if live:
            self._log.info("Shutting down %d process(es)", len(live))
            for tracked in live:
                tracked.kill_requested = True
                self._signal_quietly(tracked, GRACEFUL_SIGNAL)

            pending = await self._wait_all(live, timeout)
            if pending:
                self._log.warning(
                    "%d process(es) still running after %.1fs, sending %s",
                    len(pending),
                    timeout,
                    _signal_name(FORCE_SIGNAL),
                )
                for tracked in pending:
                    self._signal_quietly(tracked, FORCE_SIGNAL)
                pending = await self._wait_all(pending, self._config.force_kill_timeout)

        # Descendants that outlived their group leader
        self._sweep_groups()

        if not live:
            self._log.debug("Shutdown: no live processes")
        elif pending:
            self._log.error(
                "Processes survived shutdown: %s",
                ", ".join(str(t.info.pid) for t in pending),
            )
        else:
            self._log.info("All %d process(es) cleaned up", len(live))

    def _prune_groups(self) -> None:
        """Forget groups whose leader has exited and whose members are all gone.

        A forgotten pgid may be reused by the kernel for an unrelated
        group, so it must never be signalled again.
        """
        for pgid in list(self._groups):
            if pgid not in self._live and not self._terminator.group_exists(pgid):
                self._groups.discard(pgid)

    def _sweep_groups(self) -> None:
        self._prune_groups()
        groups, self._groups = self._groups, set()
        for pgid in groups:
            with contextlib.suppress(ProcessError):
                self._terminator.terminate_group(pgid, FORCE_SIGNAL)

    async def _wait_exited(self, tracked: _Tracked, timeout: float | None) -> bool:
        if tracked.exited.is_set():
            return True
        try:
            await asyncio.wait_for(tracked.exited.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def _wait_all(self, tracked: list[_Tracked], timeout: float) -> list[_Tracked]:
        waiters = {
            asyncio.ensure_future(t.exited.wait()): t for t in tracked if not t.exited.is_set()
        }
        if not waiters:
            return []
        _done, pending = await asyncio.wait(waiters, timeout=timeout)
        for fut in pending:
            fut.cancel()
        return [waiters[fut] for fut in pending]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def get_processes(self) -> list[ManagedProcess]:
        """Every process this manager started that is still live or in history."""
        return [*self._history, *(t.info for t in self._live.values())]

    def get_running_processes(self) -> list[ManagedProcess]:
        return [t.info for t in self._live.values() if t.info.alive]

    def get_process(self, pid: int) -> ManagedProcess | None:
        tracked = self._live.get(pid)
        if tracked is not None:
            return tracked.info
        for info in reversed(self._history):
            if info.pid == pid:
                return info
        return None

    def is_process_running(self, pid: int) -> bool:
        tracked = self._live.get(pid)
        return tracked is not None and tracked.info.alive

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def process_groups(self) -> frozenset[int]:
        """Groups a shutdown would sweep: live leaders and surviving orphans."""
        return frozenset(self._groups)

    # ------------------------------------------------------------------
    # Listeners, signal handlers, teardown
    # ------------------------------------------------------------------

    def add_exit_listener(self, listener: ExitListener) -> None:
        """Call ``listener(process)`` once for every process that exits."""
        self._listeners.append(listener)

    def remove_exit_listener(self, listener: ExitListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def install_signal_handlers(
        self, signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM)
    ) -> None:
        """Route the given signals on the running loop to ``shutdown()``."""
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.add_signal_handler(sig, self._on_shutdown_signal, sig)
        self._signal_loop = loop
        self._installed_signals = tuple(signals)

    def remove_signal_handlers(self) -> None:
        if self._signal_loop is None:
            return
        for sig in self._installed_signals:
            self._signal_loop.remove_signal_handler(sig)
        self._signal_loop = None
        self._installed_signals = ()

    def _on_shutdown_signal(self, sig: int) -> None:
        self._log.warning("Received %s, shutting down managed processes", _signal_name(sig))
        if self._signal_loop is None:
            return
        if self._shutdown_task is None or self._shutdown_task.done():
            self._shutdown_task = self._signal_loop.create_task(self.shutdown())

    def destroy(self) -> None:
        """Detach listeners and signal handlers; refuse new spawns.

        Exit watchers keep running so that already-started children are
        still reaped.
        """
        self._listeners.clear()
        self.remove_signal_handlers()
        self._destroyed = True
        self._shutting_down = True
        _managers.discard(self)

    def _force_kill_live(self) -> None:
        for tracked in list(self._live.values()):
            with contextlib.suppress(ProcessError):
                self._signal(tracked, FORCE_SIGNAL)

    def __len__(self) -> int:
        return len(self._live)


def _signal_name(sig: int) -> str:
    try:
        return signal.Signals(sig).name
    except ValueError:
        return str(sig)


def _acquire_controlling_tty() -> None:
    """Runs in the child after setsid(): adopt stdin as controlling terminal."""
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


# Interpreter-exit sweep: SIGKILL whatever is still live in any manager.
_managers: weakref.WeakSet[ProcessLifecycleManager] = weakref.WeakSet()
_sweep_registered = False


def _register_for_exit_sweep(manager: ProcessLifecycleManager) -> None:
    global _sweep_registered
    _managers.add(manager)
    if not _sweep_registered:
        atexit.register(_sweep_at_exit)
        _sweep_registered = True


def _sweep_at_exit() -> None:
    for manager in list(_managers):
        manager._force_kill_live()
