"""Process-group signal delivery, abstracted per platform."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import Any, Protocol

from testpilot.errors import ProcessError

logger = logging.getLogger(__name__)

GRACEFUL_SIGNAL = signal.SIGTERM
FORCE_SIGNAL: int = getattr(signal, "SIGKILL", signal.SIGTERM)
# What a closing terminal delivers; interactive shells ignore SIGTERM
HANGUP_SIGNAL: int = getattr(signal, "SIGHUP", signal.SIGTERM)


class GroupTerminator(Protocol):
    """Signals a whole process group and sets up new groups at spawn time."""

    def terminate_group(self, pgid: int, sig: int) -> bool:
        """Deliver ``sig`` to the group. Returns False if the group is gone."""
        ...

    def group_exists(self, pgid: int) -> bool:
        """Whether the group still has members this process may signal."""
        ...

    def spawn_kwargs(self) -> dict[str, Any]:
        """Extra subprocess arguments that put the child in its own group."""
        ...


class PosixGroupTerminator:
    """``setsid`` at spawn, ``killpg`` to signal."""

    def terminate_group(self, pgid: int, sig: int) -> bool:
        try:
            os.killpg(pgid, sig)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", pgid)
            return False
        except PermissionError as e:
            raise ProcessError(f"Not permitted to signal process group {pgid}") from e
        return True

    def group_exists(self, pgid: int) -> bool:
        try:
            os.killpg(pgid, 0)
        except (ProcessLookupError, PermissionError):
            return False
        return True

    def spawn_kwargs(self) -> dict[str, Any]:
        return {"start_new_session": True}


class WindowsGroupTerminator:
    """New process group at spawn; CTRL_BREAK for graceful, ``taskkill /T`` otherwise."""

    def terminate_group(self, pgid: int, sig: int) -> bool:
        if sig == GRACEFUL_SIGNAL and hasattr(signal, "CTRL_BREAK_EVENT"):
            try:
                os.kill(pgid, signal.CTRL_BREAK_EVENT)
            except OSError:
                return False
            return True

        completed = subprocess.run(
            ["taskkill", "/PID", str(pgid), "/T", "/F"],
            capture_output=True,
            check=False,
        )
        return completed.returncode == 0

    def group_exists(self, pgid: int) -> bool:
        # taskkill /T walks the tree from a live leader only
        return False

    def spawn_kwargs(self) -> dict[str, Any]:
        return {"creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)}


def default_terminator() -> GroupTerminator:
    if os.name == "nt":
        return WindowsGroupTerminator()
    return PosixGroupTerminator()


def terminate_group(pgid: int, sig: int) -> bool:
    """Signal a process group with the platform's terminator."""
    return default_terminator().terminate_group(pgid, sig)
