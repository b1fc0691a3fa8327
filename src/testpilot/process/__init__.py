"""Process lifecycle — spawning, group signalling and reaping of child processes.

Every process the engine starts goes through a ProcessLifecycleManager so
that nothing it spawns outlives a shutdown.
"""

from testpilot.process.manager import (
    ManagedProcess,
    ProcessLifecycleManager,
    ProcessStatus,
    SpawnOptions,
)
from testpilot.process.signals import (
    FORCE_SIGNAL,
    GRACEFUL_SIGNAL,
    HANGUP_SIGNAL,
    GroupTerminator,
    PosixGroupTerminator,
    WindowsGroupTerminator,
    default_terminator,
    terminate_group,
)

__all__ = [
    "FORCE_SIGNAL",
    "GRACEFUL_SIGNAL",
    "HANGUP_SIGNAL",
    "GroupTerminator",
    "ManagedProcess",
    "PosixGroupTerminator",
    "ProcessLifecycleManager",
    "ProcessStatus",
    "SpawnOptions",
    "WindowsGroupTerminator",
    "default_terminator",
    "terminate_group",
]
