"""PTY terminals — interactive shell sessions on pseudo-terminals.

Each session runs in its own process group through the process
lifecycle manager, with output buffering, ANSI stripping and guaranteed
cleanup.
"""

from testpilot.pty.buffer import RollingBuffer
from testpilot.pty.terminal import PROMPT_PATTERN, PtyTerminal, ShellOptions, TerminalDimensions
from testpilot.pty.text import (
    OutputCleaner,
    clean_terminal_output,
    sanitize_binary_output,
    split_incomplete_escape,
    strip_ansi,
)

__all__ = [
    "OutputCleaner",
    "PROMPT_PATTERN",
    "PtyTerminal",
    "RollingBuffer",
    "ShellOptions",
    "TerminalDimensions",
    "clean_terminal_output",
    "sanitize_binary_output",
    "split_incomplete_escape",
    "strip_ansi",
]
