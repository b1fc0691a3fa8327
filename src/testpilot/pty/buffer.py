"""Rolling output buffer for PTY sessions."""

from __future__ import annotations

import asyncio
import re
from collections import deque


class RollingBuffer:
    """Line-oriented ring buffer for terminal output.

    Holds at most ``max_lines`` complete lines; the oldest are evicted
    first. Text after the last newline is kept as a *partial* line (a
    shell prompt, for example) and is visible to every reader until a
    newline completes it.

    Lines are numbered globally from the first line ever appended, so a
    ``mark()`` taken before writing a command stays valid across
    evictions and ``since(mark)`` returns exactly what arrived after it.

    Not thread-safe: feed it from the event loop thread only.
    """

    def __init__(self, max_lines: int = 10_000) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._partial = ""
        self._total_lines = 0  # Complete lines ever appended
        self._data_event = asyncio.Event()

    def feed(self, text: str) -> None:
        """Append already-cleaned text, splitting on newlines."""
        if not text:
            return
        pieces = (self._partial + text).split("\n")
        self._partial = pieces.pop()
        self._lines.extend(pieces)
        self._total_lines += len(pieces)
        self._data_event.set()

    def append(self, line: str) -> None:
        """Append one complete line, flushing any partial line first."""
        self.feed(line + "\n")

    def notify(self) -> None:
        """Wake waiters without adding data (e.g. on end of stream)."""
        self._data_event.set()

    async def wait_for_data(self, timeout: float | None = None) -> bool:
        """Wait until new data is fed. Returns False on timeout.

        Check your condition before calling this; there is no await
        between the check and the wait, so nothing can slip through.
        """
        self._data_event.clear()
        try:
            await asyncio.wait_for(self._data_event.wait(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    def mark(self) -> int:
        """Cursor for a later ``since()`` call."""
        return self._total_lines

    def since(self, mark: int) -> str:
        """Text from line ``mark`` onward, including the partial line.

        The line that was partial when the mark was taken is included in
        full. Lines already evicted are silently skipped.
        """
        first_kept = self._total_lines - len(self._lines)
        start = max(mark, first_kept) - first_kept
        lines = [self._lines[i] for i in range(start, len(self._lines))]
        if self._partial:
            lines.append(self._partial)
        return "\n".join(lines)

    def read_tail(self, n: int | None = None) -> list[str]:
        """The last ``n`` lines (all if None), partial line last."""
        lines = list(self._lines)
        if self._partial:
            lines.append(self._partial)
        if n is None:
            return lines
        if n <= 0:
            return []
        return lines[-n:]

    def read_all(self) -> str:
        return "\n".join(self.read_tail())

    def search(self, pattern: str | re.Pattern[str], limit: int = 50) -> list[tuple[int, str]]:
        """Lines matching a regex, as (global_line_number, text) tuples."""
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        first_kept = self._total_lines - len(self._lines)
        results = []
        for i, line in enumerate(self.read_tail()):
            if compiled.search(line):
                results.append((first_kept + i, line))
                if len(results) >= limit:
                    break
        return results

    @property
    def partial(self) -> str:
        return self._partial

    @property
    def line_count(self) -> int:
        """Complete lines currently held."""
        return len(self._lines)

    @property
    def total_lines(self) -> int:
        """Complete lines ever appended."""
        return self._total_lines

    @property
    def max_lines(self) -> int:
        return self._lines.maxlen or 0

    def clear(self) -> None:
        """Drop buffered content. Existing marks stay valid."""
        self._lines.clear()
        self._partial = ""

    def __len__(self) -> int:
        return len(self._lines) + (1 if self._partial else 0)
