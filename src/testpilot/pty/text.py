"""Terminal output cleaning — ANSI stripping and binary sanitization."""

from __future__ import annotations

import codecs
import re

# CSI sequences, OSC sequences (BEL or ST terminated), then lone two-byte escapes
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)

# An escape sequence whose final byte has not arrived yet
_PARTIAL_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?)?\Z")

# Longer unterminated sequences are treated as garbage
_MAX_PENDING_ESCAPE = 4096


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences from text."""
    return _ANSI_RE.sub("", text)


def sanitize_binary_output(text: str) -> str:
    """Remove binary garbage from terminal output.

    Keeps printable chars, tabs and newlines. Carriage returns are
    dropped so that CRLF from the line discipline collapses to LF.
    """
    cleaned = []
    for ch in text:
        cp = ord(ch)
        if ch in ("\t", "\n"):
            cleaned.append(ch)
        elif cp >= 32 and not 0x7F <= cp < 0xA0 and not 0xFFF9 <= cp < 0xFFFC:
            cleaned.append(ch)
    return "".join(cleaned)


def clean_terminal_output(text: str) -> str:
    return sanitize_binary_output(strip_ansi(text))


def split_incomplete_escape(text: str) -> tuple[str, str]:
    """Split off a trailing escape sequence that is still arriving.

    Returns ``(complete, pending)``. ``pending`` belongs in front of the
    next chunk.
    """
    match = _PARTIAL_ESCAPE_RE.search(text)
    if match is None or len(text) - match.start() > _MAX_PENDING_ESCAPE:
        return text, ""
    return text[: match.start()], text[match.start() :]


class OutputCleaner:
    """Incrementally decode and clean raw PTY reads.

    UTF-8 characters and escape sequences split across reads are held
    back until the rest arrives, or until ``flush()`` at end of output.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""

    def feed(self, data: bytes) -> str:
        text, self._pending = split_incomplete_escape(self._pending + self._decoder.decode(data))
        return clean_terminal_output(text)

    def flush(self) -> str:
        text = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        return clean_terminal_output(text)
