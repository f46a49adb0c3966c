"""Small helpers shared by services and routers."""

from __future__ import annotations

import re
import time

# CSI sequences, OSC sequences (terminated by BEL or ST) and lone ESC pairs
_ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)

# A sequence that has started but not finished at the end of a chunk
_PARTIAL_ANSI_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*\x1b?)?\Z")

_MAX_PENDING = 256


def strip_ansi(text: str) -> str:
    """Remove terminal escape sequences from shell output."""
    return _ANSI_RE.sub("", text)


class AnsiStripper:
    """Streaming :func:`strip_ansi` for output that arrives in chunks.

    An escape sequence cut by a chunk boundary is held back and completed
    by the next chunk instead of leaking through half-stripped.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, chunk: str) -> str:
        text = self._pending + chunk
        self._pending = ""
        match = _PARTIAL_ANSI_RE.search(text)
        if match and len(text) - match.start() <= _MAX_PENDING:
            self._pending = text[match.start():]
            text = text[:match.start()]
        return strip_ansi(text)


def now_ms() -> int:
    return int(time.time() * 1000)
