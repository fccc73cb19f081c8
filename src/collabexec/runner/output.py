from __future__ import annotations

from collections import deque
from typing import Deque


class BoundedOutput:
    """Line ring buffer for one output stream.

    Keeps the newest `max_lines` lines; older lines are dropped and the
    buffer is marked truncated. A line longer than `max_line_chars` is split
    so a newline-free flood cannot grow the pending buffer without bound.
    """

    def __init__(self, max_lines: int = 1000, max_line_chars: int = 4096):
        self.max_lines = max(1, max_lines)
        self.max_line_chars = max(1, max_line_chars)
        self._lines: Deque[str] = deque(maxlen=self.max_lines)
        self._pending = ""
        self._seen = 0
        self.truncated = False

    def feed(self, chunk) -> None:
        if isinstance(chunk, bytes):
            chunk = chunk.decode("utf-8", errors="replace")
        if not chunk:
            return
        data = self._pending + chunk
        parts = data.split("\n")
        self._pending = parts.pop()
        for line in parts:
            self._push(line)
        while len(self._pending) > self.max_line_chars:
            self._push(self._pending[: self.max_line_chars])
            self._pending = self._pending[self.max_line_chars:]

    def _push(self, line: str) -> None:
        self._seen += 1
        if self._seen > self.max_lines:
            self.truncated = True
        self._lines.append(line)

    def text(self) -> str:
        lines = list(self._lines)
        if self._pending:
            lines.append(self._pending)
            # the pending tail pushes out the oldest kept line
            if len(lines) > self.max_lines:
                lines = lines[-self.max_lines:]
                self.truncated = True
        return "\n".join(lines)

    @property
    def line_count(self) -> int:
        return len(self._lines) + (1 if self._pending else 0)
