"""Bounded trailing buffer of a session's terminal output."""

from __future__ import annotations

from collections import deque


class OutputBuffer:
    """
    Keeps the most recent ``max_chars`` characters a process has written.

    Replayed in full to every connection that (re)attaches. The oldest
    characters are dropped first once the cap is exceeded.
    """

    def __init__(self, max_chars: int = 400_000) -> None:
        if max_chars <= 0:
            raise ValueError("max_chars must be positive")
        self.max_chars = max_chars
        self._chunks: deque[str] = deque()
        self._length = 0
        self._total_chars = 0

    def append(self, text: str) -> None:
        """Append output, trimming from the front to stay within the cap."""
        if not text:
            return
        self._total_chars += len(text)

        if len(text) >= self.max_chars:
            self._chunks.clear()
            self._chunks.append(text[-self.max_chars :])
            self._length = self.max_chars
            return

        self._chunks.append(text)
        self._length += len(text)

        excess = self._length - self.max_chars
        while excess > 0:
            head = self._chunks[0]
            if len(head) <= excess:
                self._chunks.popleft()
                self._length -= len(head)
                excess -= len(head)
            else:
                self._chunks[0] = head[excess:]
                self._length -= excess
                excess = 0

    def snapshot(self) -> str:
        """The buffered output as one string."""
        if len(self._chunks) > 1:
            joined = "".join(self._chunks)
            self._chunks.clear()
            self._chunks.append(joined)
        return self._chunks[0] if self._chunks else ""

    @property
    def total_chars(self) -> int:
        """Characters ever appended."""
        return self._total_chars

    @property
    def dropped_chars(self) -> int:
        """Characters trimmed off the front by the cap."""
        return self._total_chars - self._length

    def clear(self) -> None:
        self._chunks.clear()
        self._length = 0
        self._total_chars = 0

    def __len__(self) -> int:
        return self._length
