"""Bounded output sink for REPL sessions."""

from __future__ import annotations

import asyncio
import re
import threading
from collections import deque


class OutputSink:
    """Thread-safe, size-bounded record of the text a session produced.

    Chunks are kept in arrival order. Once more than ``max_size``
    characters are held, the oldest characters are dropped (a chunk at
    the front may be cut partway) so exactly the most recent ``max_size``
    remain.

    Positions are tracked with ``total_chars``, the number of characters
    ever appended. A caller can remember it before submitting input and
    later pass it to ``read_from()`` to get just the new output.

    An ``asyncio.Event`` is set whenever new data arrives, allowing
    consumers to ``await`` instead of polling. Call ``attach_loop()``
    once from the asyncio thread to enable this.
    """

    def __init__(self, max_size: int = 100_000) -> None:
        if max_size < 0:
            raise ValueError("max_size must be >= 0")
        self.max_size = max_size
        self._chunks: deque[str] = deque()
        self._size: int = 0
        self._total_chars: int = 0
        self._seq: int = 0  # one per append
        self._lock = threading.Lock()
        self._data_event: asyncio.Event | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach_loop(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Attach an asyncio event loop so append() can signal waiters.

        Must be called from the asyncio thread (or pass an explicit loop).
        """
        self._loop = loop or asyncio.get_running_loop()
        self._data_event = asyncio.Event()

    def append(self, chunk: str) -> None:
        """Append a chunk, then drop the oldest text beyond ``max_size``."""
        if not chunk:
            return
        with self._lock:
            self._chunks.append(chunk)
            self._size += len(chunk)
            self._total_chars += len(chunk)
            self._seq += 1
            self._evict(self.max_size)
        if self._data_event is not None and self._loop is not None:
            self._loop.call_soon_threadsafe(self._data_event.set)

    def truncate(self, max_size: int) -> None:
        """Keep at most the last ``max_size`` characters. 0 empties the sink."""
        if max_size < 0:
            raise ValueError("max_size must be >= 0")
        with self._lock:
            self._evict(max_size)

    def clear(self) -> None:
        self.truncate(0)

    def _evict(self, limit: int) -> None:
        # Caller holds the lock.
        while self._size > limit and self._chunks:
            excess = self._size - limit
            head = self._chunks[0]
            if len(head) <= excess:
                self._chunks.popleft()
                self._size -= len(head)
            else:
                self._chunks[0] = head[excess:]
                self._size -= excess

    async def wait_for_data(self, timeout: float | None = None) -> bool:
        """Wait until new data is appended (or timeout).

        Returns True if data arrived, False on timeout.
        """
        if self._data_event is None:
            await asyncio.sleep(0.05)
            return True
        try:
            await asyncio.wait_for(self._data_event.wait(), timeout=timeout)
            self._data_event.clear()
            return True
        except asyncio.TimeoutError:
            return False

    def read_all(self) -> str:
        with self._lock:
            return "".join(self._chunks)

    def read_from(self, mark: int) -> str:
        """Return retained text appended after position ``mark``.

        ``mark`` is an earlier value of ``total_chars``. If part of that
        text has already been evicted, only the retained part is returned.
        """
        with self._lock:
            content = "".join(self._chunks)
            retained_from = self._total_chars - self._size
        offset = max(mark - retained_from, 0)
        return content[offset:]

    def tail(self, num_chars: int = 2000) -> str:
        """Return the last ``num_chars`` characters."""
        if num_chars <= 0:
            return ""
        with self._lock:
            content = "".join(self._chunks)
        return content[-num_chars:]

    def search(self, pattern: str, limit: int = 50) -> list[tuple[int, str]]:
        """Search retained lines for a regex.

        Returns list of (line_number, line_text) tuples. An invalid
        pattern matches nothing.
        """
        try:
            compiled = re.compile(pattern)
        except re.error:
            return []

        results = []
        for i, line in enumerate(self.read_all().split("\n")):
            if compiled.search(line):
                results.append((i, line))
                if len(results) >= limit:
                    break
        return results

    @property
    def size(self) -> int:
        """Characters currently retained."""
        with self._lock:
            return self._size

    @property
    def total_chars(self) -> int:
        """Characters ever appended."""
        with self._lock:
            return self._total_chars

    @property
    def seq(self) -> int:
        with self._lock:
            return self._seq

    def __len__(self) -> int:
        return self.size
