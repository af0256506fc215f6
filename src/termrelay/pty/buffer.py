"""Scrollback buffer for relayed terminal output."""

from __future__ import annotations

import threading

DEFAULT_CAPACITY = 100 * 1024  # 100KB


class ScrollbackBuffer:
    """Thread-safe bounded window over a session's raw output bytes.

    Bytes are appended at the tail. When the window grows past
    ``capacity`` the oldest bytes are dropped from the head, so the buffer
    always holds the last ``capacity`` bytes ever appended. Chunk
    boundaries are not preserved.

    The raw bytes are stored untouched (ANSI escape sequences and all) so
    a late-joining observer can replay them into its terminal emulator.
    """

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._capacity = capacity
        self._data = bytearray()
        self._total_bytes: int = 0  # Total bytes ever appended
        self._lock = threading.Lock()

    def append(self, data: bytes) -> None:
        """Append bytes, trimming the head to stay within capacity."""
        if not data:
            return
        with self._lock:
            self._total_bytes += len(data)
            if len(data) >= self._capacity:
                # The chunk alone fills the window
                self._data[:] = data[-self._capacity :]
                return
            self._data += data
            overflow = len(self._data) - self._capacity
            if overflow > 0:
                # bytearray deletes from the front without reallocating
                del self._data[:overflow]

    def snapshot(self) -> bytes:
        """Return a copy of the current window."""
        with self._lock:
            return bytes(self._data)

    def read_tail(self, n: int = 4096) -> bytes:
        """Return the last ``n`` bytes of the window."""
        with self._lock:
            return bytes(self._data[-n:]) if n > 0 else b""

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def size(self) -> int:
        """Current number of bytes in the window."""
        with self._lock:
            return len(self._data)

    @property
    def total_bytes(self) -> int:
        """Total number of bytes ever appended."""
        with self._lock:
            return self._total_bytes

    def clear(self) -> None:
        """Drop all buffered bytes."""
        with self._lock:
            self._data.clear()
            self._total_bytes = 0

    def __len__(self) -> int:
        return self.size
