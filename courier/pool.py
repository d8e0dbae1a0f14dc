"""Reusable byte buffers for copying data to and from remote hosts.

A deployment copies the same runtime bundle to many hosts at once, so
transfer routines borrow their copy buffers from a `BytesPool` instead of
allocating a fresh one per file.
"""

from collections.abc import Iterator
from contextlib import contextmanager
import io
import threading
from typing import BinaryIO, Protocol

DEFAULT_SIZE = 32 * 1024


class Writer(Protocol):
    def write(self, data: bytes, /) -> object: ...


class BytesPool:
    """A thread-safe pool of byte slices and growable buffers."""

    def __init__(self, size: int = DEFAULT_SIZE, limit: int = 64) -> None:
        """Initializes the pool.

        Args:
            size: Default length of the byte slices handed out.
            limit: Upper bound of idle objects kept per kind.
        """
        self.size = size
        self.limit = limit
        self._lock = threading.Lock()
        self._slices: list[bytearray] = []
        self._buffers: list[io.BytesIO] = []

    @contextmanager
    def bytes(self, size: int = 0) -> Iterator[memoryview]:
        """Borrows a byte slice of `size` bytes (the pool default when 0).

        The slice goes back to the pool when the block exits, whether it
        exits normally or by an exception.
        """
        size = size if size > 0 else self.size
        with self._lock:
            bs = self._slices.pop() if self._slices else None
        if bs is None or len(bs) < size:
            if bs is not None:
                self._put_slice(bs)
            bs = bytearray(max(size, self.size))
        try:
            yield memoryview(bs)[:size]
        finally:
            self._put_slice(bs)

    @contextmanager
    def buffer(self) -> Iterator[io.BytesIO]:
        """Borrows an empty growable buffer."""
        with self._lock:
            buf = self._buffers.pop() if self._buffers else io.BytesIO()
        try:
            yield buf
        finally:
            buf.seek(0)
            buf.truncate()
            with self._lock:
                if len(self._buffers) < self.limit:
                    self._buffers.append(buf)

    def _put_slice(self, bs: bytearray) -> None:
        with self._lock:
            if len(self._slices) < self.limit:
                self._slices.append(bs)

    def copy(self, dst: Writer, src: BinaryIO, size: int = 0) -> int:
        """Copies `src` into `dst` through a pooled slice.

        Returns:
            The number of bytes copied.
        """
        total = 0
        with self.bytes(size) as buf:
            while True:
                n = src.readinto(buf)  # type: ignore[attr-defined]
                if not n:
                    break
                dst.write(bytes(buf[:n]))
                total += n
        return total


class LockedWriter:
    """Serializes writes of several producers into one buffer."""

    def __init__(self, out: Writer) -> None:
        self.out = out
        self._lock = threading.Lock()

    def write(self, data: bytes) -> int:
        with self._lock:
            self.out.write(data)
        return len(data)


default_pool = BytesPool()
