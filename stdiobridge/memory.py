"""Bounds-checked access to a module's linear memory."""

from __future__ import annotations

from typing import Any, List, Tuple

from wasmtime import Memory

from .constants import IOVEC, U32
from .errors import MemoryBoundsError


class LinearMemory:
    """View over one exported memory, valid for the duration of a hook call.

    Every access re-reads the current size since the module may have grown
    its memory between calls.
    """

    __slots__ = ("_memory", "_store")

    def __init__(self, memory: Memory, store: Any) -> None:
        self._memory = memory
        self._store = store

    def size(self) -> int:
        return self._memory.data_len(self._store)

    def ensure_range(self, addr: int, length: int) -> None:
        size = self.size()
        if addr < 0 or length < 0 or addr + length > size:
            raise MemoryBoundsError(addr, length, size)

    def read(self, addr: int, length: int) -> bytes:
        self.ensure_range(addr, length)
        if length == 0:
            return b""
        return bytes(self._memory.read(self._store, addr, addr + length))

    def write(self, addr: int, data: bytes) -> None:
        self.ensure_range(addr, len(data))
        if data:
            self._memory.write(self._store, data, addr)

    def read_u32(self, addr: int) -> int:
        return U32.unpack(self.read(addr, U32.size))[0]

    def write_u32(self, addr: int, value: int) -> None:
        self.write(addr, U32.pack(value & 0xFFFFFFFF))

    def read_iovecs(self, ptr: int, count: int) -> List[Tuple[int, int]]:
        """Decode *count* (buf, len) pairs at *ptr*; every range is checked."""
        if count < 0:
            raise MemoryBoundsError(ptr, count, self.size())
        table = self.read(ptr, count * IOVEC.size)
        vectors = [IOVEC.unpack_from(table, idx * IOVEC.size) for idx in range(count)]
        for buf, length in vectors:
            self.ensure_range(buf, length)
        return vectors
