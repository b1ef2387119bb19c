"""Exception taxonomy for the stdio bridge."""

from __future__ import annotations

from typing import Optional

from .constants import STATUS_FAILURE


class BridgeError(RuntimeError):
    """Base class for bridge failures."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class LoadError(BridgeError):
    """Module source could not be fetched, compiled or instantiated."""


class UnsupportedStreamError(BridgeError):
    """A hook was invoked with a stream id the bridge does not serve."""

    def __init__(self, stream_id: int) -> None:
        super().__init__(f"unsupported stream {stream_id}", code=STATUS_FAILURE)
        self.stream_id = stream_id


class MemoryBoundsError(BridgeError):
    """A hook was asked to access memory outside the module's allocation."""

    def __init__(self, addr: int, length: int, size: int) -> None:
        super().__init__(
            f"memory access out of bounds: addr=0x{addr:X} len={length} size={size}",
            code=STATUS_FAILURE,
        )
        self.addr = addr
        self.length = length
        self.size = size
        self.operation: Optional[str] = None

    def describe(self) -> str:
        return f"{self.operation}: {self}" if self.operation else str(self)


class EmptyQueueError(BridgeError):
    """Read attempted while nothing is queued for stream 0."""

    def __init__(self) -> None:
        super().__init__("input queue empty", code=STATUS_FAILURE)


class ModuleTrap(BridgeError):
    """The module's entry point trapped."""


class ProtocolError(BridgeError, ValueError):
    """Malformed message on the bridge channel."""


class ModuleExit(Exception):
    """Raised by the proc_exit shim to unwind the entry point."""

    def __init__(self, exit_code: int) -> None:
        super().__init__(f"module exited with status {exit_code}")
        self.exit_code = exit_code
