"""
stdiobridge - virtual stdio for a sandboxed WebAssembly module.

A module compiled against WASI preview 1 runs inside a wasmtime store on its
own thread; its standard streams are bridged to plain message dicts:

    host.py      → execution host: loading, fd_write/fd_read hooks, teardown
    bridge.py    → controller: line buffering, input queue, event emission
    worker.py    → per-session thread host and message endpoints
    protocol.py  → wire message dataclasses and JSON-lines framing
    memory.py    → bounds-checked linear memory access
    sources.py   → module source locators (paths, file:// and http(s) URLs)
"""

from .config import BridgeConfig  # noqa: F401
from .errors import (  # noqa: F401
    BridgeError,
    EmptyQueueError,
    LoadError,
    MemoryBoundsError,
    ModuleTrap,
    ProtocolError,
    UnsupportedStreamError,
)
from .host import ExecutionHost, ModuleInstance  # noqa: F401
from .bridge import BridgeController, InboundQueue, OutboundAccumulator  # noqa: F401
from .protocol import (  # noqa: F401
    CloseMessage,
    InitEvent,
    StderrEvent,
    StdinMessage,
    StdoutEvent,
    make_event,
    parse_event,
    parse_message,
)
from .worker import BridgeWorker  # noqa: F401

__all__ = [
    "BridgeConfig",
    "BridgeError",
    "EmptyQueueError",
    "LoadError",
    "MemoryBoundsError",
    "ModuleTrap",
    "ProtocolError",
    "UnsupportedStreamError",
    "ExecutionHost",
    "ModuleInstance",
    "BridgeController",
    "InboundQueue",
    "OutboundAccumulator",
    "CloseMessage",
    "InitEvent",
    "StderrEvent",
    "StdinMessage",
    "StdoutEvent",
    "make_event",
    "parse_event",
    "parse_message",
    "BridgeWorker",
]

__version__ = "0.1.0"
