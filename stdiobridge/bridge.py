"""Bridge controller: buffering policy and event protocol for one session."""

from __future__ import annotations

import codecs
import logging
import threading
from typing import Any, Callable, Dict, Optional

from .config import BridgeConfig
from .constants import (
    EVENT_INIT,
    EVENT_STDERR,
    EVENT_STDOUT,
    LINE_TERMINATOR,
    STATE_CLOSED,
    STATE_FAULTED,
    STATE_IDLE,
    STATE_LOADING,
    STATE_READY,
    STDERR,
    STDOUT,
    STREAM_EVENT_KINDS,
)
from .errors import BridgeError, LoadError, MemoryBoundsError, ModuleTrap
from .host import ExecutionHost
from .protocol import make_event

logger = logging.getLogger(__name__)

EventSink = Callable[[Dict[str, Any]], None]
Executor = Callable[[Callable[[], None]], None]
HostFactory = Callable[["BridgeController", BridgeConfig], ExecutionHost]


def run_inline(task: Callable[[], None]) -> None:
    task()


def _default_host_factory(io: "BridgeController", config: BridgeConfig) -> ExecutionHost:
    return ExecutionHost(io, config=config)


class OutboundAccumulator:
    """Text buffer for one output stream.

    Bytes are decoded incrementally so a UTF-8 sequence split across two
    writes survives. A line-buffered accumulator releases everything up to
    and including its last line terminator and keeps the rest.
    """

    def __init__(self, stream_id: int, *, line_buffered: bool) -> None:
        self.stream_id = stream_id
        self.line_buffered = line_buffered
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def append(self, data: bytes) -> Optional[str]:
        text = self._decoder.decode(data)
        if not self.line_buffered:
            return text or None
        self._buffer += text
        cut = self._buffer.rfind(LINE_TERMINATOR)
        if cut < 0:
            return None
        released = self._buffer[: cut + 1]
        self._buffer = self._buffer[cut + 1 :]
        return released

    def flush(self) -> str:
        text = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        return text

    def reset(self) -> None:
        self._decoder.reset()
        self._buffer = ""


class InboundQueue:
    """Pending input for stream 0 as one contiguous byte buffer."""

    def __init__(self) -> None:
        self._pending = bytearray()

    def __len__(self) -> int:
        return len(self._pending)

    def __bool__(self) -> bool:
        return bool(self._pending)

    def append(self, text: str) -> None:
        self._pending += text.encode("utf-8")

    def take(self, capacity: int, *, retain_remainder: bool = True) -> bytes:
        data = bytes(self._pending[: max(capacity, 0)])
        if retain_remainder:
            del self._pending[: len(data)]
        else:
            self._pending.clear()
        return data

    def peek(self) -> bytes:
        return bytes(self._pending)

    def clear(self) -> None:
        self._pending.clear()


class BridgeController:
    """Mediates between a message channel and one :class:`ExecutionHost`.

    *sink* receives outbound event dicts. *executor* runs the boot task; the
    default runs it inline, :class:`~stdiobridge.worker.BridgeWorker` hands
    it to a dedicated thread.
    """

    def __init__(
        self,
        sink: EventSink,
        *,
        config: Optional[BridgeConfig] = None,
        executor: Optional[Executor] = None,
        host_factory: Optional[HostFactory] = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self._sink = sink
        self._executor = executor or run_inline
        self._host_factory = host_factory or _default_host_factory
        self._lock = threading.RLock()
        self._state = STATE_IDLE
        self._source_locator: Optional[str] = None
        self._host: Optional[ExecutionHost] = None
        self.stdout = OutboundAccumulator(STDOUT, line_buffered=True)
        self.stderr = OutboundAccumulator(STDERR, line_buffered=False)
        self.inbound = InboundQueue()

    @property
    def state(self) -> str:
        return self._state

    @property
    def source_locator(self) -> Optional[str]:
        return self._source_locator

    @property
    def host(self) -> Optional[ExecutionHost]:
        return self._host

    # ------------------------------------------------------------------
    # Outside-facing operations

    def on_external_input(self, source_locator: Optional[str], text_chunk: str) -> None:
        """Queue *text_chunk*; the first chunk of a session also boots the module."""
        with self._lock:
            if self._state == STATE_CLOSED:
                logger.debug("dropping %d chars of input for a closed session", len(text_chunk))
                return
            self.inbound.append(text_chunk)
            if self._state != STATE_IDLE:
                if source_locator and source_locator != self._source_locator:
                    logger.debug("ignoring source locator %s; session bound to %s", source_locator, self._source_locator)
                return
            self._state = STATE_LOADING
            self._source_locator = source_locator
        self._boot(source_locator)

    def emit(self, kind: str, text: str) -> None:
        event = make_event(kind, text)
        if self._state == STATE_CLOSED:
            return
        try:
            self._sink(event)
        except Exception:
            logger.exception("event sink failed for %s event", kind)

    def reload(self, source_locator: Optional[str] = None) -> None:
        """Retry loading after a fault; queued input is kept for the new instance."""
        with self._lock:
            if self._state != STATE_FAULTED:
                raise BridgeError(f"cannot reload a session in state '{self._state}'")
            locator = source_locator or self._source_locator
            old_host = self._host
            self._host = None
            self._state = STATE_LOADING
            self._source_locator = locator
            self.stdout.reset()
            self.stderr.reset()
        if old_host is not None:
            old_host.terminate()
        logger.info("reloading %s", locator)
        self._boot(locator)

    def close(self) -> None:
        """Tear the session down from any state."""
        with self._lock:
            if self._state == STATE_CLOSED:
                return
            previous = self._state
            tail = self.stdout.flush() if self.config.flush_on_close else ""
        if tail:
            self.emit(EVENT_STDOUT, tail)
        with self._lock:
            self._state = STATE_CLOSED
            host = self._host
            self.inbound.clear()
            self.stdout.reset()
            self.stderr.reset()
        if host is not None:
            host.terminate()
        logger.info("session for %s closed (was %s)", self._source_locator, previous)

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            host = self._host
            return {
                "state": self._state,
                "source_locator": self._source_locator,
                "pending_input": len(self.inbound),
                "pending_output": len(self.stdout.pending),
                "exit_code": host.exit_code if host is not None else None,
            }

    # ------------------------------------------------------------------
    # Host-facing operations (called on the module thread)

    def module_ready(self, source_locator: str) -> None:
        with self._lock:
            if self._state != STATE_LOADING:
                return
            self._state = STATE_READY
        self.emit(EVENT_INIT, source_locator)

    def append_output(self, stream_id: int, data: bytes) -> None:
        with self._lock:
            if self._state == STATE_CLOSED:
                return
            accumulator = self.stdout if stream_id == STDOUT else self.stderr
            text = accumulator.append(data)
        if text:
            self.emit(STREAM_EVENT_KINDS[stream_id], text)

    def has_input(self) -> bool:
        with self._lock:
            return self._state != STATE_CLOSED and bool(self.inbound)

    def take_input(self, capacity: int) -> bytes:
        with self._lock:
            return self.inbound.take(capacity, retain_remainder=self.config.retain_unread_input)

    def report_fault(self, error: BridgeError) -> None:
        if isinstance(error, ModuleTrap):
            self._fault(str(error))
        elif isinstance(error, MemoryBoundsError):
            self.emit(EVENT_STDERR, error.describe())
        else:
            self.emit(EVENT_STDERR, str(error))

    # ------------------------------------------------------------------
    # Internals

    def _boot(self, source_locator: Optional[str]) -> None:
        self._executor(lambda: self._load(source_locator))

    def _load(self, source_locator: Optional[str]) -> None:
        with self._lock:
            if self._state != STATE_LOADING:
                return
            host = self._host_factory(self, self.config)
            self._host = host
        logger.debug("booting %s", source_locator)
        try:
            host.load(source_locator)
        except LoadError as exc:
            self._discard_host(host)
            self._fault(f"Init error: {exc}")
        except Exception as exc:
            logger.exception("unexpected failure loading %s", source_locator)
            self._discard_host(host)
            self._fault(f"Init error: {exc}")

    def _discard_host(self, host: ExecutionHost) -> None:
        with self._lock:
            if self._host is host:
                self._host = None
        host.terminate()

    def _fault(self, message: str) -> None:
        with self._lock:
            if self._state == STATE_CLOSED:
                return
            self._state = STATE_FAULTED
        logger.warning("session for %s faulted: %s", self._source_locator, message)
        self.emit(EVENT_STDERR, message)
