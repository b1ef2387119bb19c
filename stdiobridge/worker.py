"""Thread host for a bridge session.

A :class:`BridgeWorker` plays the part of the background execution context:
the module runs on a dedicated daemon thread and the outside world talks to
it only through messages (``post_message`` in, ``on_message`` or
``get_message`` out).
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from typing import Any, Callable, Dict, List, Optional, Union

from .bridge import BridgeController, HostFactory
from .config import BridgeConfig
from .protocol import CloseMessage, InboundMessage, StdinMessage, parse_message

logger = logging.getLogger(__name__)

MessageHandler = Callable[[Dict[str, Any]], None]

_worker_ids = itertools.count(1)


class BridgeWorker:
    """One session: a controller plus the thread its module runs on."""

    def __init__(
        self,
        *,
        config: Optional[BridgeConfig] = None,
        on_message: Optional[MessageHandler] = None,
        name: Optional[str] = None,
        host_factory: Optional[HostFactory] = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.name = name or f"stdio-bridge-{next(_worker_ids)}"
        self._on_message = on_message
        self._outbox: "queue.Queue[Dict[str, Any]]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._thread_lock = threading.Lock()
        self.controller = BridgeController(
            self._deliver,
            config=self.config,
            executor=self._spawn,
            host_factory=host_factory,
        )

    def __enter__(self) -> "BridgeWorker":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def state(self) -> str:
        return self.controller.state

    @property
    def is_running(self) -> bool:
        thread = self._thread
        return thread is not None and thread.is_alive()

    # ------------------------------------------------------------------
    # Inbound

    def post_message(self, message: Union[Dict[str, Any], InboundMessage]) -> None:
        parsed = parse_message(message) if isinstance(message, dict) else message
        if isinstance(parsed, StdinMessage):
            self.controller.on_external_input(parsed.source_locator, parsed.data)
        elif isinstance(parsed, CloseMessage):
            self.close()
        else:
            raise TypeError(f"unsupported message {parsed!r}")

    def send_input(self, data: str, source_locator: Optional[str] = None) -> None:
        self.post_message(StdinMessage(data=data, source_locator=source_locator))

    # ------------------------------------------------------------------
    # Outbound

    def get_message(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """Next queued event, or ``None`` once *timeout* expires."""
        try:
            return self._outbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain_messages(self) -> List[Dict[str, Any]]:
        events: List[Dict[str, Any]] = []
        while True:
            try:
                events.append(self._outbox.get_nowait())
            except queue.Empty:
                return events

    def _deliver(self, event: Dict[str, Any]) -> None:
        if self._on_message is not None:
            self._on_message(event)
        else:
            self._outbox.put(event)

    # ------------------------------------------------------------------
    # Module thread

    def _spawn(self, task: Callable[[], None]) -> None:
        with self._thread_lock:
            previous = self._thread
            thread = threading.Thread(target=self._run, args=(task, previous), name=self.name, daemon=True)
            self._thread = thread
        thread.start()

    def _run(self, task: Callable[[], None], previous: Optional[threading.Thread]) -> None:
        if previous is not None and previous.is_alive():
            previous.join(self.config.teardown_timeout)
        logger.debug("%s: module thread started", self.name)
        task()
        logger.debug("%s: module thread finished", self.name)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the module's entry point to return; True when it has."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def close(self, timeout: Optional[float] = None) -> bool:
        """Tear the session down and wait for the module thread to stop."""
        self.controller.close()
        wait = self.config.teardown_timeout if timeout is None else timeout
        thread = self._thread
        if thread is None or thread is threading.current_thread():
            return True
        thread.join(wait)
        if thread.is_alive():
            logger.warning("%s: module thread still running %.1fs after teardown", self.name, wait)
            return False
        return True
