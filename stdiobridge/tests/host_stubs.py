"""Stand-in for the controller side of an ExecutionHost."""

from typing import List, Tuple

from stdiobridge.bridge import InboundQueue


class RecordingIO:
    def __init__(self, pending: str = "") -> None:
        self.queue = InboundQueue()
        self.queue.append(pending)
        self.writes: List[Tuple[int, bytes]] = []
        self.faults: list = []
        self.ready: List[str] = []

    def module_ready(self, source_locator):
        self.ready.append(source_locator)

    def append_output(self, stream_id, data):
        self.writes.append((stream_id, data))

    def has_input(self):
        return bool(self.queue)

    def take_input(self, capacity):
        return self.queue.take(capacity)

    def report_fault(self, error):
        self.faults.append(error)

    def output(self, stream_id: int) -> bytes:
        return b"".join(data for sid, data in self.writes if sid == stream_id)
