import pytest

from stdiobridge.bridge import BridgeController, InboundQueue, OutboundAccumulator
from stdiobridge.config import BridgeConfig
from stdiobridge.errors import BridgeError, MemoryBoundsError
from stdiobridge.host import ExecutionHost


def _kinds(events):
    return [event["type"] for event in events]


def _data(events, kind):
    return [event["data"] for event in events if event["type"] == kind]


# ----------------------------------------------------------------------
# Buffers


def test_line_buffer_releases_through_last_newline():
    acc = OutboundAccumulator(1, line_buffered=True)
    assert acc.append(b"ab") is None
    assert acc.append(b"c\nd\ne") == "abc\nd\n"
    assert acc.pending == "e"
    assert acc.flush() == "e"
    assert acc.pending == ""


def test_line_buffer_joins_split_utf8():
    acc = OutboundAccumulator(1, line_buffered=True)
    assert acc.append(b"\xc3") is None
    assert acc.append(b"\xa9\n") == "é\n"


def test_unbuffered_stream_passes_text_through():
    acc = OutboundAccumulator(2, line_buffered=False)
    assert acc.append(b"no newline") == "no newline"
    assert acc.append(b"") is None


def test_invalid_utf8_is_replaced():
    acc = OutboundAccumulator(2, line_buffered=False)
    assert acc.append(b"\xff!") == "\ufffd!"


def test_inbound_queue_retains_remainder():
    queue = InboundQueue()
    queue.append("hello")
    assert queue.take(2) == b"he"
    assert queue.peek() == b"llo"
    assert len(queue) == 3


def test_inbound_queue_can_discard_remainder():
    queue = InboundQueue()
    queue.append("hello")
    assert queue.take(2, retain_remainder=False) == b"he"
    assert not queue


def test_inbound_queue_encodes_utf8():
    queue = InboundQueue()
    queue.append("é")
    assert len(queue) == 2


# ----------------------------------------------------------------------
# Sessions


def test_first_input_boots_and_emits_init_first(controller, events, module_path):
    path = module_path("hello")

    controller.on_external_input(path, "")

    assert events == [
        {"type": "init", "sourceLocator": path},
        {"type": "stdout", "data": "hello world\n"},
    ]
    assert controller.state == "ready"


def test_partial_line_is_held_back(controller, events, module_path):
    controller.on_external_input(module_path("partial"), "")

    assert _kinds(events) == ["init"]
    assert controller.stdout.pending == "abc"


def test_stderr_is_forwarded_unbuffered(controller, events, module_path):
    controller.on_external_input(module_path("warn"), "")

    assert _data(events, "stderr") == ["warn: x"]


def test_stderr_does_not_wait_for_stdout_line(controller, events, module_path):
    controller.on_external_input(module_path("interleaved"), "")

    assert events[1:] == [
        {"type": "stderr", "data": "e1"},
        {"type": "stdout", "data": "ab\n"},
    ]


def test_split_utf8_sequence_survives(controller, events, module_path):
    controller.on_external_input(module_path("utf8_split"), "")

    assert _data(events, "stdout") == ["é\n"]


def test_input_queued_before_boot_is_visible_to_module(controller, events, module_path):
    controller.on_external_input(module_path("echo"), "ping\n")

    assert _data(events, "stdout") == ["ping\n"]


def test_unread_input_is_kept_for_next_read(controller, events, module_path):
    controller.on_external_input(module_path("split_read"), "abcdefgh\n")

    assert _data(events, "stdout") == ["abcdefgh\n"]
    assert len(controller.inbound) == 0


def test_unread_input_can_be_discarded(events, module_path):
    controller = BridgeController(events.append, config=BridgeConfig(retain_unread_input=False))

    controller.on_external_input(module_path("split_read"), "abcdefgh\n")

    assert _data(events, "stdout") == []
    assert controller.stdout.pending == "abcd"


def test_module_loads_once(events, module_path):
    pending = []
    controller = BridgeController(events.append, executor=pending.append)
    path = module_path("echo")

    controller.on_external_input(path, "AB")
    controller.on_external_input(module_path("hello"), "CD\n")
    assert controller.state == "loading"
    assert len(pending) == 1

    pending.pop()()

    assert events == [
        {"type": "init", "sourceLocator": path},
        {"type": "stdout", "data": "ABCD\n"},
    ]
    assert controller.source_locator == path


def test_later_input_does_not_reload(controller, events, module_path):
    path = module_path("hello")
    controller.on_external_input(path, "")
    host = controller.host

    controller.on_external_input(path, "more")

    assert controller.host is host
    assert _kinds(events).count("init") == 1


def test_bad_locator_reports_one_stderr_event(controller, events, tmp_path):
    controller.on_external_input(str(tmp_path / "missing.wasm"), "x")

    assert _kinds(events) == ["stderr"]
    assert events[0]["data"].startswith("Init error: ")
    assert controller.state == "faulted"
    assert controller.host is None


def test_missing_locator_faults(controller, events):
    controller.on_external_input(None, "x")

    assert _kinds(events) == ["stderr"]
    assert "no module source locator" in events[0]["data"]


def test_faulted_session_ignores_new_locators(controller, events, tmp_path, module_path):
    controller.on_external_input(str(tmp_path / "missing.wasm"), "")
    controller.on_external_input(module_path("hello"), "")

    assert _kinds(events) == ["stderr"]
    assert controller.state == "faulted"


def test_trap_faults_session(controller, events, module_path):
    path = module_path("trap")
    controller.on_external_input(path, "")

    assert _kinds(events) == ["init", "stderr"]
    assert events[1]["data"].startswith("module trapped")
    assert controller.state == "faulted"


def test_memory_fault_keeps_session_ready(controller, events, module_path):
    controller.on_external_input(module_path("out_of_bounds"), "")

    assert _kinds(events) == ["init", "stderr", "stdout"]
    assert events[1]["data"].startswith("fd_write: memory access out of bounds")
    assert events[2]["data"] == "bounds\n"
    assert controller.state == "ready"


def test_unsupported_stream_is_silent(controller, events, module_path):
    controller.on_external_input(module_path("bad_stream"), "")

    assert _data(events, "stdout") == ["unsupported\n"]
    assert _data(events, "stderr") == []


def test_reload_after_fault(controller, events, tmp_path, module_path):
    controller.on_external_input(str(tmp_path / "missing.wasm"), "")
    path = module_path("hello")

    controller.reload(path)

    assert controller.state == "ready"
    assert events[1:] == [
        {"type": "init", "sourceLocator": path},
        {"type": "stdout", "data": "hello world\n"},
    ]


def test_reload_requires_fault(controller, module_path):
    with pytest.raises(BridgeError):
        controller.reload(module_path("hello"))
    controller.on_external_input(module_path("hello"), "")
    with pytest.raises(BridgeError):
        controller.reload()


def test_close_discards_partial_output(controller, events, module_path):
    controller.on_external_input(module_path("partial"), "")
    host = controller.host

    controller.close()

    assert controller.state == "closed"
    assert _kinds(events) == ["init"]
    assert host.terminated
    controller.on_external_input(module_path("hello"), "ignored")
    assert len(controller.inbound) == 0
    assert _kinds(events) == ["init"]


def test_close_can_flush_partial_output(events, module_path):
    controller = BridgeController(events.append, config=BridgeConfig(flush_on_close=True))
    controller.on_external_input(module_path("partial"), "")

    controller.close()

    assert _data(events, "stdout") == ["abc"]


def test_close_is_idempotent(controller):
    controller.close()
    controller.close()
    assert controller.state == "closed"


def test_sink_failure_does_not_break_session(module_path):
    def sink(event):
        raise RuntimeError("sink down")

    controller = BridgeController(sink)
    controller.on_external_input(module_path("hello"), "")

    assert controller.state == "ready"


def test_report_fault_with_memory_error_uses_operation(controller, events):
    err = MemoryBoundsError(10, 20, 5)
    err.operation = "fd_read"

    controller.report_fault(err)

    assert events == [{"type": "stderr", "data": "fd_read: " + str(err)}]
    assert controller.state == "idle"


def test_host_factory_is_used(events, module_path):
    created = []

    def factory(io, config):
        host = ExecutionHost(io, config=config)
        created.append(host)
        return host

    controller = BridgeController(events.append, host_factory=factory)
    controller.on_external_input(module_path("hello"), "")

    assert created == [controller.host]


def test_snapshot(controller, module_path):
    controller.on_external_input(module_path("partial"), "zz")

    snap = controller.snapshot()

    assert snap["state"] == "ready"
    assert snap["pending_input"] == 2
    assert snap["pending_output"] == 3
    assert snap["exit_code"] == 0
