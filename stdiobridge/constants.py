"""Shared constants for the stdio bridge (stream ids, status codes, wire kinds)."""

from __future__ import annotations

import struct

WASI_MODULE = "wasi_snapshot_preview1"
DEFAULT_ENTRY_POINT = "_start"
DEFAULT_MEMORY_EXPORT = "memory"

STDIN = 0
STDOUT = 1
STDERR = 2

OUTPUT_STREAMS = (STDOUT, STDERR)
STDIO_STREAMS = (STDIN, STDOUT, STDERR)

STATUS_OK = 0
STATUS_FAILURE = -1

# fd_fdstat_get filetype for the stdio descriptors
WASI_FILETYPE_CHARACTER_DEVICE = 2

IOVEC = struct.Struct("<II")  # (buf_ptr, buf_len)
U32 = struct.Struct("<I")
FDSTAT = struct.Struct("<BxHxxxxQQ")  # filetype, flags, rights_base, rights_inheriting

LINE_TERMINATOR = "\n"

EVENT_INIT = "init"
EVENT_STDOUT = "stdout"
EVENT_STDERR = "stderr"
EVENT_KINDS = (EVENT_INIT, EVENT_STDOUT, EVENT_STDERR)

MSG_STDIN = "stdin"
MSG_CLOSE = "close"
MESSAGE_KINDS = (MSG_STDIN, MSG_CLOSE)

STREAM_EVENT_KINDS = {
    STDOUT: EVENT_STDOUT,
    STDERR: EVENT_STDERR,
}

STATE_IDLE = "idle"
STATE_LOADING = "loading"
STATE_READY = "ready"
STATE_FAULTED = "faulted"
STATE_CLOSED = "closed"
