"""Wire messages exchanged between the outside world and a bridge session.

Inbound::

    {"type": "stdin", "sourceLocator": "...", "data": "..."}
    {"type": "close"}

Outbound::

    {"type": "init", "sourceLocator": "..."}
    {"type": "stdout", "data": "..."}
    {"type": "stderr", "data": "..."}

On a byte stream each message is one JSON object per line.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from .constants import (
    EVENT_INIT,
    EVENT_KINDS,
    EVENT_STDERR,
    EVENT_STDOUT,
    MESSAGE_KINDS,
    MSG_CLOSE,
    MSG_STDIN,
)
from .errors import ProtocolError

# Locator key sent by older page scripts.
_LEGACY_LOCATOR_KEY = "serverPath"


@dataclass
class StdinMessage:
    data: str
    source_locator: Optional[str] = None
    type: str = MSG_STDIN

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"type": self.type, "data": self.data}
        if self.source_locator is not None:
            payload["sourceLocator"] = self.source_locator
        return payload


@dataclass
class CloseMessage:
    type: str = MSG_CLOSE

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type}


@dataclass
class InitEvent:
    source_locator: str
    type: str = EVENT_INIT

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "sourceLocator": self.source_locator}


@dataclass
class StdoutEvent:
    data: str
    type: str = EVENT_STDOUT

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}


@dataclass
class StderrEvent:
    data: str
    type: str = EVENT_STDERR

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}


InboundMessage = Union[StdinMessage, CloseMessage]
BridgeEvent = Union[InitEvent, StdoutEvent, StderrEvent]


def make_event(kind: str, text: str) -> Dict[str, Any]:
    """Build the outbound dict for *kind*; ``init`` carries the locator."""
    if kind == EVENT_INIT:
        return InitEvent(text).to_dict()
    if kind == EVENT_STDOUT:
        return StdoutEvent(text).to_dict()
    if kind == EVENT_STDERR:
        return StderrEvent(text).to_dict()
    raise ValueError(f"unknown event kind '{kind}' (expected one of {', '.join(EVENT_KINDS)})")


def parse_message(raw: Dict[str, Any]) -> InboundMessage:
    if not isinstance(raw, dict):
        raise ProtocolError(f"message must be an object, got {type(raw).__name__}")
    kind = raw.get("type")
    if kind == MSG_STDIN:
        data = raw.get("data", "")
        if not isinstance(data, str):
            raise ProtocolError("stdin message 'data' must be a string")
        locator = raw.get("sourceLocator", raw.get(_LEGACY_LOCATOR_KEY))
        if locator is not None and not isinstance(locator, str):
            raise ProtocolError("stdin message 'sourceLocator' must be a string")
        return StdinMessage(data=data, source_locator=locator)
    if kind == MSG_CLOSE:
        return CloseMessage()
    raise ProtocolError(f"unknown message type {kind!r} (expected one of {', '.join(MESSAGE_KINDS)})")


def parse_event(raw: Dict[str, Any]) -> BridgeEvent:
    if not isinstance(raw, dict):
        raise ProtocolError(f"event must be an object, got {type(raw).__name__}")
    kind = raw.get("type")
    if kind == EVENT_INIT:
        return InitEvent(str(raw.get("sourceLocator") or ""))
    if kind == EVENT_STDOUT:
        return StdoutEvent(str(raw.get("data") or ""))
    if kind == EVENT_STDERR:
        return StderrEvent(str(raw.get("data") or ""))
    raise ProtocolError(f"unknown event type {kind!r}")


def encode_line(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":")) + "\n"


def decode_line(line: Union[str, bytes]) -> Dict[str, Any]:
    if isinstance(line, bytes):
        try:
            line = line.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ProtocolError(f"line is not UTF-8: {exc.reason}") from exc
    text = line.strip()
    if not text:
        raise ProtocolError("empty line")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"invalid JSON: {exc.msg}") from exc
    if not isinstance(payload, dict):
        raise ProtocolError("line must hold a JSON object")
    return payload
