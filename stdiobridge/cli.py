"""stdio-bridge command-line driver."""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from typing import Any, Dict, Iterable, Iterator, List, TextIO

from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from .config import BridgeConfig
from .constants import EVENT_INIT, EVENT_STDERR, EVENT_STDOUT, STATE_CLOSED, STATE_FAULTED
from .errors import ProtocolError
from .protocol import CloseMessage, StdinMessage, decode_line, encode_line, make_event, parse_message
from .worker import BridgeWorker

LOG = logging.getLogger("stdiobridge.cli")


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stdio-bridge",
        description="Run a WASI module with its standard streams bridged to line-buffered events",
    )
    parser.add_argument("module", help="Module source: path, file:// or http(s) URL (.wasm or .wat)")
    parser.add_argument("--json", action="store_true", help="Speak the bridge message protocol as JSON lines")
    parser.add_argument("--boot", action="store_true", help="Start the module before the first line of input")
    parser.add_argument(
        "--discard-unread",
        action="store_true",
        help="Drop queued input that a read could not hold instead of keeping it for the next read",
    )
    parser.add_argument(
        "--log-level",
        default=os.environ.get("STDIO_BRIDGE_LOG", "WARNING"),
        help="Logging level (default WARNING)",
    )
    return parser


def main(argv: List[str] | None = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.log_level)
    try:
        config = BridgeConfig.from_env(retain_unread_input=False if args.discard_unread else None)
    except ValueError as exc:
        print(f"stdio-bridge: {exc}", file=sys.stderr)
        return 2
    if args.json:
        return run_json(args.module, config, sys.stdin, sys.stdout, boot=args.boot)
    return run_interactive(args.module, config, sys.stdin, boot=args.boot)


def run_interactive(module: str, config: BridgeConfig, stdin: TextIO, *, boot: bool = False) -> int:
    """Forward typed lines as input and print the module's output."""
    worker = BridgeWorker(config=config, on_message=_print_event)
    if boot:
        worker.send_input("", module)
    lines: Iterable[str] = _prompt_lines() if stdin.isatty() else stdin
    for line in lines:
        if worker.state == STATE_CLOSED:
            break
        worker.send_input(line if line.endswith("\n") else line + "\n", module)
    return _finish(worker)


def run_json(module: str, config: BridgeConfig, stdin: TextIO, stdout: TextIO, *, boot: bool = False) -> int:
    """Relay JSON-lines messages from *stdin* and write events to *stdout*."""
    write_lock = threading.Lock()

    def _write(event: Dict[str, Any]) -> None:
        with write_lock:
            stdout.write(encode_line(event))
            stdout.flush()

    worker = BridgeWorker(config=config, on_message=_write)
    if boot:
        worker.send_input("", module)
    for raw in stdin:
        if not raw.strip():
            continue
        try:
            message = parse_message(decode_line(raw))
        except ProtocolError as exc:
            LOG.warning("dropping malformed message: %s", exc)
            _write(make_event(EVENT_STDERR, f"Protocol error: {exc}"))
            continue
        if isinstance(message, CloseMessage):
            worker.close()
            break
        if isinstance(message, StdinMessage) and message.source_locator is None:
            message.source_locator = module
        worker.post_message(message)
    return _finish(worker)


def _finish(worker: BridgeWorker) -> int:
    # Give a module that is still consuming input a chance to return.
    worker.join(worker.config.teardown_timeout)
    faulted = worker.state == STATE_FAULTED
    worker.close()
    return 1 if faulted else 0


def _prompt_lines() -> Iterator[str]:
    session: PromptSession = PromptSession("> ")
    while True:
        try:
            with patch_stdout():
                line = session.prompt()
        except (EOFError, KeyboardInterrupt):
            print()
            return
        yield line


def _print_event(event: Dict[str, Any]) -> None:
    kind = event.get("type")
    if kind == EVENT_STDOUT:
        sys.stdout.write(event.get("data", ""))
        sys.stdout.flush()
    elif kind == EVENT_STDERR:
        text = event.get("data", "")
        sys.stderr.write(text if text.endswith("\n") else text + "\n")
        sys.stderr.flush()
    elif kind == EVENT_INIT:
        LOG.info("module %s started", event.get("sourceLocator"))


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
