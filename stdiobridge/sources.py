"""Resolve a module source locator into WebAssembly bytes."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import httpx
from wasmtime import WasmtimeError, wat2wasm

from .config import BridgeConfig
from .errors import LoadError

logger = logging.getLogger(__name__)

_REMOTE_SCHEMES = ("http", "https")


def is_remote(locator: str) -> bool:
    return urlparse(locator).scheme.lower() in _REMOTE_SCHEMES


def fetch_module_bytes(
    locator: Optional[str],
    *,
    config: Optional[BridgeConfig] = None,
    client: Optional[httpx.Client] = None,
) -> bytes:
    """Return the binary module named by *locator*.

    Accepts http(s) URLs, ``file://`` URLs and filesystem paths. Locators
    ending in ``.wat`` are treated as text format and compiled. Sources
    larger than ``config.max_module_bytes`` are refused before they are
    read in full.
    """
    cfg = config or BridgeConfig()
    if not locator or not str(locator).strip():
        raise LoadError("no module source locator given")
    locator = str(locator).strip()
    if is_remote(locator):
        payload = _fetch_remote(locator, cfg, client)
    else:
        payload = _read_local(locator, cfg.max_module_bytes)
    if urlparse(locator).path.lower().endswith(".wat"):
        try:
            payload = wat2wasm(payload.decode("utf-8"))
        except (UnicodeDecodeError, WasmtimeError) as exc:
            raise LoadError(f"invalid text module {locator}: {exc}") from exc
    logger.debug("fetched %d bytes from %s", len(payload), locator)
    return bytes(payload)


def _too_large(locator: str, size: int, limit: int) -> LoadError:
    return LoadError(f"module {locator} is {size} bytes, limit is {limit}")


def _fetch_remote(url: str, config: BridgeConfig, client: Optional[httpx.Client]) -> bytes:
    try:
        if client is not None:
            return _download(client, url, config)
        with httpx.Client(timeout=config.fetch_timeout, follow_redirects=True) as session:
            return _download(session, url, config)
    except httpx.HTTPStatusError as exc:
        raise LoadError(f"fetch {url} failed: HTTP {exc.response.status_code}") from exc
    except httpx.HTTPError as exc:
        raise LoadError(f"fetch {url} failed: {exc}") from exc


def _download(client: httpx.Client, url: str, config: BridgeConfig) -> bytes:
    limit = config.max_module_bytes
    with client.stream("GET", url, timeout=config.fetch_timeout, follow_redirects=True) as response:
        response.raise_for_status()
        declared = response.headers.get("content-length")
        if declared is not None and declared.isdigit() and int(declared) > limit:
            raise _too_large(url, int(declared), limit)
        payload = bytearray()
        for chunk in response.iter_bytes():
            payload += chunk
            if len(payload) > limit:
                raise _too_large(url, len(payload), limit)
    return bytes(payload)


def _read_local(locator: str, limit: int) -> bytes:
    parsed = urlparse(locator)
    if parsed.scheme.lower() == "file":
        path = Path(unquote(parsed.path))
    else:
        path = Path(locator).expanduser()
    try:
        size = path.stat().st_size
        if size > limit:
            raise _too_large(locator, size, limit)
        with path.open("rb") as handle:
            payload = handle.read(limit + 1)
    except OSError as exc:
        raise LoadError(f"cannot read module {locator}: {exc.strerror or exc}") from exc
    # the file may have grown since stat()
    if len(payload) > limit:
        raise _too_large(locator, len(payload), limit)
    return payload
