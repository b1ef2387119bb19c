"""Bridge configuration with environment overrides."""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

from .constants import DEFAULT_ENTRY_POINT, DEFAULT_MEMORY_EXPORT, WASI_MODULE

ENV_PREFIX = "STDIO_BRIDGE_"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class BridgeConfig:
    wasi_module: str = WASI_MODULE
    entry_point: str = DEFAULT_ENTRY_POINT
    memory_export: str = DEFAULT_MEMORY_EXPORT
    retain_unread_input: bool = True
    wasi_shims: bool = True
    report_memory_faults: bool = True
    fetch_timeout: float = 10.0
    max_module_bytes: int = 64 * 1024 * 1024
    teardown_timeout: float = 2.0
    flush_on_close: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "BridgeConfig":
        """Build a config from ``STDIO_BRIDGE_*`` variables, then apply *overrides*."""
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for item in fields(cls):
            key = ENV_PREFIX + item.name.upper()
            raw = env.get(key)
            if raw is None or raw.strip() == "":
                continue
            values[item.name] = _coerce(key, raw.strip(), type(getattr(cls, item.name)))
        config = cls(**values)
        if overrides:
            config = replace(config, **{k: v for k, v in overrides.items() if v is not None})
        return config


def _coerce(key: str, raw: str, kind: type) -> Any:
    if kind is bool:
        lowered = raw.lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise ValueError(f"{key}: expected a boolean, got {raw!r}")
    if kind is int:
        try:
            return int(raw, 0)
        except ValueError:
            raise ValueError(f"{key}: expected an integer, got {raw!r}") from None
    if kind is float:
        try:
            return float(raw)
        except ValueError:
            raise ValueError(f"{key}: expected a number, got {raw!r}") from None
    return raw
