"""
Pytest fixtures for stdiobridge tests.

Test modules are written in WebAssembly text format and compiled into the
test's tmp_path on demand, so no prebuilt binaries are needed.
"""
from pathlib import Path
from typing import Any, Dict, List

import pytest
from wasmtime import Limits, Memory, MemoryType, Store, wat2wasm

from stdiobridge.bridge import BridgeController
from stdiobridge.memory import LinearMemory

from wat_modules import MODULES


@pytest.fixture
def module_path(tmp_path: Path):
    """Return a builder: name -> path of the compiled test module."""

    def _build(name: str) -> str:
        path = tmp_path / f"{name}.wasm"
        if not path.exists():
            path.write_bytes(wat2wasm(MODULES[name]))
        return str(path)

    return _build


@pytest.fixture
def events() -> List[Dict[str, Any]]:
    return []


@pytest.fixture
def controller(events):
    return BridgeController(events.append)


@pytest.fixture
def memory() -> LinearMemory:
    store = Store()
    mem = Memory(store, MemoryType(Limits(1, None)))
    return LinearMemory(mem, store)
