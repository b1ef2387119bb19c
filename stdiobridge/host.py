"""Execution host: one sandboxed WebAssembly module and its stdio hooks.

The host owns a private ``wasmtime`` engine per session so a teardown can
interrupt its entry point (epoch interruption) without touching any other
session. Only ``fd_write``/``fd_read`` carry data; the remaining WASI imports
are inert shims that let ordinary toolchain output instantiate.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from wasmtime import (
    Config,
    Engine,
    Func,
    FuncType,
    Instance,
    Linker,
    Memory,
    Module,
    Store,
    Trap,
    ValType,
    WasmtimeError,
)

from .config import BridgeConfig
from .constants import (
    FDSTAT,
    OUTPUT_STREAMS,
    STATUS_FAILURE,
    STATUS_OK,
    STDIN,
    STDIO_STREAMS,
    U32,
    WASI_FILETYPE_CHARACTER_DEVICE,
)
from .errors import (
    BridgeError,
    EmptyQueueError,
    LoadError,
    MemoryBoundsError,
    ModuleExit,
    ModuleTrap,
    UnsupportedStreamError,
)
from .memory import LinearMemory
from .sources import fetch_module_bytes

logger = logging.getLogger(__name__)

_U32_MASK = 0xFFFFFFFF
_RIGHT_FD_READ = 1 << 1
_RIGHT_FD_WRITE = 1 << 6


class HostIO(Protocol):
    """What the host needs from whoever owns the stream buffers."""

    def module_ready(self, source_locator: str) -> None: ...

    def append_output(self, stream_id: int, data: bytes) -> None: ...

    def has_input(self) -> bool: ...

    def take_input(self, capacity: int) -> bytes: ...

    def report_fault(self, error: BridgeError) -> None: ...


@dataclass
class ModuleInstance:
    source_locator: str
    store: Store
    instance: Instance
    memory: Memory
    entry: Func
    exit_code: Optional[int] = None


class ExecutionHost:
    """Load a module, wire its stdio imports and run its entry point once."""

    def __init__(
        self,
        io: HostIO,
        *,
        config: Optional[BridgeConfig] = None,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.io = io
        self.config = config or BridgeConfig()
        self._client = client
        engine_config = Config()
        engine_config.epoch_interruption = True
        self._engine = Engine(engine_config)
        self._instance: Optional[ModuleInstance] = None
        self._exit_code: Optional[int] = None
        self._loading = False
        self._terminated = False
        self._lock = threading.Lock()

    @property
    def instance(self) -> Optional[ModuleInstance]:
        return self._instance

    @property
    def exit_code(self) -> Optional[int]:
        return self._exit_code

    @property
    def terminated(self) -> bool:
        return self._terminated

    # ------------------------------------------------------------------
    # Lifecycle

    def load(self, source_locator: str) -> None:
        """Fetch, instantiate and start the module named by *source_locator*.

        Raises :class:`LoadError` for fetch, compile, link or export failures.
        A trap inside the entry point is reported through ``io.report_fault``.
        """
        with self._lock:
            if self._terminated:
                raise LoadError("host has been torn down")
            if self._loading or self._instance is not None:
                raise LoadError("a module is already loaded in this session")
            self._loading = True
        try:
            wasm = fetch_module_bytes(source_locator, config=self.config, client=self._client)
            instance = self._instantiate(source_locator, wasm)
        finally:
            with self._lock:
                self._loading = False
        with self._lock:
            if self._terminated:
                logger.debug("session closed while loading %s; not starting", source_locator)
                return
            self._instance = instance
        logger.info("loaded %s (%d bytes of memory)", source_locator, instance.memory.data_len(instance.store))
        self.io.module_ready(source_locator)
        self._run_entry(instance)

    def terminate(self) -> None:
        """Interrupt the running entry point and release the instance."""
        with self._lock:
            if self._terminated:
                return
            self._terminated = True
            self._instance = None
        # The running store traps at its next epoch check.
        self._engine.increment_epoch()

    def _instantiate(self, source_locator: str, wasm: bytes) -> ModuleInstance:
        try:
            module = Module(self._engine, wasm)
        except WasmtimeError as exc:
            raise LoadError(f"invalid module binary {source_locator}: {_first_line(exc)}") from exc
        store = Store(self._engine)
        store.set_epoch_deadline(1)
        linker = self._build_linker()
        try:
            instance = linker.instantiate(store, module)
        except (WasmtimeError, Trap) as exc:
            raise LoadError(f"cannot instantiate {source_locator}: {_first_line(exc)}") from exc
        exports = instance.exports(store)
        memory = _export(exports, self.config.memory_export)
        if not isinstance(memory, Memory):
            raise LoadError(f"{source_locator} does not export memory '{self.config.memory_export}'")
        entry = _export(exports, self.config.entry_point)
        if not isinstance(entry, Func):
            raise LoadError(f"{source_locator} does not export entry point '{self.config.entry_point}'")
        if entry.type(store).params:
            raise LoadError(f"entry point '{self.config.entry_point}' must take no arguments")
        return ModuleInstance(
            source_locator=source_locator,
            store=store,
            instance=instance,
            memory=memory,
            entry=entry,
        )

    def _run_entry(self, instance: ModuleInstance) -> None:
        try:
            instance.entry(instance.store)
        except ModuleExit as exc:
            self._record_exit(instance, exc.exit_code)
        except (Trap, WasmtimeError) as exc:
            if instance.exit_code is not None:
                # proc_exit unwinds as a trap on some wasmtime releases
                self._record_exit(instance, instance.exit_code)
            elif self._terminated:
                logger.debug("entry point of %s interrupted by teardown", instance.source_locator)
            else:
                logger.warning("entry point of %s trapped: %s", instance.source_locator, exc)
                self.io.report_fault(ModuleTrap(f"module trapped: {_first_line(exc)}"))
        else:
            self._record_exit(instance, 0)

    def _record_exit(self, instance: ModuleInstance, code: int) -> None:
        instance.exit_code = code
        self._exit_code = code
        logger.info("entry point of %s returned (status %d)", instance.source_locator, code)

    # ------------------------------------------------------------------
    # Import table

    def _build_linker(self) -> Linker:
        i32 = ValType.i32()
        ns = self.config.wasi_module
        linker = Linker(self._engine)
        io_type = FuncType([i32, i32, i32, i32], [i32])
        linker.define_func(ns, "fd_write", io_type, self._fd_write, access_caller=True)
        linker.define_func(ns, "fd_read", io_type, self._fd_read, access_caller=True)
        if self.config.wasi_shims:
            linker.define_func(ns, "proc_exit", FuncType([i32], []), self._proc_exit, access_caller=True)
            pair_type = FuncType([i32, i32], [i32])
            linker.define_func(ns, "args_sizes_get", pair_type, self._zero_sizes, access_caller=True)
            linker.define_func(ns, "environ_sizes_get", pair_type, self._zero_sizes, access_caller=True)
            linker.define_func(ns, "args_get", pair_type, _noop_pair)
            linker.define_func(ns, "environ_get", pair_type, _noop_pair)
            linker.define_func(ns, "fd_close", FuncType([i32], [i32]), _fd_close)
            linker.define_func(ns, "fd_fdstat_get", pair_type, self._fd_fdstat_get, access_caller=True)
        return linker

    def _memory_for(self, caller: Any) -> Optional[LinearMemory]:
        export = caller.get(self.config.memory_export)
        if not isinstance(export, Memory):
            logger.warning("host call without an exported memory '%s'", self.config.memory_export)
            return None
        return LinearMemory(export, caller)

    def _fd_write(self, caller: Any, fd: int, iovs: int, iovs_len: int, nwritten: int) -> int:
        memory = self._memory_for(caller)
        if memory is None:
            return STATUS_FAILURE
        return self.write_hook(memory, fd, iovs & _U32_MASK, iovs_len & _U32_MASK, nwritten & _U32_MASK)

    def _fd_read(self, caller: Any, fd: int, iovs: int, iovs_len: int, nread: int) -> int:
        memory = self._memory_for(caller)
        if memory is None:
            return STATUS_FAILURE
        return self.read_hook(memory, fd, iovs & _U32_MASK, iovs_len & _U32_MASK, nread & _U32_MASK)

    def _proc_exit(self, caller: Any, code: int) -> None:
        instance = self._instance
        if instance is not None:
            instance.exit_code = code
        raise ModuleExit(code)

    def _zero_sizes(self, caller: Any, count_ptr: int, size_ptr: int) -> int:
        memory = self._memory_for(caller)
        if memory is None:
            return STATUS_FAILURE
        try:
            memory.write_u32(count_ptr & _U32_MASK, 0)
            memory.write_u32(size_ptr & _U32_MASK, 0)
        except MemoryBoundsError as exc:
            self._memory_fault("sizes_get", exc)
            return _status(exc)
        return STATUS_OK

    def _fd_fdstat_get(self, caller: Any, fd: int, stat_ptr: int) -> int:
        if fd not in STDIO_STREAMS:
            return STATUS_FAILURE
        memory = self._memory_for(caller)
        if memory is None:
            return STATUS_FAILURE
        rights = _RIGHT_FD_READ if fd == STDIN else _RIGHT_FD_WRITE
        try:
            memory.write(stat_ptr & _U32_MASK, FDSTAT.pack(WASI_FILETYPE_CHARACTER_DEVICE, 0, rights, 0))
        except MemoryBoundsError as exc:
            self._memory_fault("fd_fdstat_get", exc)
            return _status(exc)
        return STATUS_OK

    # ------------------------------------------------------------------
    # Stdio hooks

    def write_hook(self, memory: LinearMemory, stream_id: int, vectors_ptr: int, vectors_len: int, out_ptr: int) -> int:
        """Gather one write call for stream 1 or 2 and hand it to the io owner."""
        try:
            if stream_id not in OUTPUT_STREAMS:
                raise UnsupportedStreamError(stream_id)
            vectors = memory.read_iovecs(vectors_ptr, vectors_len)
            memory.ensure_range(out_ptr, U32.size)
            data = b"".join(memory.read(buf, length) for buf, length in vectors)
            memory.write_u32(out_ptr, len(data))
        except UnsupportedStreamError as exc:
            logger.debug("fd_write: %s", exc)
            return _status(exc)
        except MemoryBoundsError as exc:
            self._memory_fault("fd_write", exc)
            return _status(exc)
        self.io.append_output(stream_id, data)
        return STATUS_OK

    def read_hook(self, memory: LinearMemory, stream_id: int, vectors_ptr: int, vectors_len: int, out_ptr: int) -> int:
        """Copy queued input into the module's vectors without blocking."""
        try:
            if stream_id != STDIN:
                raise UnsupportedStreamError(stream_id)
            vectors = memory.read_iovecs(vectors_ptr, vectors_len)
            memory.ensure_range(out_ptr, U32.size)
            if not self.io.has_input():
                memory.write_u32(out_ptr, 0)
                raise EmptyQueueError()
            data = self.io.take_input(sum(length for _, length in vectors))
            offset = 0
            for buf, length in vectors:
                if offset >= len(data):
                    break
                chunk = data[offset : offset + length]
                memory.write(buf, chunk)
                offset += len(chunk)
            memory.write_u32(out_ptr, offset)
        except (UnsupportedStreamError, EmptyQueueError) as exc:
            logger.debug("fd_read: %s", exc)
            return _status(exc)
        except MemoryBoundsError as exc:
            self._memory_fault("fd_read", exc)
            return _status(exc)
        return STATUS_OK

    def _memory_fault(self, op: str, exc: MemoryBoundsError) -> None:
        exc.operation = op
        logger.warning("%s", exc.describe())
        if self.config.report_memory_faults:
            self.io.report_fault(exc)


def _export(exports: Any, name: str) -> Any:
    try:
        return exports[name]
    except KeyError:
        return None


def _status(exc: BridgeError) -> int:
    return STATUS_FAILURE if exc.code is None else exc.code


def _noop_pair(first: int, second: int) -> int:
    return STATUS_OK


def _fd_close(fd: int) -> int:
    return STATUS_OK if fd in STDIO_STREAMS else STATUS_FAILURE


def _first_line(exc: BaseException) -> str:
    text = str(exc).strip()
    return text.splitlines()[0] if text else exc.__class__.__name__
