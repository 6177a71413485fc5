# simchain/wasm_runtime.py
"""
WebAssembly contract runtime backed by wasmtime.

Contracts are modules exporting `memory` and `call` (and optionally
`deploy`). They reach the chain through host functions imported from the
`env` module. Execution is metered with wasmtime fuel; host functions add
their own gas on top.
"""
import logging
from dataclasses import dataclass, field

import wasmtime
from wasmtime import FuncType, ValType

from .core import BlockContext, ZERO_WORD
from .crypto import generate_hash

logger = logging.getLogger(__name__)

# Host gas schedule
GAS_STORAGE_READ = 2_100
GAS_STORAGE_WRITE_NEW = 20_000
GAS_STORAGE_WRITE_UPDATE = 2_900
GAS_LOG = 375
GAS_LOG_TOPIC = 375
GAS_LOG_BYTE = 8
GAS_COPY_WORD = 3

MAX_TOPICS = 4
I64_MAX = 2**63 - 1

SUCCESS = "success"
REVERT = "revert"
OUT_OF_GAS = "out-of-gas"
HALTED = "halted"


class HostAbort(Exception):
    """Unwinds the wasm stack from inside a host function."""


@dataclass
class ExecutionOutcome:
    status: str
    return_data: bytes = b""
    fuel_used: int = 0
    host_gas: int = 0
    logs: list = field(default_factory=list)
    error: str = ""

    @property
    def gas_used(self) -> int:
        return self.fuel_used + self.host_gas


def _words(length: int) -> int:
    return (length + 31) // 32


class HostContext:
    """
    The chain as one executing contract sees it.

    Storage reads and writes go to `state`, a StateDelta owned by the
    caller. Host functions record why execution stopped on the context
    before raising HostAbort.
    """

    def __init__(self, state, address: bytes, caller: bytes, value: int,
                 calldata: bytes, block: BlockContext, gas_budget: int):
        self.state = state
        self.address = address
        self.caller = caller
        self.value = value
        self.calldata = calldata
        self.block = block
        self.gas_budget = gas_budget

        self.host_gas = 0
        self.logs = []
        self.return_data = b""
        self.finished = False
        self.reverted = False
        self.out_of_gas = False
        self.halt_reason = None

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    def charge(self, amount: int):
        self.host_gas += amount
        if self.host_gas > self.gas_budget:
            self.out_of_gas = True
            raise HostAbort("out of gas")

    def halt(self, reason: str):
        self.halt_reason = reason
        raise HostAbort(reason)

    def _memory(self, caller: wasmtime.Caller) -> wasmtime.Memory:
        memory = caller.get("memory")
        if not isinstance(memory, wasmtime.Memory):
            self.halt("contract does not export memory")
        return memory

    def read(self, caller: wasmtime.Caller, ptr: int, length: int) -> bytes:
        ptr &= 0xFFFFFFFF
        length &= 0xFFFFFFFF
        memory = self._memory(caller)
        if ptr + length > memory.data_len(caller):
            self.halt(f"memory read out of bounds: {ptr}+{length}")
        return bytes(memory.read(caller, ptr, ptr + length))

    def write(self, caller: wasmtime.Caller, ptr: int, data: bytes):
        ptr &= 0xFFFFFFFF
        memory = self._memory(caller)
        if ptr + len(data) > memory.data_len(caller):
            self.halt(f"memory write out of bounds: {ptr}+{len(data)}")
        memory.write(caller, data, ptr)

    # ------------------------------------------------------------------ #
    # Host functions
    # ------------------------------------------------------------------ #
    def calldata_size(self, caller):
        return len(self.calldata)

    def calldata_copy(self, caller, dest, offset, length):
        offset &= 0xFFFFFFFF
        length &= 0xFFFFFFFF
        self.charge(GAS_COPY_WORD * _words(length))
        chunk = self.calldata[offset:offset + length]
        self.write(caller, dest, chunk.ljust(length, b"\x00"))

    def get_caller(self, caller, dest):
        self.charge(GAS_COPY_WORD)
        self.write(caller, dest, self.caller)

    def get_address(self, caller, dest):
        self.charge(GAS_COPY_WORD)
        self.write(caller, dest, self.address)

    def callvalue(self, caller):
        return min(self.value, I64_MAX)

    def block_number(self, caller):
        return min(self.block.number, I64_MAX)

    def timestamp(self, caller):
        return min(self.block.timestamp, I64_MAX)

    def storage_load(self, caller, key_ptr, dest_ptr):
        self.charge(GAS_STORAGE_READ)
        key = self.read(caller, key_ptr, 32)
        self.write(caller, dest_ptr, self.state.storage_at(self.address, key))

    def storage_store(self, caller, key_ptr, value_ptr):
        key = self.read(caller, key_ptr, 32)
        value = self.read(caller, value_ptr, 32)
        current = self.state.storage_at(self.address, key)
        if current == ZERO_WORD and value != ZERO_WORD:
            self.charge(GAS_STORAGE_WRITE_NEW)
        else:
            self.charge(GAS_STORAGE_WRITE_UPDATE)
        self.state.set_storage(self.address, key, value)

    def balance(self, caller, addr_ptr):
        self.charge(GAS_COPY_WORD)
        address = self.read(caller, addr_ptr, 20)
        return min(self.state.balance_of(address), I64_MAX)

    def emit_log(self, caller, topic_count, topics_ptr, data_ptr, data_len):
        if not 0 <= topic_count <= MAX_TOPICS:
            self.halt(f"invalid topic count {topic_count}")
        data_len &= 0xFFFFFFFF
        self.charge(GAS_LOG + GAS_LOG_TOPIC * topic_count + GAS_LOG_BYTE * data_len)
        raw_topics = self.read(caller, topics_ptr, 32 * topic_count)
        topics = tuple(raw_topics[i * 32:(i + 1) * 32] for i in range(topic_count))
        data = self.read(caller, data_ptr, data_len)
        self.logs.append((self.address, topics, data))

    def finish(self, caller, ptr, length):
        self.return_data = self.read(caller, ptr, length)
        self.finished = True
        raise HostAbort("finish")

    def revert(self, caller, ptr, length):
        self.return_data = self.read(caller, ptr, length)
        self.reverted = True
        raise HostAbort("revert")

    def imports(self) -> dict:
        i32, i64 = ValType.i32(), ValType.i64()
        return {
            "calldata_size": (self.calldata_size, FuncType([], [i32])),
            "calldata_copy": (self.calldata_copy, FuncType([i32, i32, i32], [])),
            "caller": (self.get_caller, FuncType([i32], [])),
            "address": (self.get_address, FuncType([i32], [])),
            "callvalue": (self.callvalue, FuncType([], [i64])),
            "block_number": (self.block_number, FuncType([], [i64])),
            "timestamp": (self.timestamp, FuncType([], [i64])),
            "storage_load": (self.storage_load, FuncType([i32, i32], [])),
            "storage_store": (self.storage_store, FuncType([i32, i32], [])),
            "balance": (self.balance, FuncType([i32], [i64])),
            "emit_log": (self.emit_log, FuncType([i32, i32, i32, i32], [])),
            "finish": (self.finish, FuncType([i32, i32], [])),
            "revert": (self.revert, FuncType([i32, i32], [])),
        }


class WASMRuntime:
    def __init__(self):
        config = wasmtime.Config()
        config.consume_fuel = True
        self.engine = wasmtime.Engine(config)
        # {keccak(code): Module}
        self.module_cache = {}

    def load(self, wasm_bytes: bytes) -> wasmtime.Module:
        key = generate_hash(wasm_bytes)
        if key not in self.module_cache:
            self.module_cache[key] = wasmtime.Module(self.engine, wasm_bytes)
        return self.module_cache[key]

    def validate(self, wasm_bytes: bytes) -> bool:
        try:
            wasmtime.Module.validate(self.engine, wasm_bytes)
        except wasmtime.WasmtimeError:
            return False
        return True

    def instantiate(self, store: wasmtime.Store, wasm_bytes: bytes, imports: dict) -> wasmtime.Instance:
        module = self.load(wasm_bytes)
        linker = wasmtime.Linker(self.engine)
        for name, (func, func_type) in imports.items():
            linker.define_func("env", name, func_type, func, access_caller=True)
        return linker.instantiate(store, module)

    def execute(self, wasm_bytes: bytes, entry: str, host: HostContext, fuel: int,
                optional: bool = False) -> ExecutionOutcome:
        """
        Runs export `entry` of the contract with `fuel` units available.

        With optional=True a module that does not export `entry` succeeds
        without running anything (constructors are optional).
        """
        store = wasmtime.Store(self.engine)
        store.set_fuel(max(fuel, 0))
        trap = None
        out_of_fuel = False

        try:
            instance = self.instantiate(store, wasm_bytes, host.imports())
            exports = instance.exports(store)
            try:
                func = exports[entry]
            except KeyError:
                func = None
            if func is None:
                if optional:
                    return ExecutionOutcome(SUCCESS, fuel_used=fuel - store.get_fuel())
                host.halt_reason = f"contract does not export '{entry}'"
            elif not isinstance(func, wasmtime.Func):
                host.halt_reason = f"export '{entry}' is not a function"
            else:
                func(store)
        except HostAbort:
            pass
        except wasmtime.Trap as e:
            trap = e
            out_of_fuel = e.trap_code == wasmtime.TrapCode.OUT_OF_FUEL
        except wasmtime.WasmtimeError as e:
            trap = e

        remaining = store.get_fuel()
        fuel_used = fuel - remaining
        if trap is not None and remaining == 0 and not host.finished:
            out_of_fuel = True

        outcome = ExecutionOutcome(
            SUCCESS,
            return_data=host.return_data,
            fuel_used=fuel_used,
            host_gas=host.host_gas,
            logs=list(host.logs),
        )
        if host.out_of_gas or out_of_fuel:
            outcome.status = OUT_OF_GAS
            outcome.error = "out of gas"
        elif host.reverted:
            outcome.status = REVERT
        elif host.halt_reason is not None:
            outcome.status = HALTED
            outcome.error = host.halt_reason
        elif trap is not None and not host.finished:
            outcome.status = HALTED
            outcome.error = str(trap).splitlines()[0] if str(trap) else type(trap).__name__
        if outcome.status != SUCCESS:
            outcome.logs = []
            if outcome.status != REVERT:
                outcome.return_data = b""
        logger.debug(f"wasm {entry} -> {outcome.status} (fuel {fuel_used}, host gas {host.host_gas})")
        return outcome
