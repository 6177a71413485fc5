# simchain/conftest.py
import pytest
import pytest_asyncio
import wasmtime

from simchain.config import Config
from simchain.core import Success, TransactionRequest
from simchain.crypto import address_from_label, event_topic
from simchain.environment import Environment

# Counter contract used across the test suite.
#
# deploy: stores 42 in slot 1.
# call, by the first calldata byte:
#   1  increment slot 0, emit it as Incremented(uint256) and return it
#   2  return slot 0
#   3  revert with "INSUFFICIENT_OUTPUT"
#   4  spin forever
#   5  trap
#   6  return the caller address
#   7  return the block number (8 bytes, little endian)
#   anything else (or no calldata) reverts with empty data
COUNTER_TOPIC = event_topic("Incremented(uint256)")
_TOPIC_WAT = "".join(f"\\{b:02x}" for b in COUNTER_TOPIC)

COUNTER_WAT = rf"""
(module
  (import "env" "calldata_size" (func $calldata_size (result i32)))
  (import "env" "calldata_copy" (func $calldata_copy (param i32 i32 i32)))
  (import "env" "caller" (func $caller (param i32)))
  (import "env" "block_number" (func $block_number (result i64)))
  (import "env" "storage_load" (func $storage_load (param i32 i32)))
  (import "env" "storage_store" (func $storage_store (param i32 i32)))
  (import "env" "emit_log" (func $emit_log (param i32 i32 i32 i32)))
  (import "env" "finish" (func $finish (param i32 i32)))
  (import "env" "revert" (func $revert (param i32 i32)))
  (memory (export "memory") 1)
  (data (i32.const 64) "{_TOPIC_WAT}")
  (data (i32.const 256) "INSUFFICIENT_OUTPUT")

  (func (export "deploy")
    (i32.store8 (i32.const 127) (i32.const 1))
    (i32.store8 (i32.const 191) (i32.const 42))
    (call $storage_store (i32.const 96) (i32.const 160)))

  (func (export "call")
    (local $sel i32)
    (if (i32.eqz (call $calldata_size))
      (then (call $revert (i32.const 0) (i32.const 0))))
    (call $calldata_copy (i32.const 128) (i32.const 0) (i32.const 1))
    (local.set $sel (i32.load8_u (i32.const 128)))
    (if (i32.eq (local.get $sel) (i32.const 1))
      (then
        (call $storage_load (i32.const 0) (i32.const 32))
        (i32.store8 (i32.const 63) (i32.add (i32.load8_u (i32.const 63)) (i32.const 1)))
        (call $storage_store (i32.const 0) (i32.const 32))
        (call $emit_log (i32.const 1) (i32.const 64) (i32.const 32) (i32.const 32))
        (call $finish (i32.const 32) (i32.const 32))))
    (if (i32.eq (local.get $sel) (i32.const 2))
      (then
        (call $storage_load (i32.const 0) (i32.const 32))
        (call $finish (i32.const 32) (i32.const 32))))
    (if (i32.eq (local.get $sel) (i32.const 3))
      (then (call $revert (i32.const 256) (i32.const 19))))
    (if (i32.eq (local.get $sel) (i32.const 4))
      (then (loop $spin (br $spin))))
    (if (i32.eq (local.get $sel) (i32.const 5))
      (then unreachable))
    (if (i32.eq (local.get $sel) (i32.const 6))
      (then
        (call $caller (i32.const 192))
        (call $finish (i32.const 192) (i32.const 20))))
    (if (i32.eq (local.get $sel) (i32.const 7))
      (then
        (i64.store (i32.const 224) (call $block_number))
        (call $finish (i32.const 224) (i32.const 8))))
    (call $revert (i32.const 0) (i32.const 0))))
"""

INCREMENT = b"\x01"
GET = b"\x02"
FAIL = b"\x03"
SPIN = b"\x04"
TRAP = b"\x05"
WHO = b"\x06"
NUMBER = b"\x07"

ONE_ETHER = 10**18


@pytest.fixture(scope="session")
def counter_code():
    return wasmtime.wat2wasm(COUNTER_WAT)


@pytest.fixture
def alice():
    return address_from_label("alice")


@pytest.fixture
def bob():
    return address_from_label("bob")


@pytest_asyncio.fixture
async def env(alice, bob):
    """A running per-transaction environment with two funded wallets."""
    environment = Environment(accounts={alice: 1000 * ONE_ETHER, bob: 1000 * ONE_ETHER})
    await environment.start()
    yield environment
    await environment.stop()


@pytest_asyncio.fixture
async def batched_env(alice, bob):
    config = Config.default()
    config.chain.block_mode = "batched"
    environment = Environment(config=config, accounts={alice: 1000 * ONE_ETHER, bob: 1000 * ONE_ETHER})
    await environment.start()
    yield environment
    await environment.stop()


@pytest_asyncio.fixture
async def counter(env, alice, counter_code):
    """Address of a freshly deployed counter contract."""
    result = await env.send(TransactionRequest(sender=alice, data=counter_code))
    assert isinstance(result, Success), result
    return result.contract_address
