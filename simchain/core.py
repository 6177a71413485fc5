"""
Core data structures for the simulated chain.
"""
import enum
from dataclasses import dataclass, field
from typing import Optional

import msgpack

from .crypto import generate_hash
from .utils.encoding import decode_error_string

ZERO_ADDRESS = b"\x00" * 20
ZERO_WORD = b"\x00" * 32

# Gas schedule
TX_BASE_GAS = 21_000
TX_CREATE_GAS = 32_000
TX_DATA_ZERO_GAS = 4
TX_DATA_NONZERO_GAS = 16


def intrinsic_gas(data: bytes, is_create: bool) -> int:
    """Gas charged before any code runs."""
    zeros = data.count(0)
    gas = TX_BASE_GAS + zeros * TX_DATA_ZERO_GAS + (len(data) - zeros) * TX_DATA_NONZERO_GAS
    if is_create:
        gas += TX_CREATE_GAS
    return gas


class Account:
    def __init__(self,
                 balance: int = 0,
                 nonce: int = 0,
                 code: bytes = b"",
                 storage: Optional[dict] = None):
        self.balance = balance
        self.nonce = nonce
        self.code = code
        # {32-byte key: 32-byte value}; zero values are never stored
        self.storage = storage if storage is not None else {}

    def copy(self, with_storage: bool = True) -> 'Account':
        return Account(
            balance=self.balance,
            nonce=self.nonce,
            code=self.code,
            storage=dict(self.storage) if with_storage else {},
        )

    def is_empty(self) -> bool:
        return self.balance == 0 and self.nonce == 0 and not self.code and not self.storage

    def to_dict(self) -> dict:
        return {
            "balance": self.balance,
            "nonce": self.nonce,
            "code": self.code,
            "storage": dict(self.storage),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Account':
        return cls(
            balance=data.get("balance", 0),
            nonce=data.get("nonce", 0),
            code=data.get("code", b""),
            storage=dict(data.get("storage", {})),
        )

    def __eq__(self, other):
        if not isinstance(other, Account):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (f"Account(balance={self.balance}, nonce={self.nonce}, "
                f"code={len(self.code)} bytes, storage={len(self.storage)} slots)")


@dataclass(frozen=True)
class TransactionRequest:
    """A transaction as submitted by a caller. `to=None` creates a contract."""
    sender: bytes
    to: Optional[bytes] = None
    value: int = 0
    data: bytes = b""
    gas_limit: int = 10_000_000
    gas_price: int = 0
    nonce: Optional[int] = None

    @property
    def is_create(self) -> bool:
        return self.to is None

    def upfront_cost(self) -> int:
        return self.value + self.gas_limit * self.gas_price


@dataclass(frozen=True)
class BlockContext:
    """What a transaction sees of the block it executes in."""
    number: int
    timestamp: int
    gas_limit: int = 30_000_000


@dataclass
class LogEvent:
    address: bytes
    topics: tuple
    data: bytes
    block_number: int = 0
    transaction_index: int = 0
    log_index: int = 0
    transaction_hash: bytes = b""

    def to_dict(self) -> dict:
        return {
            "address": self.address,
            "topics": list(self.topics),
            "data": self.data,
            "block_number": self.block_number,
            "transaction_index": self.transaction_index,
            "log_index": self.log_index,
            "transaction_hash": self.transaction_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'LogEvent':
        return cls(
            address=data["address"],
            topics=tuple(data["topics"]),
            data=data["data"],
            block_number=data["block_number"],
            transaction_index=data["transaction_index"],
            log_index=data["log_index"],
            transaction_hash=data["transaction_hash"],
        )


class FailureKind(str, enum.Enum):
    NONCE_MISMATCH = "nonce-mismatch"
    INSUFFICIENT_FUNDS = "insufficient-funds"
    INTRINSIC_GAS = "intrinsic-gas"
    OUT_OF_GAS = "out-of-gas"
    HALTED = "halted"
    ENVIRONMENT_CLOSED = "environment-closed"
    QUEUE_FULL = "queue-full"

    @property
    def is_validation(self) -> bool:
        return self in (FailureKind.NONCE_MISMATCH, FailureKind.INSUFFICIENT_FUNDS,
                        FailureKind.INTRINSIC_GAS)

    @property
    def is_system(self) -> bool:
        return self in (FailureKind.ENVIRONMENT_CLOSED, FailureKind.QUEUE_FULL)


@dataclass
class Success:
    return_data: bytes = b""
    gas_used: int = 0
    logs: list = field(default_factory=list)
    contract_address: Optional[bytes] = None
    transaction_hash: Optional[bytes] = None
    block_number: Optional[int] = None
    transaction_index: Optional[int] = None

    ok = True
    status = "success"


@dataclass
class Revert:
    reason: bytes = b""
    gas_used: int = 0
    transaction_hash: Optional[bytes] = None
    block_number: Optional[int] = None
    transaction_index: Optional[int] = None

    ok = False
    status = "revert"

    @property
    def reason_text(self) -> Optional[str]:
        """The revert reason as text, decoding Error(string) payloads."""
        decoded = decode_error_string(self.reason)
        if decoded is not None:
            return decoded
        try:
            return self.reason.decode("utf-8")
        except UnicodeDecodeError:
            return None


@dataclass
class Failure:
    kind: FailureKind
    message: str = ""
    gas_used: int = 0
    # Structured fields for error mapping (address, have/want, tx/state nonce)
    details: dict = field(default_factory=dict)
    transaction_hash: Optional[bytes] = None
    block_number: Optional[int] = None
    transaction_index: Optional[int] = None

    ok = False

    @property
    def status(self) -> str:
        return self.kind.value


@dataclass
class Receipt:
    transaction_hash: bytes
    sender: bytes
    to: Optional[bytes]
    contract_address: Optional[bytes]
    block_number: int
    transaction_index: int
    gas_used: int
    cumulative_gas_used: int
    status: int
    logs: list = field(default_factory=list)
    revert_reason: bytes = b""
    gas_price: int = 0

    def to_dict(self) -> dict:
        return {
            "transaction_hash": self.transaction_hash,
            "sender": self.sender,
            "to": self.to,
            "contract_address": self.contract_address,
            "block_number": self.block_number,
            "transaction_index": self.transaction_index,
            "gas_used": self.gas_used,
            "cumulative_gas_used": self.cumulative_gas_used,
            "status": self.status,
            "logs": [log.to_dict() for log in self.logs],
            "revert_reason": self.revert_reason,
            "gas_price": hex(self.gas_price),
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Receipt':
        data = dict(data)
        data["logs"] = [LogEvent.from_dict(log) for log in data["logs"]]
        data["gas_price"] = int(data["gas_price"], 16)
        return cls(**data)


class Block:
    def __init__(self,
                 number: int,
                 timestamp: int,
                 parent_hash: bytes = ZERO_WORD,
                 gas_limit: int = 30_000_000,
                 transactions: Optional[list] = None,
                 gas_used: int = 0):
        self.number = number
        self.timestamp = timestamp
        self.parent_hash = parent_hash
        self.gas_limit = gas_limit
        # Ordered transaction hashes
        self.transactions = transactions if transactions is not None else []
        self.gas_used = gas_used

    def context(self) -> BlockContext:
        return BlockContext(number=self.number, timestamp=self.timestamp, gas_limit=self.gas_limit)

    def copy(self) -> 'Block':
        return Block(
            number=self.number,
            timestamp=self.timestamp,
            parent_hash=self.parent_hash,
            gas_limit=self.gas_limit,
            transactions=list(self.transactions),
            gas_used=self.gas_used,
        )

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "timestamp": self.timestamp,
            "parent_hash": self.parent_hash,
            "gas_limit": self.gas_limit,
            "transactions": list(self.transactions),
            "gas_used": self.gas_used,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'Block':
        return cls(**data)

    @property
    def hash(self) -> bytes:
        """The unique hash identifier of the block."""
        return generate_hash(msgpack.packb(self.to_dict(), use_bin_type=True))

    def __repr__(self):
        return f"Block(number={self.number}, timestamp={self.timestamp}, txs={len(self.transactions)})"
