"""
Exception hierarchy for the simulated chain and its JSON-RPC bridge.

Inside the environment, transaction outcomes are values (Success / Revert /
Failure). At the bridge they become the exceptions below, whose codes and
messages follow geth so that callers written against a real node see the
same errors.
"""
from typing import Any, Optional

from .core import Failure, FailureKind, Revert
from .utils.encoding import (
    decode_error_string,
    parse_data,
    to_hex,
)

# JSON-RPC 2.0 codes
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
# geth / dev-node server codes
SERVER_ERROR = -32000
RESOURCE_UNAVAILABLE = -32002
LIMIT_EXCEEDED = -32005
EXECUTION_REVERTED = 3


class SimchainError(Exception):
    """Base class for all simchain errors."""


class ValidationError(SimchainError):
    """Misuse of the environment API (bad arguments, decreasing block number)."""


class SnapshotError(SimchainError):
    """Unknown, invalidated or unreadable snapshot."""


class SubscriptionCancelled(SimchainError):
    """Raised to a subscription consumer when a rollback invalidated its cursor."""

    def __init__(self, subscription_id: int, reason: str = "rolled back"):
        super().__init__(f"subscription {subscription_id} cancelled: {reason}")
        self.subscription_id = subscription_id
        self.reason = reason


class RPCError(SimchainError):
    """An error with a JSON-RPC (code, message, data) shape."""
    code = INTERNAL_ERROR
    # Set when the failing transaction was mined anyway
    transaction_hash = None

    def __init__(self, message: str, data: Any = None, code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.data = data
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        err = {"code": self.code, "message": self.message}
        if self.data is not None:
            err["data"] = self.data
        return err

    def __repr__(self):
        return f"{type(self).__name__}(code={self.code}, message={self.message!r})"


class MethodNotFoundError(RPCError):
    code = METHOD_NOT_FOUND

    def __init__(self, method: Optional[str] = None, message: Optional[str] = None, data: Any = None):
        super().__init__(message or f"the method {method} does not exist/is not available", data)
        self.method = method


class InvalidParamsError(RPCError):
    code = INVALID_PARAMS


class InternalError(RPCError):
    code = INTERNAL_ERROR


class TransactionError(RPCError):
    """Base for errors caused by a transaction's content or execution."""
    code = SERVER_ERROR


class NonceMismatchError(TransactionError):
    pass


class NonceTooLowError(NonceMismatchError):
    pass


class NonceTooHighError(NonceMismatchError):
    pass


class InsufficientFundsError(TransactionError):
    pass


class IntrinsicGasError(TransactionError):
    pass


class ExecutionRevertedError(TransactionError):
    code = EXECUTION_REVERTED

    @property
    def revert_data(self) -> bytes:
        if isinstance(self.data, str):
            try:
                return parse_data(self.data)
            except ValueError:
                return b""
        return b""

    @property
    def reason(self) -> Optional[str]:
        return _reason_text(self.revert_data)


class OutOfGasError(TransactionError):
    pass


class ExecutionHaltedError(TransactionError):
    pass


class EnvironmentClosedError(RPCError):
    code = RESOURCE_UNAVAILABLE

    def __init__(self, message: str = "environment closed", data: Any = None):
        super().__init__(message, data)


class QueueFullError(RPCError):
    code = LIMIT_EXCEEDED

    def __init__(self, message: str = "request queue full", data: Any = None):
        super().__init__(message, data)


# geth message prefixes, checked in order
_MESSAGE_PREFIXES = [
    ("nonce too low", NonceTooLowError),
    ("nonce too high", NonceTooHighError),
    ("insufficient funds", InsufficientFundsError),
    ("intrinsic gas too low", IntrinsicGasError),
    ("out of gas", OutOfGasError),
    ("gas required exceeds allowance", OutOfGasError),
    ("execution halted", ExecutionHaltedError),
]


def _reason_text(reason: bytes) -> Optional[str]:
    text = decode_error_string(reason)
    if text is not None:
        return text
    try:
        text = reason.decode("utf-8")
    except UnicodeDecodeError:
        return None
    return text if text and text.isprintable() else None


def revert_message(reason: bytes) -> tuple[str, str]:
    """geth's (message, data) pair for a revert payload; data is the raw payload."""
    text = _reason_text(reason)
    message = f"execution reverted: {text}" if text else "execution reverted"
    return message, to_hex(reason)


def error_from_result(result, estimating: bool = False, gas_limit: int = 0) -> Optional[RPCError]:
    """Maps a non-successful transaction result to its bridge exception."""
    if isinstance(result, Revert):
        message, data = revert_message(result.reason)
        return ExecutionRevertedError(message, data)
    if not isinstance(result, Failure):
        return None

    kind = result.kind
    if kind is FailureKind.NONCE_MISMATCH:
        if result.details.get("tx_nonce", 0) < result.details.get("state_nonce", 0):
            return NonceTooLowError(result.message)
        return NonceTooHighError(result.message)
    if kind is FailureKind.INSUFFICIENT_FUNDS:
        return InsufficientFundsError(result.message)
    if kind is FailureKind.INTRINSIC_GAS:
        return IntrinsicGasError(result.message)
    if kind is FailureKind.OUT_OF_GAS:
        if estimating:
            return OutOfGasError(f"gas required exceeds allowance ({gas_limit})")
        return OutOfGasError(result.message or "out of gas")
    if kind is FailureKind.HALTED:
        return ExecutionHaltedError(result.message)
    if kind is FailureKind.ENVIRONMENT_CLOSED:
        return EnvironmentClosedError(result.message or "environment closed")
    if kind is FailureKind.QUEUE_FULL:
        return QueueFullError(result.message or "request queue full")
    return InternalError(result.message)


def error_from_response(error: dict) -> RPCError:
    """Classifies a JSON-RPC error object returned by a node."""
    code = error.get("code", INTERNAL_ERROR)
    message = error.get("message", "")
    data = error.get("data")

    if code == METHOD_NOT_FOUND:
        return MethodNotFoundError(message=message, data=data)
    if code == INVALID_PARAMS:
        return InvalidParamsError(message, data)
    if code == EXECUTION_REVERTED or message.startswith("execution reverted"):
        return ExecutionRevertedError(message, data)
    if code == RESOURCE_UNAVAILABLE:
        return EnvironmentClosedError(message, data)
    if code == LIMIT_EXCEEDED:
        return QueueFullError(message, data)

    lowered = message.lower()
    for prefix, cls in _MESSAGE_PREFIXES:
        if lowered.startswith(prefix):
            return cls(message, data, code=code)
    if code == SERVER_ERROR:
        return TransactionError(message, data)
    return RPCError(message, data, code=code)
