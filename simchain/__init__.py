"""
simchain: an in-process simulated smart-contract chain with a JSON-RPC
compatible client bridge.
"""
from .bridge import ChainClient, EnvironmentClient, RemoteClient
from .config import Config
from .core import (
    Account,
    Failure,
    FailureKind,
    LogEvent,
    Revert,
    Success,
    TransactionRequest,
)
from .environment import Environment, Lifecycle
from .nonce_manager import NonceManager
from .subscriptions import LogFilter, Subscription

__version__ = "0.1.0"
