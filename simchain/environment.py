"""
The simulated chain: request queue + execution core + state store, with
blocks, receipts, log history, subscriptions and snapshots.

All state changes, including block sealing, snapshots, rollbacks and cheat
operations, go through the request queue and are applied by one worker task
in sequence-number order. Queries read the committed state directly.
"""
import asyncio
import enum
import itertools
import logging
import time
from dataclasses import dataclass, replace
from typing import Optional, Union

import msgpack

from . import queue as rq
from .config import PER_TRANSACTION, Config
from .core import (
    Account,
    Block,
    Failure,
    FailureKind,
    Receipt,
    Revert,
    Success,
    TransactionRequest,
)
from .crypto import address_from_label, transaction_hash
from .errors import (
    EnvironmentClosedError,
    QueueFullError,
    SnapshotError,
    ValidationError,
)
from .executor import ExecutionCore
from .genesis import load_genesis
from .monitoring import Monitor
from .state import StateStore
from .subscriptions import LogFilter, Subscription, SubscriptionRegistry

logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT_VERSION = 1


class Lifecycle(str, enum.Enum):
    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclass
class _Snapshot:
    id: int
    seq: int
    accounts: dict
    blocks: list
    pending_block: Block
    receipts: dict
    log_count: int
    gas_price: int


def _seed_accounts(accounts: Optional[dict]) -> dict:
    seeded = {}
    for address, value in (accounts or {}).items():
        seeded[bytes(address)] = value if isinstance(value, Account) else Account(balance=int(value))
    return seeded


def _closed_future(kind: FailureKind, message: str) -> asyncio.Future:
    future = asyncio.get_running_loop().create_future()
    future.set_result(Failure(kind, message))
    return future


class Environment:
    def __init__(self, config: Optional[Config] = None, accounts: Optional[dict] = None):
        """
        Args:
            config: Chain, queue and monitoring settings.
            accounts: Initial allocation, {address: Account or balance}.
        """
        self.config = config or Config.default()
        chain = self.config.chain
        self.chain_id = chain.chain_id
        self.block_mode = chain.block_mode
        self.block_time = chain.block_time
        self.gas_price = chain.gas_price
        self.default_gas_limit = chain.default_gas_limit

        self._core = ExecutionCore(StateStore(_seed_accounts(accounts)))
        self.queue = rq.RequestQueue(self.config.environment.max_queue_size)
        self.subscriptions = SubscriptionRegistry()
        self.state = Lifecycle.CREATED

        genesis = Block(
            number=chain.genesis_block_number,
            timestamp=chain.genesis_timestamp,
            gas_limit=chain.block_gas_limit,
        )
        self.blocks = [genesis]
        self.pending_block = self._next_block(genesis)
        # {tx hash: Receipt}
        self.receipts = {}
        # Every mined log in (block, transaction index, log index) order
        self.logs = []

        self._snapshots = {}
        self._snapshot_ids = itertools.count(1)
        self._labels = {}

        monitoring = self.config.monitoring
        self.monitor = None
        if monitoring.enabled:
            self.monitor = Monitor(self, host=monitoring.host, port=monitoring.port, serve=True)

        self._handlers = {
            rq.TRANSACTION: self._handle_transaction,
            rq.ADVANCE_BLOCK: self._handle_advance_block,
            rq.SNAPSHOT: self._handle_snapshot,
            rq.ROLLBACK: self._handle_rollback,
            rq.CHEAT: self._handle_cheat,
        }

    # ------------------------------------------------------------------ #
    # Construction helpers
    # ------------------------------------------------------------------ #
    @classmethod
    def from_genesis(cls, path: str, config: Optional[Config] = None) -> 'Environment':
        return cls(config=config, accounts=load_genesis(path))

    @classmethod
    def from_snapshot(cls, data: bytes, config: Optional[Config] = None) -> 'Environment':
        """Rebuilds a (not yet started) environment from export_snapshot() output."""
        try:
            payload = msgpack.unpackb(data, raw=False, strict_map_key=False)
        except (msgpack.ExtraData, msgpack.FormatError, msgpack.StackError, ValueError) as e:
            raise SnapshotError(f"unreadable snapshot: {e}") from e
        if not isinstance(payload, dict) or payload.get("version") != SNAPSHOT_FORMAT_VERSION:
            version = payload.get("version") if isinstance(payload, dict) else None
            raise SnapshotError(f"unsupported snapshot format version {version!r}")

        config = config or Config.default()
        chain = payload["chain"]
        config = replace(config, chain=replace(
            config.chain,
            chain_id=chain["chain_id"],
            block_mode=chain["block_mode"],
            block_time=chain["block_time"],
            gas_price=int(chain["gas_price"], 16),
        ))

        accounts = {}
        for address, acc in payload["accounts"].items():
            accounts[address] = Account(
                balance=int(acc["balance"], 16),
                nonce=acc["nonce"],
                code=acc["code"],
                storage=dict(acc["storage"]),
            )
        env = cls(config=config, accounts=accounts)
        env.gas_price = config.chain.gas_price
        env.blocks = [Block.from_dict(payload["head"])]
        env.pending_block = Block.from_dict(payload["pending_block"])
        # Receipts of transactions already in the pending block
        for entry in payload["pending_receipts"]:
            receipt = Receipt.from_dict(entry)
            env.receipts[receipt.transaction_hash] = receipt
            env.logs.extend(receipt.logs)
        env.queue.restore_position(payload["seq"])
        logger.info(f"Environment restored from snapshot at block {env.block_number}")
        return env

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #
    async def start(self):
        if self.state is not Lifecycle.CREATED:
            raise ValidationError(f"cannot start an environment that is {self.state.value}")
        self.queue.start(self._dispatch)
        self.state = Lifecycle.RUNNING
        logger.info(f"Environment started (chain id {self.chain_id}, {self.block_mode} blocks)")

    async def stop(self):
        """Stops accepting requests, waits for every accepted one, then stops."""
        if self.state is Lifecycle.STOPPED:
            return
        if self.state is Lifecycle.RUNNING:
            self.state = Lifecycle.DRAINING
            logger.info(f"Environment draining {self.queue.pending()} pending requests")
            self.queue.close()
        if self.state is Lifecycle.DRAINING:
            await self.queue.join()
        self.state = Lifecycle.STOPPED
        self.subscriptions.close_all()
        if self.monitor:
            self.monitor.stop_server()
        logger.info(f"Environment stopped at block {self.block_number}")

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    @property
    def running(self) -> bool:
        return self.state is Lifecycle.RUNNING

    # ------------------------------------------------------------------ #
    # Submission
    # ------------------------------------------------------------------ #
    def submit(self, request: TransactionRequest) -> asyncio.Future:
        """
        Enqueues a transaction and returns a future for its result.

        The request's place in the global order is fixed by this call.
        Cancelling or abandoning the future does not stop the transaction.
        """
        if self.state is not Lifecycle.RUNNING:
            return _closed_future(FailureKind.ENVIRONMENT_CLOSED, f"environment closed ({self.state.value})")
        try:
            item = self.queue.put(rq.TRANSACTION, request)
        except rq.QueueFull as e:
            return _closed_future(FailureKind.QUEUE_FULL, f"request queue full: {e}")
        except rq.QueueClosed:
            return _closed_future(FailureKind.ENVIRONMENT_CLOSED, "environment closed")
        return item.future

    async def send(self, request: TransactionRequest):
        """Submits and waits for the result."""
        # shield: a caller timing out must not cancel the shared future
        return await asyncio.shield(self.submit(request))

    def call(self, request: TransactionRequest):
        """Read-only execution against the committed state; nothing is kept."""
        result, _ = self._core.dry_run(request, self.pending_block.context())
        return result

    def estimate_gas(self, request: TransactionRequest):
        """Dry-runs the request; a Success carries the gas it needs in gas_used."""
        return self.call(request)

    async def _enqueue(self, kind: str, payload=None):
        if self.state is not Lifecycle.RUNNING:
            raise EnvironmentClosedError(f"environment closed ({self.state.value})")
        try:
            item = self.queue.put(kind, payload)
        except rq.QueueFull as e:
            raise QueueFullError(f"request queue full: {e}") from e
        except rq.QueueClosed as e:
            raise EnvironmentClosedError() from e
        return await asyncio.shield(item.future)

    async def advance_block(self, number: Optional[int] = None, timestamp: Optional[int] = None) -> Block:
        """
        Seals the pending block and opens the next one.

        `number` and `timestamp` set the next block's header; they default
        to one past the sealed block and `block_time` seconds later.
        """
        return await self._enqueue(rq.ADVANCE_BLOCK, (number, timestamp))

    mine = advance_block

    async def snapshot(self) -> int:
        return await self._enqueue(rq.SNAPSHOT)

    async def rollback(self, snapshot_id: int):
        await self._enqueue(rq.ROLLBACK, snapshot_id)

    # Cheat operations
    async def deal(self, address: bytes, amount: int):
        """Sets the balance of `address`."""
        await self._enqueue(rq.CHEAT, ("balance", address, amount))

    async def set_nonce(self, address: bytes, nonce: int):
        await self._enqueue(rq.CHEAT, ("nonce", address, nonce))

    async def set_storage(self, address: bytes, key: bytes, value: bytes):
        await self._enqueue(rq.CHEAT, ("storage", address, key, value))

    async def set_code(self, address: bytes, code: bytes):
        await self._enqueue(rq.CHEAT, ("code", address, code))

    async def set_gas_price(self, price: int):
        await self._enqueue(rq.CHEAT, ("gas_price", price))

    # ------------------------------------------------------------------ #
    # Subscriptions
    # ------------------------------------------------------------------ #
    def subscribe(self, log_filter: Optional[LogFilter] = None, addresses=None, topics=None) -> Subscription:
        """
        Registers a log subscription.

        It receives logs from requests accepted after this call, never from
        requests already queued or executed.
        """
        if self.state is Lifecycle.STOPPED:
            raise EnvironmentClosedError("environment stopped")
        if log_filter is None:
            log_filter = LogFilter(addresses=addresses, topics=topics)
        return self.subscriptions.register(log_filter, self.queue.last_seq)

    def unsubscribe(self, subscription: Union[int, Subscription]) -> bool:
        sub_id = subscription.id if isinstance(subscription, Subscription) else subscription
        return self.subscriptions.unregister(sub_id)

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #
    @property
    def block_number(self) -> int:
        """Number of the latest sealed block."""
        return self.blocks[-1].number

    @property
    def latest_block(self) -> Block:
        return self.blocks[-1]

    def get_account(self, address: bytes) -> Account:
        return self._core.get_account(address)

    def balance_of(self, address: bytes) -> int:
        return self._core.balance_of(address)

    def nonce_of(self, address: bytes) -> int:
        return self._core.nonce_of(address)

    def code_of(self, address: bytes) -> bytes:
        return self._core.code_of(address)

    def storage_at(self, address: bytes, key: bytes) -> bytes:
        return self._core.storage_at(address, key)

    def export_state(self) -> dict:
        return self._core.export_state()

    def get_receipt(self, tx_hash: bytes) -> Optional[Receipt]:
        return self.receipts.get(tx_hash)

    def get_block(self, number: Union[int, str] = "latest") -> Optional[Block]:
        if number == "latest":
            return self.blocks[-1]
        if number == "pending":
            return self.pending_block
        if number == "earliest":
            return self.blocks[0]
        for block in reversed(self.blocks):
            if block.number == number:
                return block
        return None

    def get_logs(self, log_filter: Optional[LogFilter] = None, from_block: Optional[int] = None,
                 to_block: Optional[int] = None) -> list:
        log_filter = log_filter or LogFilter()
        return [
            log for log in self.logs
            if (from_block is None or log.block_number >= from_block)
            and (to_block is None or log.block_number <= to_block)
            and log_filter.matches(log)
        ]

    def snapshot_ids(self) -> list:
        return sorted(self._snapshots)

    def register_label(self, label: str) -> bytes:
        """Reserves a labelled wallet address; each label may be used once."""
        if label in self._labels:
            raise ValidationError(f"label {label!r} is already registered")
        address = address_from_label(label)
        self._labels[label] = address
        return address

    def labels(self) -> dict:
        return dict(self._labels)

    def export_snapshot(self, snapshot_id: int) -> bytes:
        """Serializes a held snapshot (accounts, block counter, queue position)."""
        snap = self._snapshots.get(snapshot_id)
        if snap is None:
            raise SnapshotError(f"unknown snapshot {snapshot_id}")
        accounts = {}
        for address, account in snap.accounts.items():
            accounts[address] = {
                "balance": hex(account.balance),
                "nonce": account.nonce,
                "code": account.code,
                "storage": dict(account.storage),
            }
        payload = {
            "version": SNAPSHOT_FORMAT_VERSION,
            "chain": {
                "chain_id": self.chain_id,
                "block_mode": self.block_mode,
                "block_time": self.block_time,
                "gas_price": hex(snap.gas_price),
            },
            "accounts": accounts,
            "head": snap.blocks[-1].to_dict(),
            "pending_block": snap.pending_block.to_dict(),
            "pending_receipts": [snap.receipts[h].to_dict() for h in snap.pending_block.transactions],
            "seq": snap.seq,
        }
        return msgpack.packb(payload, use_bin_type=True)

    def get_stats(self) -> dict:
        return {
            'state': self.state.value,
            'block_number': self.block_number,
            'receipts': len(self.receipts),
            'logs': len(self.logs),
            'subscriptions': len(self.subscriptions),
            'snapshots': len(self._snapshots),
            'queue': self.queue.get_stats(),
            'core': dict(self._core.stats),
        }

    # ------------------------------------------------------------------ #
    # Worker side
    # ------------------------------------------------------------------ #
    async def _dispatch(self, item: rq.QueuedRequest):
        # Handlers never await, so each request is applied atomically
        return self._handlers[item.kind](item)

    def _next_block(self, parent: Block, number: Optional[int] = None,
                    timestamp: Optional[int] = None) -> Block:
        return Block(
            number=parent.number + 1 if number is None else number,
            timestamp=parent.timestamp + self.block_time if timestamp is None else timestamp,
            parent_hash=parent.hash,
            gas_limit=self.config.chain.block_gas_limit,
        )

    def _seal(self, number: Optional[int] = None, timestamp: Optional[int] = None) -> Block:
        sealed = self.pending_block
        if number is not None and number <= sealed.number:
            raise ValidationError(f"block number {number} does not advance past {sealed.number}")
        if timestamp is not None and timestamp < sealed.timestamp:
            raise ValidationError(f"timestamp {timestamp} is before {sealed.timestamp}")
        self.blocks.append(sealed)
        self.pending_block = self._next_block(sealed, number, timestamp)
        logger.debug(f"Sealed block {sealed.number} with {len(sealed.transactions)} transactions")
        if self.monitor:
            self.monitor.update()
        return sealed

    def _handle_transaction(self, item: rq.QueuedRequest):
        request: TransactionRequest = item.payload
        block = self.pending_block
        nonce = request.nonce if request.nonce is not None else self._core.nonce_of(request.sender)
        tx_hash = transaction_hash(request.sender, request.to, request.value, request.data,
                                   request.gas_limit, request.gas_price, nonce, item.seq)

        result, logs, delta = self._core.execute(request, block.context())
        result.transaction_hash = tx_hash

        if isinstance(result, Failure) and result.kind.is_validation:
            logger.warning(f"Transaction {tx_hash.hex()[:16]} rejected: {result.message}")
            self._record(item, result)
            return result

        tx_index = len(block.transactions)
        log_base = self._block_log_count(block.number)
        for i, log in enumerate(logs):
            log.block_number = block.number
            log.transaction_index = tx_index
            log.log_index = log_base + i
            log.transaction_hash = tx_hash

        receipt = Receipt(
            transaction_hash=tx_hash,
            sender=request.sender,
            to=request.to,
            contract_address=result.contract_address if isinstance(result, Success) else None,
            block_number=block.number,
            transaction_index=tx_index,
            gas_used=result.gas_used,
            cumulative_gas_used=block.gas_used + result.gas_used,
            status=1 if isinstance(result, Success) else 0,
            logs=list(logs),
            revert_reason=result.reason if isinstance(result, Revert) else b"",
            gas_price=request.gas_price,
        )

        # Nothing below may fail once the delta is committed
        self._core.apply(delta)
        block.transactions.append(tx_hash)
        block.gas_used = receipt.cumulative_gas_used
        result.block_number = block.number
        result.transaction_index = tx_index
        self.receipts[tx_hash] = receipt
        self.logs.extend(logs)
        self.subscriptions.publish(item.seq, logs)

        if isinstance(result, Success):
            logger.debug(f"Transaction {tx_hash.hex()[:16]} mined in block {block.number} (gas {result.gas_used})")
        else:
            logger.warning(f"Transaction {tx_hash.hex()[:16]} failed in block {block.number}: {result.status}")

        self._record(item, result)
        if self.block_mode == PER_TRANSACTION:
            self._seal()
        return result

    def _block_log_count(self, number: int) -> int:
        """Logs already mined into block `number`; they sit at the end of self.logs."""
        count = 0
        for log in reversed(self.logs):
            if log.block_number != number:
                break
            count += 1
        return count

    def _record(self, item: rq.QueuedRequest, result):
        if self.monitor:
            self.monitor.record_tx(result.status, time.monotonic() - item.enqueued_at)

    def _handle_advance_block(self, item: rq.QueuedRequest) -> Block:
        number, timestamp = item.payload
        return self._seal(number, timestamp)

    def _handle_snapshot(self, item: rq.QueuedRequest) -> int:
        snapshot_id = next(self._snapshot_ids)
        self._snapshots[snapshot_id] = _Snapshot(
            id=snapshot_id,
            seq=item.seq,
            accounts=self._core.snapshot_state(),
            blocks=list(self.blocks),
            pending_block=self.pending_block.copy(),
            receipts=dict(self.receipts),
            log_count=len(self.logs),
            gas_price=self.gas_price,
        )
        max_snapshots = self.config.environment.max_snapshots
        while max_snapshots and len(self._snapshots) > max_snapshots:
            oldest = min(self._snapshots)
            del self._snapshots[oldest]
            logger.debug(f"Dropped snapshot {oldest}")
        logger.info(f"Snapshot {snapshot_id} taken at block {self.block_number} (seq {item.seq})")
        return snapshot_id

    def _handle_rollback(self, item: rq.QueuedRequest):
        snapshot_id = item.payload
        snap = self._snapshots.get(snapshot_id)
        if snap is None:
            raise SnapshotError(f"unknown snapshot {snapshot_id}")

        self._core.restore_state(snap.accounts)
        self.blocks = list(snap.blocks)
        self.pending_block = snap.pending_block.copy()
        self.receipts = dict(snap.receipts)
        del self.logs[snap.log_count:]
        self.gas_price = snap.gas_price

        for newer in [i for i in self._snapshots if i > snapshot_id]:
            del self._snapshots[newer]
        cancelled = self.subscriptions.invalidate_after(snap.seq)
        logger.info(f"Rolled back to snapshot {snapshot_id} (block {self.block_number}, "
                    f"{len(cancelled)} subscriptions cancelled)")

    def _handle_cheat(self, item: rq.QueuedRequest):
        op, *args = item.payload
        if op == "gas_price":
            (price,) = args
            if price < 0:
                raise ValidationError("gas price cannot be negative")
            self.gas_price = price
            return None

        delta = self._core.new_delta()
        if op == "balance":
            address, amount = args
            delta.set_balance(address, amount)
        elif op == "nonce":
            address, nonce = args
            if nonce < 0:
                raise ValidationError("nonce cannot be negative")
            delta.set_nonce(address, nonce)
        elif op == "storage":
            address, key, value = args
            delta.set_storage(address, key, value)
        elif op == "code":
            address, code = args
            delta.set_code(address, code)
        else:
            raise ValidationError(f"unknown cheat operation {op!r}")
        self._core.apply(delta)
        logger.debug(f"Cheat {op} applied to {args[0].hex()}")
        return None

