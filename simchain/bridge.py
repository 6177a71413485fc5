"""
Remote-chain client surface for the simulated chain.

`ChainClient` is written against the Ethereum JSON-RPC method set. Its two
implementations answer `request(method, params)` differently:
`EnvironmentClient` from an in-process Environment, `RemoteClient` from a
node over HTTP. Both return the same JSON values and raise the same
`simchain.errors` classes, so application code runs unchanged on either.
"""
import abc
import asyncio
import itertools
import logging
from typing import Any, Dict, Optional, Union

import requests

from .core import (
    Block,
    LogEvent,
    Receipt,
    Success,
    TransactionRequest,
    ZERO_ADDRESS,
)
from .environment import Environment
from .errors import (
    SERVER_ERROR,
    InvalidParamsError,
    MethodNotFoundError,
    RPCError,
    SimchainError,
    SubscriptionCancelled,
    error_from_response,
    error_from_result,
)
from .subscriptions import LogFilter
from .utils.encoding import (
    pad32,
    parse_address,
    parse_data,
    parse_quantity,
    to_hex,
    to_quantity,
)

logger = logging.getLogger(__name__)

BlockTag = Union[int, str]


# ---------------------------------------------------------------------- #
# JSON encoding of chain objects
# ---------------------------------------------------------------------- #
def format_log(log: LogEvent, block_hash: Optional[bytes] = None) -> dict:
    return {
        "address": to_hex(log.address),
        "topics": [to_hex(t) for t in log.topics],
        "data": to_hex(log.data),
        "blockNumber": to_quantity(log.block_number),
        "blockHash": to_hex(block_hash) if block_hash else None,
        "transactionHash": to_hex(log.transaction_hash),
        "transactionIndex": to_quantity(log.transaction_index),
        "logIndex": to_quantity(log.log_index),
        "removed": False,
    }


def decode_log(data: dict) -> LogEvent:
    return LogEvent(
        address=parse_address(data["address"]),
        topics=tuple(parse_data(t) for t in data.get("topics", [])),
        data=parse_data(data.get("data", "0x")),
        block_number=parse_quantity(data.get("blockNumber") or 0),
        transaction_index=parse_quantity(data.get("transactionIndex") or 0),
        log_index=parse_quantity(data.get("logIndex") or 0),
        transaction_hash=parse_data(data.get("transactionHash") or "0x"),
    )


def format_receipt(receipt: Receipt, block_hash: Optional[bytes] = None) -> dict:
    out = {
        "transactionHash": to_hex(receipt.transaction_hash),
        "transactionIndex": to_quantity(receipt.transaction_index),
        "blockNumber": to_quantity(receipt.block_number),
        "blockHash": to_hex(block_hash) if block_hash else None,
        "from": to_hex(receipt.sender),
        "to": to_hex(receipt.to) if receipt.to else None,
        "contractAddress": to_hex(receipt.contract_address) if receipt.contract_address else None,
        "gasUsed": to_quantity(receipt.gas_used),
        "cumulativeGasUsed": to_quantity(receipt.cumulative_gas_used),
        "effectiveGasPrice": to_quantity(receipt.gas_price),
        "status": to_quantity(receipt.status),
        "logs": [format_log(log, block_hash) for log in receipt.logs],
        "type": "0x0",
    }
    if receipt.revert_reason:
        out["revertReason"] = to_hex(receipt.revert_reason)
    return out


def decode_receipt(data: dict) -> Receipt:
    return Receipt(
        transaction_hash=parse_data(data["transactionHash"]),
        sender=parse_address(data["from"]),
        to=parse_address(data["to"]) if data.get("to") else None,
        contract_address=parse_address(data["contractAddress"]) if data.get("contractAddress") else None,
        block_number=parse_quantity(data["blockNumber"]),
        transaction_index=parse_quantity(data["transactionIndex"]),
        gas_used=parse_quantity(data["gasUsed"]),
        cumulative_gas_used=parse_quantity(data.get("cumulativeGasUsed", data["gasUsed"])),
        status=parse_quantity(data["status"]),
        logs=[decode_log(log) for log in data.get("logs", [])],
        revert_reason=parse_data(data["revertReason"]) if data.get("revertReason") else b"",
        gas_price=parse_quantity(data.get("effectiveGasPrice", "0x0")),
    )


def format_block(block: Block, pending: bool = False) -> dict:
    return {
        "number": None if pending else to_quantity(block.number),
        "hash": None if pending else to_hex(block.hash),
        "parentHash": to_hex(block.parent_hash),
        "timestamp": to_quantity(block.timestamp),
        "gasLimit": to_quantity(block.gas_limit),
        "gasUsed": to_quantity(block.gas_used),
        "transactions": [to_hex(h) for h in block.transactions],
    }


def decode_block(data: dict) -> Block:
    transactions = []
    for tx in data.get("transactions", []):
        transactions.append(parse_data(tx if isinstance(tx, str) else tx["hash"]))
    return Block(
        number=parse_quantity(data.get("number") or 0),
        timestamp=parse_quantity(data["timestamp"]),
        parent_hash=parse_data(data["parentHash"]),
        gas_limit=parse_quantity(data.get("gasLimit", "0x0")),
        transactions=transactions,
        gas_used=parse_quantity(data.get("gasUsed", "0x0")),
    )


def format_filter(addresses=None, topics=None, from_block: Optional[BlockTag] = None,
                  to_block: Optional[BlockTag] = None) -> dict:
    out = {}
    if addresses is not None:
        if isinstance(addresses, (bytes, bytearray)):
            addresses = [addresses]
        out["address"] = [to_hex(a) for a in addresses]
    if topics is not None:
        encoded = []
        for position in topics:
            if position is None:
                encoded.append(None)
            elif isinstance(position, (bytes, bytearray)):
                encoded.append(to_hex(position))
            else:
                encoded.append([to_hex(t) for t in position])
        out["topics"] = encoded
    if from_block is not None:
        out["fromBlock"] = _encode_tag(from_block)
    if to_block is not None:
        out["toBlock"] = _encode_tag(to_block)
    return out


def parse_filter(params: dict) -> LogFilter:
    address = params.get("address")
    if address is None:
        addresses = None
    elif isinstance(address, str):
        addresses = [parse_address(address)]
    else:
        addresses = [parse_address(a) for a in address]
    topics = []
    for position in params.get("topics") or []:
        if position is None:
            topics.append(None)
        elif isinstance(position, str):
            topics.append(parse_data(position))
        else:
            topics.append([parse_data(t) for t in position])
    return LogFilter(addresses=addresses, topics=topics)


def format_transaction(sender: Optional[bytes] = None, to: Optional[bytes] = None, value: int = 0,
                       data: bytes = b"", gas: Optional[int] = None, gas_price: Optional[int] = None,
                       nonce: Optional[int] = None) -> dict:
    tx = {}
    if sender is not None:
        tx["from"] = to_hex(sender)
    if to is not None:
        tx["to"] = to_hex(to)
    if value:
        tx["value"] = to_quantity(value)
    if data:
        tx["data"] = to_hex(data)
    if gas is not None:
        tx["gas"] = to_quantity(gas)
    if gas_price is not None:
        tx["gasPrice"] = to_quantity(gas_price)
    if nonce is not None:
        tx["nonce"] = to_quantity(nonce)
    return tx


def _encode_tag(tag: BlockTag) -> str:
    return to_quantity(tag) if isinstance(tag, int) else tag


# ---------------------------------------------------------------------- #
# Client interface
# ---------------------------------------------------------------------- #
class LogWatcher:
    """Polls a node-side log filter and yields its logs in order."""

    def __init__(self, client: 'ChainClient', filter_params: dict, poll_interval: float = 0.1):
        self.client = client
        self.filter_params = filter_params
        self.poll_interval = poll_interval
        self.filter_id = None
        self._buffer = []

    async def start(self) -> 'LogWatcher':
        if self.filter_id is None:
            self.filter_id = await self.client.request("eth_newFilter", [self.filter_params])
        return self

    async def close(self):
        if self.filter_id is not None:
            await self.client.request("eth_uninstallFilter", [self.filter_id])
            self.filter_id = None

    def __aiter__(self):
        return self

    async def __anext__(self) -> LogEvent:
        await self.start()
        while not self._buffer:
            changes = await self.client.request("eth_getFilterChanges", [self.filter_id])
            self._buffer.extend(decode_log(log) for log in changes or [])
            if not self._buffer:
                await asyncio.sleep(self.poll_interval)
        return self._buffer.pop(0)


class ChainClient(abc.ABC):
    """Typed helpers over a JSON-RPC `request` primitive."""

    @abc.abstractmethod
    async def request(self, method: str, params: Optional[list] = None) -> Any:
        """Performs one JSON-RPC call and returns its `result`."""

    async def chain_id(self) -> int:
        return parse_quantity(await self.request("eth_chainId", []))

    async def get_block_number(self) -> int:
        return parse_quantity(await self.request("eth_blockNumber", []))

    async def gas_price(self) -> int:
        return parse_quantity(await self.request("eth_gasPrice", []))

    async def get_balance(self, address: bytes, block: BlockTag = "latest") -> int:
        return parse_quantity(await self.request("eth_getBalance", [to_hex(address), _encode_tag(block)]))

    async def get_transaction_count(self, address: bytes, block: BlockTag = "latest") -> int:
        return parse_quantity(await self.request("eth_getTransactionCount", [to_hex(address), _encode_tag(block)]))

    async def get_code(self, address: bytes, block: BlockTag = "latest") -> bytes:
        return parse_data(await self.request("eth_getCode", [to_hex(address), _encode_tag(block)]))

    async def get_storage_at(self, address: bytes, slot: Union[int, bytes], block: BlockTag = "latest") -> bytes:
        result = await self.request("eth_getStorageAt", [to_hex(address), to_hex(pad32(slot)), _encode_tag(block)])
        return pad32(parse_data(result))

    async def send_transaction(self, sender: bytes, to: Optional[bytes] = None, value: int = 0,
                               data: bytes = b"", gas: Optional[int] = None,
                               gas_price: Optional[int] = None, nonce: Optional[int] = None) -> bytes:
        """Sends a transaction and returns its hash."""
        tx = format_transaction(sender, to, value, data, gas, gas_price, nonce)
        return parse_data(await self.request("eth_sendTransaction", [tx]))

    async def call(self, to: Optional[bytes], data: bytes = b"", sender: Optional[bytes] = None,
                   value: int = 0, gas: Optional[int] = None, block: BlockTag = "latest") -> bytes:
        tx = format_transaction(sender, to, value, data, gas)
        return parse_data(await self.request("eth_call", [tx, _encode_tag(block)]))

    async def estimate_gas(self, sender: Optional[bytes] = None, to: Optional[bytes] = None,
                           value: int = 0, data: bytes = b"", gas: Optional[int] = None) -> int:
        tx = format_transaction(sender, to, value, data, gas)
        return parse_quantity(await self.request("eth_estimateGas", [tx]))

    async def get_transaction_receipt(self, tx_hash: bytes) -> Optional[Receipt]:
        result = await self.request("eth_getTransactionReceipt", [to_hex(tx_hash)])
        return decode_receipt(result) if result else None

    async def wait_for_transaction_receipt(self, tx_hash: bytes, timeout: float = 30.0,
                                           poll_interval: float = 0.1) -> Receipt:
        async def _poll():
            while True:
                receipt = await self.get_transaction_receipt(tx_hash)
                if receipt is not None:
                    return receipt
                await asyncio.sleep(poll_interval)
        return await asyncio.wait_for(_poll(), timeout)

    async def get_logs(self, addresses=None, topics=None, from_block: Optional[BlockTag] = None,
                       to_block: Optional[BlockTag] = None) -> list:
        params = format_filter(addresses, topics, from_block, to_block)
        return [decode_log(log) for log in await self.request("eth_getLogs", [params])]

    async def subscribe_logs(self, addresses=None, topics=None, poll_interval: float = 0.1):
        """Returns an async iterator of matching logs emitted from now on."""
        watcher = LogWatcher(self, format_filter(addresses, topics), poll_interval)
        return await watcher.start()

    async def get_block(self, block: BlockTag = "latest") -> Optional[Block]:
        result = await self.request("eth_getBlockByNumber", [_encode_tag(block), False])
        return decode_block(result) if result else None


# ---------------------------------------------------------------------- #
# In-process implementation
# ---------------------------------------------------------------------- #
class EnvironmentClient(ChainClient):
    """
    Serves the JSON-RPC method set from an Environment.

    Every state-changing method is exactly one request on the environment's
    queue. Reads answer from the committed state.
    """

    def __init__(self, environment: Environment, default_account: Optional[bytes] = None):
        self.env = environment
        self.default_account = default_account
        # {filter id: Subscription}
        self._filters = {}
        self._methods = {
            "eth_chainId": self._chain_id,
            "eth_blockNumber": self._block_number,
            "eth_gasPrice": self._gas_price,
            "eth_accounts": self._accounts,
            "eth_getBalance": self._get_balance,
            "eth_getTransactionCount": self._get_transaction_count,
            "eth_getCode": self._get_code,
            "eth_getStorageAt": self._get_storage_at,
            "eth_sendTransaction": self._send_transaction,
            "eth_call": self._call,
            "eth_estimateGas": self._estimate_gas,
            "eth_getTransactionReceipt": self._get_transaction_receipt,
            "eth_getLogs": self._get_logs,
            "eth_newFilter": self._new_filter,
            "eth_getFilterChanges": self._get_filter_changes,
            "eth_uninstallFilter": self._uninstall_filter,
            "eth_getBlockByNumber": self._get_block_by_number,
            "evm_snapshot": self._evm_snapshot,
            "evm_revert": self._evm_revert,
            "evm_mine": self._evm_mine,
            "anvil_setBalance": self._set_balance,
            "anvil_setNonce": self._set_nonce,
            "anvil_setStorageAt": self._set_storage_at,
            "anvil_setCode": self._set_code,
            "anvil_setMinGasPrice": self._set_min_gas_price,
        }

    async def create_wallet(self, label: str, balance: Optional[int] = None) -> bytes:
        """Registers a labelled wallet, optionally funding it."""
        address = self.env.register_label(label)
        if balance is not None:
            await self.env.deal(address, balance)
        if self.default_account is None:
            self.default_account = address
        return address

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        handler = self._methods.get(method)
        if handler is None:
            raise MethodNotFoundError(method)
        try:
            return await handler(*(params or []))
        except RPCError:
            raise
        except (ValueError, TypeError, KeyError, IndexError, SimchainError) as e:
            raise InvalidParamsError(f"invalid params for {method}: {e}") from e

    async def handle(self, payload: dict) -> dict:
        """Answers a JSON-RPC request object with a response object."""
        response = {"jsonrpc": "2.0", "id": payload.get("id")}
        try:
            response["result"] = await self.request(payload.get("method", ""), payload.get("params"))
        except RPCError as e:
            response["error"] = e.to_dict()
        return response

    async def subscribe_logs(self, addresses=None, topics=None, poll_interval: float = 0.1):
        """Pushes logs straight from an environment subscription."""
        if isinstance(addresses, (bytes, bytearray)):
            addresses = [addresses]
        return self.env.subscribe(addresses=addresses, topics=topics)

    # ------------------------------------------------------------------ #
    # Param handling
    # ------------------------------------------------------------------ #
    def _check_block(self, tag: Optional[BlockTag]):
        if tag is None or tag in ("latest", "pending", "safe", "finalized"):
            return
        if isinstance(tag, dict):
            raise InvalidParamsError("block hash selectors are not supported")
        number = self.env.blocks[0].number if tag == "earliest" else parse_quantity(tag)
        if number >= self.env.block_number:
            return
        raise InvalidParamsError(f"historical state not available for block {tag}")

    def _request_from(self, tx: dict, require_sender: bool) -> TransactionRequest:
        sender = tx.get("from")
        if sender is not None:
            sender = parse_address(sender)
        elif self.default_account is not None:
            sender = self.default_account
        elif require_sender:
            raise InvalidParamsError("missing 'from' field")
        else:
            sender = ZERO_ADDRESS
        to = parse_address(tx["to"]) if tx.get("to") else None
        data = tx.get("input", tx.get("data")) or "0x"
        gas_price = tx.get("gasPrice", tx.get("maxFeePerGas"))
        nonce = tx.get("nonce")
        return TransactionRequest(
            sender=sender,
            to=to,
            value=parse_quantity(tx.get("value", 0)),
            data=parse_data(data),
            gas_limit=parse_quantity(tx["gas"]) if tx.get("gas") is not None else self.env.default_gas_limit,
            gas_price=parse_quantity(gas_price) if gas_price is not None else self.env.gas_price,
            nonce=parse_quantity(nonce) if nonce is not None else None,
        )

    def _block_hash(self, number: int) -> Optional[bytes]:
        block = self.env.get_block(number)
        if block is None or block is self.env.pending_block:
            return None
        return block.hash

    # ------------------------------------------------------------------ #
    # eth_*
    # ------------------------------------------------------------------ #
    async def _chain_id(self):
        return to_quantity(self.env.chain_id)

    async def _block_number(self):
        return to_quantity(self.env.block_number)

    async def _gas_price(self):
        return to_quantity(self.env.gas_price)

    async def _accounts(self):
        return [to_hex(a) for a in self.env.labels().values()]

    async def _get_balance(self, address, block="latest"):
        self._check_block(block)
        return to_quantity(self.env.balance_of(parse_address(address)))

    async def _get_transaction_count(self, address, block="latest"):
        self._check_block(block)
        return to_quantity(self.env.nonce_of(parse_address(address)))

    async def _get_code(self, address, block="latest"):
        self._check_block(block)
        return to_hex(self.env.code_of(parse_address(address)))

    async def _get_storage_at(self, address, slot, block="latest"):
        self._check_block(block)
        key = pad32(parse_quantity(slot))
        return to_hex(self.env.storage_at(parse_address(address), key))

    async def _send_transaction(self, tx):
        request = self._request_from(tx, require_sender=True)
        result = await self.env.send(request)
        if isinstance(result, Success):
            return to_hex(result.transaction_hash)
        error = error_from_result(result)
        # Mined failures still have a receipt; expose its hash on the error
        error.transaction_hash = result.transaction_hash if result.block_number is not None else None
        logger.debug(f"eth_sendTransaction failed: {error.message}")
        raise error

    async def _call(self, tx, block="latest"):
        self._check_block(block)
        result = self.env.call(self._request_from(tx, require_sender=False))
        if isinstance(result, Success):
            return to_hex(result.return_data)
        raise error_from_result(result)

    async def _estimate_gas(self, tx, block="latest"):
        self._check_block(block)
        request = self._request_from(tx, require_sender=False)
        result = self.env.estimate_gas(request)
        if isinstance(result, Success):
            return to_quantity(result.gas_used)
        raise error_from_result(result, estimating=True, gas_limit=request.gas_limit)

    async def _get_transaction_receipt(self, tx_hash):
        receipt = self.env.get_receipt(parse_data(tx_hash))
        if receipt is None:
            return None
        return format_receipt(receipt, self._block_hash(receipt.block_number))

    def _resolve_block(self, tag, default):
        if tag is None:
            return default
        if tag in ("latest", "safe", "finalized"):
            return self.env.block_number
        if tag == "pending":
            return self.env.pending_block.number
        if tag == "earliest":
            return self.env.blocks[0].number
        return parse_quantity(tag)

    async def _get_logs(self, params):
        log_filter = parse_filter(params)
        from_block = self._resolve_block(params.get("fromBlock"), None)
        to_block = self._resolve_block(params.get("toBlock"), None)
        logs = self.env.get_logs(log_filter, from_block, to_block)
        return [format_log(log, self._block_hash(log.block_number)) for log in logs]

    async def _new_filter(self, params):
        subscription = self.env.subscribe(parse_filter(params))
        self._filters[subscription.id] = subscription
        return to_quantity(subscription.id)

    async def _get_filter_changes(self, filter_id):
        subscription = self._filters.get(parse_quantity(filter_id))
        if subscription is None:
            raise RPCError("filter not found", code=SERVER_ERROR)
        try:
            logs = subscription.drain()
        except SubscriptionCancelled as e:
            self._filters.pop(subscription.id, None)
            raise RPCError(f"filter not found: {e.reason}", code=SERVER_ERROR) from e
        return [format_log(log, self._block_hash(log.block_number)) for log in logs]

    async def _uninstall_filter(self, filter_id):
        subscription = self._filters.pop(parse_quantity(filter_id), None)
        if subscription is None:
            return False
        self.env.unsubscribe(subscription)
        return True

    async def _get_block_by_number(self, tag="latest", full=False):
        if tag == "pending":
            return format_block(self.env.pending_block, pending=True)
        number = self._resolve_block(tag, self.env.block_number)
        block = self.env.get_block(number)
        return format_block(block) if block is not None else None

    # ------------------------------------------------------------------ #
    # Dev-node methods
    # ------------------------------------------------------------------ #
    async def _evm_snapshot(self):
        return to_quantity(await self.env.snapshot())

    async def _evm_revert(self, snapshot_id):
        snapshot_id = parse_quantity(snapshot_id)
        if snapshot_id not in self.env.snapshot_ids():
            return False
        await self.env.rollback(snapshot_id)
        return True

    async def _evm_mine(self, timestamp=None):
        await self.env.advance_block(timestamp=parse_quantity(timestamp) if timestamp is not None else None)
        return "0x0"

    async def _set_balance(self, address, amount):
        await self.env.deal(parse_address(address), parse_quantity(amount))
        return True

    async def _set_nonce(self, address, nonce):
        await self.env.set_nonce(parse_address(address), parse_quantity(nonce))
        return True

    async def _set_storage_at(self, address, slot, value):
        await self.env.set_storage(parse_address(address), pad32(parse_quantity(slot)), pad32(parse_data(value)))
        return True

    async def _set_code(self, address, code):
        await self.env.set_code(parse_address(address), parse_data(code))
        return True

    async def _set_min_gas_price(self, price):
        await self.env.set_gas_price(parse_quantity(price))
        return True


# ---------------------------------------------------------------------- #
# Pass-through implementation
# ---------------------------------------------------------------------- #
class RemoteClient(ChainClient):
    """JSON-RPC over HTTP to a real node."""

    def __init__(self, url: str, timeout: float = 30.0, extra_headers: Optional[Dict] = None):
        if extra_headers is None:
            extra_headers = {}
        self.url = url
        self.timeout = timeout
        self.extra_headers = extra_headers
        self.request_id_counter = itertools.count(1)
        self.session = requests.Session()

    def post_request(self, method: str, params: Optional[list] = None) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": next(self.request_id_counter),
        }
        headers = {"Content-Type": "application/json"} | self.extra_headers

        response = self.session.post(self.url, json=payload, headers=headers, timeout=self.timeout)
        response.raise_for_status()
        response_json = response.json()

        if "error" in response_json:
            raise error_from_response(response_json["error"])
        if "result" not in response_json:
            raise RPCError(f"response to {method} has no result")
        return response_json["result"]

    async def request(self, method: str, params: Optional[list] = None) -> Any:
        return await asyncio.to_thread(self.post_request, method, params)

    def close(self):
        self.session.close()
