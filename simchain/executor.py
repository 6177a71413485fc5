"""
The execution core: validates and applies one transaction at a time.

The core exclusively owns the StateStore. Everything else reaches state
through the request queue, which calls execute() and apply() in order.
"""
import logging
from typing import Optional

from .core import (
    BlockContext,
    Failure,
    FailureKind,
    LogEvent,
    Revert,
    Success,
    TransactionRequest,
    intrinsic_gas,
)
from .crypto import contract_address
from .state import StateDelta, StateStore
from .wasm_runtime import (
    HALTED,
    OUT_OF_GAS,
    REVERT,
    HostContext,
    WASMRuntime,
)

logger = logging.getLogger(__name__)

GAS_CODE_DEPOSIT = 200


def _addr(address: bytes) -> str:
    return "0x" + address.hex()


class ExecutionCore:
    def __init__(self, state: Optional[StateStore] = None, runtime: Optional[WASMRuntime] = None):
        self._state = state if state is not None else StateStore()
        self.runtime = runtime or WASMRuntime()
        self.stats = {
            'executed': 0,
            'succeeded': 0,
            'reverted': 0,
            'failed': 0,
            'rejected': 0,
        }

    # ------------------------------------------------------------------ #
    # Read access
    # ------------------------------------------------------------------ #
    def get_account(self, address: bytes):
        return self._state.get_account(address)

    def balance_of(self, address: bytes) -> int:
        return self._state.balance_of(address)

    def nonce_of(self, address: bytes) -> int:
        return self._state.nonce_of(address)

    def code_of(self, address: bytes) -> bytes:
        return self._state.code_of(address)

    def storage_at(self, address: bytes, key: bytes) -> bytes:
        return self._state.storage_at(address, key)

    def export_state(self) -> dict:
        return self._state.to_dict()

    def snapshot_state(self) -> dict:
        return self._state.snapshot()

    def restore_state(self, snapshot: dict):
        self._state.restore(snapshot)

    def new_delta(self) -> StateDelta:
        return self._state.delta()

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    def apply(self, delta: StateDelta):
        self._state.apply(delta)

    def validate(self, request: TransactionRequest, state, check_nonce: bool = True) -> Optional[Failure]:
        """Returns the validation failure for `request`, or None when it may execute."""
        sender = request.sender
        required = intrinsic_gas(request.data, request.is_create)
        if request.gas_limit < required:
            return Failure(
                FailureKind.INTRINSIC_GAS,
                f"intrinsic gas too low: have {request.gas_limit}, want {required}",
                details={'have': request.gas_limit, 'want': required},
            )

        state_nonce = state.nonce_of(sender)
        if check_nonce and request.nonce is not None and request.nonce != state_nonce:
            direction = "low" if request.nonce < state_nonce else "high"
            return Failure(
                FailureKind.NONCE_MISMATCH,
                f"nonce too {direction}: address {_addr(sender)}, tx: {request.nonce} state: {state_nonce}",
                details={'address': sender, 'tx_nonce': request.nonce, 'state_nonce': state_nonce},
            )

        balance = state.balance_of(sender)
        cost = request.upfront_cost()
        if balance < cost:
            return Failure(
                FailureKind.INSUFFICIENT_FUNDS,
                f"insufficient funds for gas * price + value: address {_addr(sender)} have {balance} want {cost}",
                details={'address': sender, 'have': balance, 'want': cost},
            )
        return None

    def execute(self, request: TransactionRequest, block: BlockContext):
        """
        Executes `request` against the committed state.

        Returns (result, logs, delta). The delta is empty for validation
        failures; otherwise the caller applies it to commit the transaction.
        """
        delta = self._state.delta()
        result, logs = self._run(request, block, delta, check_nonce=True)
        self.stats['executed'] += 1
        if isinstance(result, Success):
            self.stats['succeeded'] += 1
        elif isinstance(result, Revert):
            self.stats['reverted'] += 1
        elif result.kind.is_validation:
            self.stats['rejected'] += 1
        else:
            self.stats['failed'] += 1
        return result, logs, delta

    def dry_run(self, request: TransactionRequest, block: BlockContext):
        """Executes without nonce validation and never commits the delta."""
        delta = self._state.delta()
        result, logs = self._run(request, block, delta, check_nonce=False)
        delta.discard()
        return result, logs

    def _run(self, request: TransactionRequest, block: BlockContext, delta: StateDelta, check_nonce: bool):
        failure = self.validate(request, delta, check_nonce=check_nonce)
        if failure is not None:
            logger.debug(f"Rejected tx from {_addr(request.sender)}: {failure.message}")
            return failure, []

        sender = request.sender
        nonce = delta.nonce_of(sender)
        base_gas = intrinsic_gas(request.data, request.is_create)

        # Nonce and full gas allowance are charged up front; unused gas is refunded below
        delta.increment_nonce(sender)
        delta.sub_balance(sender, request.gas_limit * request.gas_price)

        frame = delta.child()
        if request.is_create:
            target = contract_address(sender, nonce)
            result, logs, gas_used = self._create(request, block, frame, target, base_gas)
        else:
            target = request.to
            result, logs, gas_used = self._call(request, block, frame, target, base_gas)

        if isinstance(result, Success):
            frame.commit()
        else:
            frame.discard()

        refund = (request.gas_limit - gas_used) * request.gas_price
        if refund:
            delta.add_balance(sender, refund)

        result.gas_used = gas_used
        event_logs = [
            LogEvent(address=address, topics=topics, data=data, log_index=i)
            for i, (address, topics, data) in enumerate(logs)
        ]
        if isinstance(result, Success):
            result.logs = event_logs
        else:
            event_logs = []
        return result, event_logs

    def _create(self, request, block, frame: StateDelta, target: bytes, base_gas: int):
        if frame.code_of(target) or frame.nonce_of(target):
            return (Failure(FailureKind.HALTED, f"execution halted: contract address collision at {_addr(target)}"),
                    [], request.gas_limit)

        code = request.data
        if not self.runtime.validate(code):
            return Failure(FailureKind.HALTED, "execution halted: invalid contract code"), [], request.gas_limit

        deposit = GAS_CODE_DEPOSIT * len(code)
        frame.set_nonce(target, 1)
        frame.transfer(request.sender, target, request.value)
        frame.set_code(target, code)

        result, logs, gas_used = self._invoke(request, block, frame, target, code, "deploy",
                                              base_gas, extra_gas=deposit, optional=True)
        if isinstance(result, Success):
            result.contract_address = target
            result.return_data = b""
        return result, logs, gas_used

    def _call(self, request, block, frame: StateDelta, target: bytes, base_gas: int):
        frame.transfer(request.sender, target, request.value)
        code = frame.code_of(target)
        if not code:
            return Success(), [], base_gas
        return self._invoke(request, block, frame, target, code, "call", base_gas)

    def _invoke(self, request, block, frame, target, code, entry, base_gas, extra_gas=0, optional=False):
        budget = request.gas_limit - base_gas - extra_gas
        if budget < 0:
            return Failure(FailureKind.OUT_OF_GAS, "out of gas"), [], request.gas_limit

        host = HostContext(
            state=frame,
            address=target,
            caller=request.sender,
            value=request.value,
            calldata=request.data if entry == "call" else b"",
            block=block,
            gas_budget=budget,
        )
        outcome = self.runtime.execute(code, entry, host, fuel=budget, optional=optional)
        gas_used = base_gas + extra_gas + outcome.gas_used

        if outcome.status == OUT_OF_GAS or gas_used > request.gas_limit:
            return Failure(FailureKind.OUT_OF_GAS, "out of gas"), [], request.gas_limit
        if outcome.status == HALTED:
            return Failure(FailureKind.HALTED, f"execution halted: {outcome.error}"), [], request.gas_limit
        if outcome.status == REVERT:
            return Revert(reason=outcome.return_data), [], gas_used
        return Success(return_data=outcome.return_data), outcome.logs, gas_used
