"""
Account state: the authoritative store and per-transaction overlays.
"""
import logging
from typing import Optional, Union

from .core import Account, ZERO_WORD
from .errors import ValidationError

logger = logging.getLogger(__name__)


def _check_word(value: bytes, what: str):
    if not isinstance(value, (bytes, bytearray)) or len(value) != 32:
        raise ValidationError(f"{what} must be 32 bytes")


class StateStore:
    """
    Balances, nonces, code and storage of every account.

    The store is only ever written through apply(), which runs without
    awaiting, so readers always see the state of the last completed
    transaction.
    """

    def __init__(self, accounts: Optional[dict] = None):
        # {20-byte address: Account}
        self._accounts = {}
        for address, account in (accounts or {}).items():
            self._accounts[bytes(address)] = account.copy()

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def get_account(self, address: bytes) -> Account:
        """Returns a copy of the account; unknown addresses are empty accounts."""
        account = self._accounts.get(address)
        if account is None:
            return Account()
        return account.copy()

    def balance_of(self, address: bytes) -> int:
        account = self._accounts.get(address)
        return account.balance if account else 0

    def nonce_of(self, address: bytes) -> int:
        account = self._accounts.get(address)
        return account.nonce if account else 0

    def code_of(self, address: bytes) -> bytes:
        account = self._accounts.get(address)
        return account.code if account else b""

    def storage_at(self, address: bytes, key: bytes) -> bytes:
        account = self._accounts.get(address)
        if account is None:
            return ZERO_WORD
        return account.storage.get(key, ZERO_WORD)

    def exists(self, address: bytes) -> bool:
        account = self._accounts.get(address)
        return account is not None and not account.is_empty()

    def addresses(self) -> list[bytes]:
        return sorted(self._accounts)

    def __contains__(self, address: bytes) -> bool:
        return self.exists(address)

    def __len__(self):
        return len(self._accounts)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def delta(self) -> 'StateDelta':
        """A fresh overlay on top of this store."""
        return StateDelta(self)

    def apply(self, delta: 'StateDelta'):
        """Atomically writes a top-level delta into the store."""
        if delta.parent is not self:
            raise ValidationError("delta was not created on this store")

        # Build the new account objects first so a bad delta leaves the store untouched
        updated = {}
        for address in delta.touched():
            current = self._accounts.get(address)
            account = current.copy() if current else Account()
            overlay = delta.accounts.get(address)
            if overlay is not None:
                account.balance = overlay.balance
                account.nonce = overlay.nonce
                account.code = overlay.code
            for key, value in delta.storage.get(address, {}).items():
                if value == ZERO_WORD:
                    account.storage.pop(key, None)
                else:
                    account.storage[key] = value
            if account.balance < 0:
                raise ValidationError(f"negative balance for {address.hex()}")
            updated[address] = account

        for address, account in updated.items():
            if account.is_empty():
                self._accounts.pop(address, None)
            else:
                self._accounts[address] = account
        delta.discard()
        logger.debug(f"Applied delta touching {len(updated)} accounts")

    def copy(self) -> 'StateStore':
        """An independent store with the same contents."""
        return StateStore(self._accounts)

    def snapshot(self) -> dict:
        """Deep capture of every account, restorable with restore()."""
        return {address: account.copy() for address, account in self._accounts.items()}

    def restore(self, snapshot: dict):
        self._accounts = {address: account.copy() for address, account in snapshot.items()}

    def to_dict(self) -> dict:
        return {address: account.to_dict() for address, account in sorted(self._accounts.items())}

    @classmethod
    def from_dict(cls, data: dict) -> 'StateStore':
        return cls({bytes(address): Account.from_dict(acc) for address, acc in data.items()})


class StateDelta:
    """
    Overlay of changes produced by one transaction (or one call frame).

    Reads fall through to the parent; writes stay local until the delta is
    committed into a parent delta or applied to the store. Account overlays
    carry balance, nonce and code only; storage writes are tracked per slot.
    """

    def __init__(self, parent: Union[StateStore, 'StateDelta']):
        self.parent = parent
        self.accounts = {}
        # {address: {key: value}}
        self.storage = {}

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #
    def _overlay(self, address: bytes) -> Optional[Account]:
        delta = self
        while isinstance(delta, StateDelta):
            if address in delta.accounts:
                return delta.accounts[address]
            delta = delta.parent
        return None

    def balance_of(self, address: bytes) -> int:
        overlay = self._overlay(address)
        return overlay.balance if overlay else self.root.balance_of(address)

    def nonce_of(self, address: bytes) -> int:
        overlay = self._overlay(address)
        return overlay.nonce if overlay else self.root.nonce_of(address)

    def code_of(self, address: bytes) -> bytes:
        overlay = self._overlay(address)
        return overlay.code if overlay else self.root.code_of(address)

    def storage_at(self, address: bytes, key: bytes) -> bytes:
        delta = self
        while isinstance(delta, StateDelta):
            slots = delta.storage.get(address)
            if slots is not None and key in slots:
                return slots[key]
            delta = delta.parent
        return delta.storage_at(address, key)

    def exists(self, address: bytes) -> bool:
        return (self.balance_of(address) != 0 or self.nonce_of(address) != 0
                or bool(self.code_of(address)) or self.root.exists(address))

    def get_account(self, address: bytes) -> Account:
        """Merged view of the account, storage included."""
        account = self.root.get_account(address)
        overlay = self._overlay(address)
        if overlay is not None:
            account.balance = overlay.balance
            account.nonce = overlay.nonce
            account.code = overlay.code
        chain = []
        delta = self
        while isinstance(delta, StateDelta):
            chain.append(delta)
            delta = delta.parent
        for delta in reversed(chain):
            for key, value in delta.storage.get(address, {}).items():
                if value == ZERO_WORD:
                    account.storage.pop(key, None)
                else:
                    account.storage[key] = value
        return account

    @property
    def root(self) -> StateStore:
        delta = self.parent
        while isinstance(delta, StateDelta):
            delta = delta.parent
        return delta

    def touched(self) -> set:
        return set(self.accounts) | set(self.storage)

    # ------------------------------------------------------------------ #
    # Writes
    # ------------------------------------------------------------------ #
    def _touch(self, address: bytes) -> Account:
        account = self.accounts.get(address)
        if account is None:
            account = Account(
                balance=self.balance_of(address),
                nonce=self.nonce_of(address),
                code=self.code_of(address),
            )
            self.accounts[address] = account
        return account

    def set_balance(self, address: bytes, amount: int):
        if amount < 0:
            raise ValidationError("balance cannot be negative")
        self._touch(address).balance = amount

    def add_balance(self, address: bytes, amount: int):
        self._touch(address).balance += amount

    def sub_balance(self, address: bytes, amount: int):
        account = self._touch(address)
        if account.balance < amount:
            raise ValidationError(f"insufficient balance for {address.hex()}")
        account.balance -= amount

    def transfer(self, sender: bytes, recipient: bytes, amount: int):
        if amount == 0:
            return
        self.sub_balance(sender, amount)
        self.add_balance(recipient, amount)

    def set_nonce(self, address: bytes, nonce: int):
        self._touch(address).nonce = nonce

    def increment_nonce(self, address: bytes):
        self._touch(address).nonce += 1

    def set_code(self, address: bytes, code: bytes):
        self._touch(address).code = bytes(code)

    def set_storage(self, address: bytes, key: bytes, value: bytes):
        _check_word(key, "storage key")
        _check_word(value, "storage value")
        self.storage.setdefault(address, {})[bytes(key)] = bytes(value)

    def child(self) -> 'StateDelta':
        return StateDelta(self)

    def commit(self):
        """Merges this delta into its parent delta."""
        if not isinstance(self.parent, StateDelta):
            raise ValidationError("top-level deltas are applied to the store, not committed")
        for address, account in self.accounts.items():
            self.parent.accounts[address] = account
        for address, slots in self.storage.items():
            self.parent.storage.setdefault(address, {}).update(slots)
        self.discard()

    def discard(self):
        self.accounts = {}
        self.storage = {}

    def __bool__(self):
        return bool(self.accounts or self.storage)
