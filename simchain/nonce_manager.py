"""
Client-side nonce tracking for high-throughput senders.
"""
import asyncio
import logging
from typing import Optional

from .bridge import ChainClient
from .errors import NonceMismatchError

logger = logging.getLogger(__name__)


class NonceManager:
    """
    Hands out sequential nonces for one sender without a round trip per
    transaction. After a nonce error the next send re-reads the chain.
    """

    def __init__(self, client: ChainClient, address: bytes):
        self.client = client
        self.address = address
        self._next: Optional[int] = None
        self._lock = asyncio.Lock()
        self.stats = {
            'issued': 0,
            'resyncs': 0,
        }

    async def sync(self) -> int:
        """Reloads the next nonce from the chain."""
        async with self._lock:
            self._next = await self.client.get_transaction_count(self.address)
            self.stats['resyncs'] += 1
            logger.debug(f"Nonce for {self.address.hex()} synced to {self._next}")
            return self._next

    async def next(self) -> int:
        """Reserves the next nonce."""
        if self._next is None:
            await self.sync()
        async with self._lock:
            nonce = self._next
            self._next += 1
            self.stats['issued'] += 1
            return nonce

    def reset(self):
        """Forces a resync before the next nonce is issued."""
        self._next = None

    async def send_transaction(self, **kwargs) -> bytes:
        """Sends a transaction from `address` with a managed nonce."""
        nonce = await self.next()
        try:
            return await self.client.send_transaction(self.address, nonce=nonce, **kwargs)
        except NonceMismatchError:
            logger.warning(f"Nonce {nonce} rejected for {self.address.hex()}, resyncing")
            self.reset()
            raise
