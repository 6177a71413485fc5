"""
The request queue: the single point where asynchronous callers hand work to
the execution core.

Every accepted request gets the next sequence number at the moment put() is
called, so the global order is the order of put() calls no matter which task
makes them. One worker task drains the queue strictly one item at a time.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from .errors import SimchainError

logger = logging.getLogger(__name__)

# Request kinds
TRANSACTION = "transaction"
ADVANCE_BLOCK = "advance_block"
SNAPSHOT = "snapshot"
ROLLBACK = "rollback"
CHEAT = "cheat"


class QueueClosed(Exception):
    pass


class QueueFull(Exception):
    pass


@dataclass
class QueuedRequest:
    seq: int
    kind: str
    payload: Any
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


class RequestQueue:
    def __init__(self, max_size: int = 0):
        """
        Args:
            max_size: Maximum number of pending requests; 0 means unbounded.
        """
        self.max_size = max_size
        self._queue = asyncio.Queue()
        self._last_seq = 0
        self._closed = False
        self._worker = None
        self._pending = 0
        self.stats = {
            'total_accepted': 0,
            'total_rejected': 0,
            'total_processed': 0,
        }

    @property
    def last_seq(self) -> int:
        """Sequence number of the most recently accepted request."""
        return self._last_seq

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._pending

    def put(self, kind: str, payload: Any = None) -> QueuedRequest:
        """
        Accepts a request synchronously and returns it with its sequence number.

        Raises QueueClosed once close() was called and QueueFull when the
        bounded queue has no room.
        """
        if self._closed:
            self.stats['total_rejected'] += 1
            raise QueueClosed("request queue closed")
        if self.max_size and self._pending >= self.max_size:
            self.stats['total_rejected'] += 1
            raise QueueFull(f"request queue full ({self.max_size} pending)")

        self._last_seq += 1
        loop = asyncio.get_running_loop()
        item = QueuedRequest(self._last_seq, kind, payload, loop.create_future())
        self._queue.put_nowait(item)
        self._pending += 1
        self.stats['total_accepted'] += 1
        return item

    def restore_position(self, seq: int):
        """Continues numbering after `seq` (used when loading a snapshot)."""
        self._last_seq = max(self._last_seq, seq)

    def start(self, handler: Callable[[QueuedRequest], Awaitable[Any]]) -> asyncio.Task:
        """Starts the worker task feeding each request to `handler` in order."""
        if self._worker is None:
            self._worker = asyncio.get_running_loop().create_task(self._run(handler))
        return self._worker

    def close(self):
        """Stops accepting requests; the worker exits after draining what is queued."""
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(None)

    async def join(self):
        if self._worker is not None:
            await self._worker

    async def _run(self, handler):
        while True:
            item: Optional[QueuedRequest] = await self._queue.get()
            if item is None:
                break
            try:
                result = await handler(item)
            except SimchainError as e:
                logger.debug(f"Request {item.seq} ({item.kind}) rejected: {e}")
                if not item.future.done():
                    item.future.set_exception(e)
            except Exception as e:
                logger.error(f"Request {item.seq} ({item.kind}) failed: {e}", exc_info=True)
                if not item.future.done():
                    item.future.set_exception(e)
            else:
                # A caller that stopped waiting leaves a cancelled future behind; the effect stands
                if not item.future.done():
                    item.future.set_result(result)
            finally:
                self._pending -= 1
                self.stats['total_processed'] += 1
            # Let resolved callers run before the next request
            await asyncio.sleep(0)
        logger.debug(f"Request queue drained after seq {self._last_seq}")

    def get_stats(self) -> dict:
        return {
            **self.stats,
            'pending': self._pending,
            'last_seq': self._last_seq,
        }

    def __len__(self):
        return self._pending
