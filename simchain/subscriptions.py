"""
Log subscriptions.

Registration and fan-out both run on the event loop thread without awaiting,
so a subscription registered between two requests sees exactly the logs of
the requests queued after it.
"""
import asyncio
import itertools
import logging
from typing import Iterable, Optional

from .core import LogEvent
from .errors import SubscriptionCancelled

logger = logging.getLogger(__name__)

_CLOSED = object()


class LogFilter:
    """
    Address and topic filter following the eth_getLogs convention.

    `addresses` is None for any address. `topics` is positional: each entry
    is None (any value) or a collection of accepted 32-byte values.
    """

    def __init__(self, addresses: Optional[Iterable[bytes]] = None, topics: Optional[Iterable] = None):
        self.addresses = frozenset(addresses) if addresses is not None else None
        positions = []
        for position in topics or ():
            if position is None:
                positions.append(None)
            elif isinstance(position, (bytes, bytearray)):
                positions.append(frozenset([bytes(position)]))
            else:
                positions.append(frozenset(position) or None)
        self.topics = tuple(positions)

    def matches(self, log: LogEvent) -> bool:
        if self.addresses is not None and log.address not in self.addresses:
            return False
        if len(self.topics) > len(log.topics):
            return False
        for accepted, topic in zip(self.topics, log.topics):
            if accepted is not None and topic not in accepted:
                return False
        return True

    def __repr__(self):
        return f"LogFilter(addresses={self.addresses}, topics={self.topics})"


class Subscription:
    """
    A live stream of matching logs.

    Iterate with `async for`; iteration ends after unsubscribe or shutdown
    and raises SubscriptionCancelled when a rollback invalidated the stream.
    """

    def __init__(self, sub_id: int, log_filter: LogFilter, registered_at: int):
        self.id = sub_id
        self.filter = log_filter
        self.registered_at = registered_at
        # Sequence number of the last request whose logs were delivered
        self.cursor = registered_at
        self.active = True
        self.cancel_reason = None
        self.delivered = 0
        self._channel = asyncio.Queue()

    def deliver(self, seq: int, logs: list) -> int:
        """Queues the matching logs of request `seq`; returns how many matched."""
        if not self.active or seq <= self.registered_at:
            return 0
        matched = 0
        for log in logs:
            if self.filter.matches(log):
                self._channel.put_nowait(log)
                matched += 1
        if matched:
            self.cursor = seq
            self.delivered += matched
        return matched

    def close(self):
        """Ends the stream normally (unsubscribe, shutdown)."""
        if self.active:
            self.active = False
            self._channel.put_nowait(_CLOSED)

    def cancel(self, reason: str):
        """Ends the stream with a SubscriptionCancelled signal."""
        if self.active:
            self.active = False
            self.cancel_reason = reason
            self._channel.put_nowait(SubscriptionCancelled(self.id, reason))

    def _unwrap(self, item):
        if item is _CLOSED:
            # Keep the marker so later readers also see the end of the stream
            self._channel.put_nowait(_CLOSED)
            raise StopAsyncIteration
        if isinstance(item, SubscriptionCancelled):
            self._channel.put_nowait(item)
            raise item
        return item

    async def get(self) -> LogEvent:
        return self._unwrap(await self._channel.get())

    def drain(self) -> list:
        """Returns every log queued so far without waiting."""
        logs = []
        while not self._channel.empty():
            item = self._channel.get_nowait()
            if item is _CLOSED or isinstance(item, SubscriptionCancelled):
                self._channel.put_nowait(item)
                if isinstance(item, SubscriptionCancelled) and not logs:
                    raise item
                break
            logs.append(item)
        return logs

    def __aiter__(self):
        return self

    async def __anext__(self) -> LogEvent:
        return await self.get()

    def __repr__(self):
        return f"Subscription(id={self.id}, registered_at={self.registered_at}, active={self.active})"


class SubscriptionRegistry:
    def __init__(self):
        self._subscriptions = {}
        self._ids = itertools.count(1)

    def register(self, log_filter: LogFilter, registered_at: int) -> Subscription:
        subscription = Subscription(next(self._ids), log_filter, registered_at)
        self._subscriptions[subscription.id] = subscription
        logger.debug(f"Subscription {subscription.id} registered at seq {registered_at}")
        return subscription

    def unregister(self, sub_id: int) -> bool:
        subscription = self._subscriptions.pop(sub_id, None)
        if subscription is None:
            return False
        subscription.close()
        return True

    def get(self, sub_id: int) -> Optional[Subscription]:
        return self._subscriptions.get(sub_id)

    def publish(self, seq: int, logs: list) -> int:
        """Fans the logs of request `seq` out to every live subscription."""
        if not logs:
            return 0
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            delivered += subscription.deliver(seq, logs)
        return delivered

    def invalidate_after(self, seq: int) -> list:
        """Cancels subscriptions whose cursor lies past `seq`; returns their ids."""
        cancelled = []
        for sub_id, subscription in list(self._subscriptions.items()):
            if subscription.cursor > seq:
                subscription.cancel(f"rolled back to seq {seq}")
                del self._subscriptions[sub_id]
                cancelled.append(sub_id)
        if cancelled:
            logger.info(f"Rollback cancelled subscriptions {cancelled}")
        return cancelled

    def close_all(self):
        for subscription in self._subscriptions.values():
            subscription.close()
        self._subscriptions.clear()

    def __len__(self):
        return len(self._subscriptions)

    def __contains__(self, sub_id: int) -> bool:
        return sub_id in self._subscriptions
