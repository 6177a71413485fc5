import asyncio

import pytest

from simchain.conftest import COUNTER_TOPIC, FAIL, INCREMENT
from simchain.core import LogEvent, TransactionRequest
from simchain.errors import EnvironmentClosedError, SubscriptionCancelled
from simchain.subscriptions import LogFilter, SubscriptionRegistry
from simchain.utils.encoding import pad32

ADDR = b"\x01" * 20
OTHER = b"\x02" * 20
T1 = b"\xa1" * 32
T2 = b"\xa2" * 32


def make_log(address=ADDR, topics=(T1,), data=b""):
    return LogEvent(address=address, topics=topics, data=data)


class TestLogFilter:
    def test_empty_filter_matches_everything(self):
        assert LogFilter().matches(make_log())
        assert LogFilter().matches(make_log(topics=()))

    def test_address_filter(self):
        log_filter = LogFilter(addresses=[ADDR])
        assert log_filter.matches(make_log())
        assert not log_filter.matches(make_log(address=OTHER))

    def test_positional_topics(self):
        assert LogFilter(topics=[T1]).matches(make_log(topics=(T1, T2)))
        assert LogFilter(topics=[None, T2]).matches(make_log(topics=(T1, T2)))
        assert LogFilter(topics=[[T1, T2]]).matches(make_log(topics=(T2,)))
        assert not LogFilter(topics=[T2]).matches(make_log(topics=(T1,)))
        assert not LogFilter(topics=[T1, T2]).matches(make_log(topics=(T1,)))


class TestRegistry:
    @pytest.mark.asyncio
    async def test_only_later_requests_are_delivered(self):
        registry = SubscriptionRegistry()
        sub = registry.register(LogFilter(), registered_at=5)
        registry.publish(5, [make_log(data=b"old")])
        registry.publish(6, [make_log(data=b"new")])
        assert [log.data for log in sub.drain()] == [b"new"]
        assert sub.cursor == 6

    @pytest.mark.asyncio
    async def test_invalidate_after_cancels_advanced_cursors(self):
        registry = SubscriptionRegistry()
        behind = registry.register(LogFilter(addresses=[ADDR]), registered_at=1)
        ahead = registry.register(LogFilter(), registered_at=1)
        late = registry.register(LogFilter(), registered_at=4)
        registry.publish(3, [make_log(address=OTHER)])

        assert registry.invalidate_after(2) == [ahead.id, late.id]
        assert behind.id in registry
        assert behind.active
        assert not ahead.active
        assert ahead.cancel_reason is not None

        # logs delivered before the rollback are still readable, then the stream fails
        assert [log.address for log in ahead.drain()] == [OTHER]
        with pytest.raises(SubscriptionCancelled):
            ahead.drain()
        with pytest.raises(SubscriptionCancelled):
            await late.get()


class TestEnvironmentSubscriptions:
    @pytest.mark.asyncio
    async def test_subscription_sees_logs_after_registration_only(self, env, alice, counter):
        await env.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT))
        sub = env.subscribe(addresses=[counter])
        await env.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT))

        log = await asyncio.wait_for(sub.get(), timeout=1)
        assert log.data == pad32(2)
        assert log.topics == (COUNTER_TOPIC,)
        assert sub.drain() == []

    @pytest.mark.asyncio
    async def test_registration_between_queued_requests(self, env, alice, counter):
        first = env.submit(TransactionRequest(sender=alice, to=counter, data=INCREMENT))
        sub = env.subscribe(topics=[COUNTER_TOPIC])
        second = env.submit(TransactionRequest(sender=alice, to=counter, data=INCREMENT))
        await asyncio.gather(first, second)
        assert [log.data for log in sub.drain()] == [pad32(2)]

    @pytest.mark.asyncio
    async def test_reverted_transactions_emit_nothing(self, env, alice, counter):
        sub = env.subscribe()
        await env.send(TransactionRequest(sender=alice, to=counter, data=FAIL))
        assert sub.drain() == []

    @pytest.mark.asyncio
    async def test_unsubscribe_ends_iteration(self, env, alice, counter):
        sub = env.subscribe(addresses=[counter])
        for _ in range(3):
            await env.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT))
        assert env.unsubscribe(sub)
        assert not env.unsubscribe(sub.id)

        received = [log.data async for log in sub]
        assert received == [pad32(1), pad32(2), pad32(3)]

    @pytest.mark.asyncio
    async def test_filtered_out_logs(self, env, alice, counter):
        sub = env.subscribe(topics=[b"\x22" * 32])
        await env.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT))
        assert sub.drain() == []

    @pytest.mark.asyncio
    async def test_stop_closes_subscriptions(self, env):
        sub = env.subscribe()
        await env.stop()
        assert [log async for log in sub] == []
        with pytest.raises(EnvironmentClosedError):
            env.subscribe()
