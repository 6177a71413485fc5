import msgpack
import pytest

from simchain.config import Config
from simchain.conftest import GET, INCREMENT
from simchain.core import Success, TransactionRequest
from simchain.environment import Environment
from simchain.errors import SnapshotError, SubscriptionCancelled
from simchain.utils.encoding import pad32


class TestSnapshots:
    @pytest.mark.asyncio
    async def test_rollback_restores_everything(self, env, alice, bob, counter):
        snapshot_id = await env.snapshot()
        state = env.export_state()
        block_number = env.block_number
        log_count = len(env.logs)

        results = []
        for _ in range(3):
            results.append(await env.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT)))
        await env.send(TransactionRequest(sender=bob, to=alice, value=10**18, gas_price=1))
        await env.deal(bob, 1)
        assert env.export_state() != state

        await env.rollback(snapshot_id)
        assert env.export_state() == state
        assert env.block_number == block_number
        assert len(env.logs) == log_count
        assert all(env.get_receipt(r.transaction_hash) is None for r in results)
        assert env.call(TransactionRequest(sender=alice, to=counter, data=GET)).return_data == pad32(0)

    @pytest.mark.asyncio
    async def test_rollback_keeps_target_and_drops_newer(self, env, alice, bob):
        first = await env.snapshot()
        await env.send(TransactionRequest(sender=alice, to=bob, value=1))
        second = await env.snapshot()
        assert env.snapshot_ids() == [first, second]

        await env.rollback(first)
        assert env.snapshot_ids() == [first]
        with pytest.raises(SnapshotError):
            await env.rollback(second)

        # the kept snapshot can be reused
        await env.send(TransactionRequest(sender=alice, to=bob, value=1))
        await env.rollback(first)
        assert env.nonce_of(alice) == 0

    @pytest.mark.asyncio
    async def test_unknown_snapshot(self, env):
        with pytest.raises(SnapshotError):
            await env.rollback(99)
        with pytest.raises(SnapshotError):
            env.export_snapshot(99)

    @pytest.mark.asyncio
    async def test_nonces_continue_after_rollback(self, env, alice, bob):
        await env.send(TransactionRequest(sender=alice, to=bob))
        snapshot_id = await env.snapshot()
        await env.send(TransactionRequest(sender=alice, to=bob))
        await env.rollback(snapshot_id)
        result = await env.send(TransactionRequest(sender=alice, to=bob, nonce=1))
        assert isinstance(result, Success)

    @pytest.mark.asyncio
    async def test_max_snapshots(self, alice):
        config = Config.default()
        config.environment.max_snapshots = 2
        async with Environment(config=config, accounts={alice: 1}) as env:
            ids = [await env.snapshot() for _ in range(3)]
            assert env.snapshot_ids() == ids[1:]


class TestRollbackSubscriptions:
    @pytest.mark.asyncio
    async def test_subscription_past_snapshot_is_cancelled(self, env, alice, counter):
        snapshot_id = await env.snapshot()
        sub = env.subscribe(addresses=[counter])
        await env.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT))

        await env.rollback(snapshot_id)
        assert sub.id not in env.subscriptions

        log = await sub.get()
        assert log.data == pad32(1)
        with pytest.raises(SubscriptionCancelled):
            await sub.get()

    @pytest.mark.asyncio
    async def test_subscription_behind_snapshot_survives(self, env, alice, counter):
        sub = env.subscribe(addresses=[counter])
        snapshot_id = await env.snapshot()
        await env.rollback(snapshot_id)
        assert sub.id in env.subscriptions

        await env.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT))
        assert [log.data for log in sub.drain()] == [pad32(1)]


class TestExport:
    @pytest.mark.asyncio
    async def test_export_and_restore(self, env, alice, bob, counter):
        await env.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT))
        await env.set_gas_price(3)
        snapshot_id = await env.snapshot()
        data = env.export_snapshot(snapshot_id)

        restored = Environment.from_snapshot(data)
        assert restored.export_state() == env.export_state()
        assert restored.block_number == env.block_number
        assert restored.gas_price == 3
        assert restored.queue.last_seq >= env.queue.last_seq

        async with restored:
            result = await restored.send(TransactionRequest(sender=alice, to=counter, data=INCREMENT))
            assert result.return_data == pad32(2)
            assert result.block_number == env.block_number + 1
            assert restored.nonce_of(alice) == env.nonce_of(alice) + 1

    @pytest.mark.asyncio
    async def test_restore_mid_block_in_batched_mode(self, batched_env, alice, bob, counter_code):
        env = batched_env
        deploy = await env.send(TransactionRequest(sender=alice, data=counter_code))
        first = await env.send(TransactionRequest(sender=alice, to=deploy.contract_address, data=INCREMENT))
        snapshot_id = await env.snapshot()
        data = env.export_snapshot(snapshot_id)

        restored = Environment.from_snapshot(data)
        assert restored.pending_block.transactions == [deploy.transaction_hash, first.transaction_hash]
        assert restored.get_receipt(first.transaction_hash).logs[0].data == pad32(1)

        async with restored:
            second = await restored.send(TransactionRequest(sender=alice, to=deploy.contract_address,
                                                            data=INCREMENT))
            transfer = await restored.send(TransactionRequest(sender=alice, to=bob, value=1))
            assert isinstance(transfer, Success)
            assert (second.transaction_index, transfer.transaction_index) == (2, 3)
            assert restored.nonce_of(alice) == 4

            receipt = restored.get_receipt(second.transaction_hash)
            assert [log.log_index for log in receipt.logs] == [1]
            assert receipt.cumulative_gas_used == restored.pending_block.gas_used - transfer.gas_used

            sealed = await restored.advance_block()
            assert sealed.transactions == [deploy.transaction_hash, first.transaction_hash,
                                           second.transaction_hash, transfer.transaction_hash]
            assert [log.data for log in restored.get_logs()] == [pad32(1), pad32(2)]

    @pytest.mark.asyncio
    async def test_restore_leaves_caller_config_alone(self, env, alice, bob):
        await env.set_gas_price(3)
        data = env.export_snapshot(await env.snapshot())

        config = Config.default()
        config.chain.chain_id = 5
        restored = Environment.from_snapshot(data, config=config)
        assert restored.chain_id == env.chain_id
        assert restored.gas_price == 3
        assert config.chain.chain_id == 5
        assert config.chain.gas_price == Config.default().chain.gas_price

    def test_rejects_garbage(self):
        with pytest.raises(SnapshotError):
            Environment.from_snapshot(b"\xc1not msgpack")

    def test_rejects_unknown_version(self):
        with pytest.raises(SnapshotError):
            Environment.from_snapshot(msgpack.packb({"version": 99}))
