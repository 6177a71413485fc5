import asyncio

import pytest

from simchain.bridge import EnvironmentClient
from simchain.errors import NonceTooHighError
from simchain.nonce_manager import NonceManager


class TestNonceManager:
    @pytest.mark.asyncio
    async def test_sequential_nonces(self, env, alice, bob):
        manager = NonceManager(EnvironmentClient(env), alice)
        for _ in range(3):
            await manager.send_transaction(to=bob, value=1)
        assert env.nonce_of(alice) == 3
        assert manager.stats['issued'] == 3
        assert manager.stats['resyncs'] == 1

    @pytest.mark.asyncio
    async def test_concurrent_senders_share_one_counter(self, env, alice, bob):
        manager = NonceManager(EnvironmentClient(env), alice)
        hashes = await asyncio.gather(*(manager.send_transaction(to=bob, value=1) for _ in range(5)))
        assert len(set(hashes)) == 5
        assert env.nonce_of(alice) == 5

    @pytest.mark.asyncio
    async def test_resync_after_mismatch(self, env, alice, bob):
        manager = NonceManager(EnvironmentClient(env), alice)
        await manager.send_transaction(to=bob)
        await env.set_nonce(alice, 0)

        with pytest.raises(NonceTooHighError):
            await manager.send_transaction(to=bob)
        await manager.send_transaction(to=bob)
        assert env.nonce_of(alice) == 1
        assert manager.stats['resyncs'] == 2
