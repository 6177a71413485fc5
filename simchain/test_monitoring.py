import pytest
import requests

from simchain.config import Config
from simchain.core import TransactionRequest
from simchain.environment import Environment
from simchain.monitoring import Monitor


class TestMonitor:
    @pytest.mark.asyncio
    async def test_render_reports_environment(self, env, alice, bob):
        monitor = Monitor(env)
        await env.send(TransactionRequest(sender=alice, to=bob, value=1))
        monitor.record_tx("success", 0.01)
        monitor.record_tx("revert", 0.02)
        monitor.update()

        text = monitor.render().decode()
        assert 'simchain_transactions_total{status="success"} 1.0' in text
        assert 'simchain_transactions_total{status="revert"} 1.0' in text
        assert "simchain_block_number 1.0" in text
        assert "simchain_queue_depth 0.0" in text

    @pytest.mark.asyncio
    async def test_environment_serves_metrics(self, alice, bob):
        config = Config.default()
        config.monitoring.enabled = True
        config.monitoring.port = 0
        async with Environment(config=config, accounts={alice: 10**18}) as env:
            await env.send(TransactionRequest(sender=alice, to=bob, value=1))
            url = f"http://{env.monitor.host}:{env.monitor.port}/metrics"
            body = requests.get(url, timeout=5).text
            assert 'simchain_transactions_total{status="success"} 1.0' in body
        assert env.monitor.server is None
