# simchain/monitoring.py
import time
import psutil
import socket
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app, generate_latest
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn
import threading
import logging

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that answers scrapes from its own threads."""
    allow_reuse_address = True
    daemon_threads = True


class Monitor:
    def __init__(self, environment, host="127.0.0.1", port=9090, serve=False):
        self.environment = environment
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Variables for TPS calculation
        self.last_time = time.time()
        self.last_tx_count = 0
        self.total_transactions = 0

        # Isolated registry so several environments can live in one process
        self.registry = CollectorRegistry()

        self.tx_counter = Counter('simchain_transactions_total', 'Transactions processed, by outcome', ['status'], registry=self.registry)
        self.tx_latency = Histogram('simchain_tx_latency_seconds', 'Time from submit to result', registry=self.registry)
        self.queue_depth = Gauge('simchain_queue_depth', 'Requests waiting in the queue', registry=self.registry)
        self.block_number = Gauge('simchain_block_number', 'Number of the latest sealed block', registry=self.registry)
        self.subscriptions = Gauge('simchain_subscriptions', 'Live log subscriptions', registry=self.registry)
        self.snapshots = Gauge('simchain_snapshots', 'Valid snapshots held', registry=self.registry)
        self.tps = Gauge('simchain_tps', 'Transactions per second', registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)
        self.process_rss = Gauge('process_resident_memory_bytes_simchain', 'Resident memory of this process', registry=self.registry)

        if serve:
            self.start_server()

    def start_server(self):
        """Starts the Prometheus HTTP endpoint in a daemon thread."""
        app = make_wsgi_app(self.registry)
        self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
        self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        # Port 0 binds an ephemeral port
        self.port = self.server.server_port

        self.thread = threading.Thread(target=self.server.serve_forever)
        self.thread.daemon = True
        self.thread.start()
        logger.info(f"Prometheus server started on http://{self.host}:{self.port}")

    def stop_server(self):
        """Stops the HTTP server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def update(self):
        env = self.environment
        self.block_number.set(env.block_number)
        self.queue_depth.set(env.queue.pending())
        self.subscriptions.set(len(env.subscriptions))
        self.snapshots.set(len(env.snapshot_ids()))

        now = time.time()
        elapsed = now - self.last_time
        if elapsed > 0:
            self.tps.set((self.total_transactions - self.last_tx_count) / elapsed)
        self.last_tx_count = self.total_transactions
        self.last_time = now

        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)
        self.process_rss.set(psutil.Process().memory_info().rss)

    def record_tx(self, status: str, latency: float):
        self.total_transactions += 1
        self.tx_counter.labels(status=status).inc()
        self.tx_latency.observe(latency)

    def render(self) -> bytes:
        """Current metrics in the Prometheus text format."""
        return generate_latest(self.registry)
