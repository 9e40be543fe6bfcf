"""
Simple Prometheus metrics exporter for the stream benchmark.
"""

import logging
from prometheus_client import REGISTRY, start_http_server, Counter, Gauge

from metrics.sample import ReportWindow

logger = logging.getLogger(__name__)


class SimplePrometheusExporter:
    """Simple Prometheus metrics exporter."""

    def __init__(self, port: int = 9100, registry=REGISTRY):
        self.port = port
        self.registry = registry
        self.server_started = False

        # Define metrics
        self.writes_total = Counter(
            'stream_bench_writes_total', 'Completed writes', ['status'], registry=registry
        )
        self.fetched_total = Counter(
            'stream_bench_fetched_total', 'Records fetched and acknowledged', registry=registry
        )
        self.ack_failures = Gauge(
            'stream_bench_ack_failures', 'Acknowledgements that raised', registry=registry
        )
        self.write_rate = Gauge(
            'stream_bench_write_rate', 'Write rate in records/s', ['status'], registry=registry
        )
        self.write_throughput = Gauge(
            'stream_bench_write_throughput_mb', 'Write throughput in MB/s', registry=registry
        )
        self.fetch_throughput = Gauge(
            'stream_bench_fetch_throughput_mb', 'Fetch throughput in MB/s', registry=registry
        )

    def start_server(self):
        """Start the Prometheus HTTP server."""
        if not self.server_started:
            try:
                start_http_server(self.port, registry=self.registry)
                self.server_started = True
                logger.info(f"Prometheus server started on port {self.port}")
            except Exception as e:
                logger.error(f"Failed to start Prometheus server: {e}")

    def update(self, window: ReportWindow, ack_failures: int):
        """Publish one report window."""
        try:
            self.writes_total.labels(status='success').inc(window.success)
            self.writes_total.labels(status='failed').inc(window.failed)
            self.fetched_total.inc(window.fetched)
            self.ack_failures.set(ack_failures)
            self.write_rate.labels(status='success').set(window.success_per_second)
            self.write_rate.labels(status='failed').set(window.failure_per_second)
            self.write_throughput.set(window.throughput_mb)
            self.fetch_throughput.set(window.fetch_throughput_mb)
        except Exception as e:
            logger.error(f"Failed to update metrics: {e}")
