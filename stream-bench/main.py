import os
import sys
import logging
import argparse
import asyncio

# Required: Use uvloop for better performance
import uvloop
asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

# Add the current directory to Python path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from configuration import (
    SERVICE_URL, STREAM_NAME_PREFIX, STREAM_REPLICATION_FACTOR,
    STREAM_BACKLOG_DURATION_SECONDS, STREAM_PARTITIONS, RECORD_SIZE_BYTES,
    BATCH_AGE_LIMIT_MS, BATCH_BYTES_LIMIT, REPORT_INTERVAL_SECONDS, RATE_LIMIT,
    ORDERING_KEYS, TOTAL_BYTES_LIMIT, PAYLOAD_TYPES, DEFAULT_PAYLOAD_TYPE,
    CONSUMER_COUNT, ACK_TIMEOUT_SECONDS, RUN_DURATION_SECONDS, PROMETHEUS_PORT
)

# Set up logging (only if not already configured)
if not logging.root.handlers:
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


class StreamBenchCLI:
    """CLI interface for the stream write/read benchmark."""

    def __init__(self):
        self.parser = self._create_parser()

    def _create_parser(self):
        """Create the main argument parser."""
        parser = argparse.ArgumentParser(
            description='Stream write/read benchmark CLI',
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Examples:
  # Dry run against the in-process stream service for one minute
  python main.py bench --duration 60

  # 50k records/s of 1 KiB against a Kafka cluster with 4 consumers
  python main.py bench --service-url kafka://localhost:9092 --rate-limit 50000 --consumer-count 4

  # Delete streams left behind by earlier runs
  python main.py purge --service-url kafka://localhost:9092
            """
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        # Bench command
        bench_parser = subparsers.add_parser('bench', help='Run the write/read benchmark')
        bench_parser.add_argument('--service-url', type=str, default=SERVICE_URL,
                                help=f'Stream service URL (default: {SERVICE_URL})')
        bench_parser.add_argument('--stream-name-prefix', type=str, default=STREAM_NAME_PREFIX,
                                help=f'Prefix of the benchmark stream name (default: {STREAM_NAME_PREFIX})')
        bench_parser.add_argument('--stream-replication-factor', type=int, default=STREAM_REPLICATION_FACTOR,
                                help=f'Stream replication factor (default: {STREAM_REPLICATION_FACTOR})')
        bench_parser.add_argument('--stream-backlog-duration', type=int, default=STREAM_BACKLOG_DURATION_SECONDS,
                                help=f'Stream backlog duration in seconds (default: {STREAM_BACKLOG_DURATION_SECONDS})')
        bench_parser.add_argument('--stream-partitions', type=int, default=STREAM_PARTITIONS,
                                help=f'Number of stream partitions (default: {STREAM_PARTITIONS})')
        bench_parser.add_argument('--record-size', type=int, default=RECORD_SIZE_BYTES,
                                help=f'Record size in bytes (default: {RECORD_SIZE_BYTES})')
        bench_parser.add_argument('--batch-age-limit', type=int, default=BATCH_AGE_LIMIT_MS,
                                help=f'Batch age limit in ms (default: {BATCH_AGE_LIMIT_MS})')
        bench_parser.add_argument('--batch-bytes-limit', type=int, default=BATCH_BYTES_LIMIT,
                                help=f'Batch bytes limit (default: {BATCH_BYTES_LIMIT})')
        bench_parser.add_argument('--report-interval', dest='report_interval_seconds', type=int,
                                default=REPORT_INTERVAL_SECONDS,
                                help=f'Report interval in seconds (default: {REPORT_INTERVAL_SECONDS})')
        bench_parser.add_argument('--rate-limit', type=int, default=RATE_LIMIT,
                                help=f'Records written per second (default: {RATE_LIMIT})')
        bench_parser.add_argument('--ordering-keys', type=int, default=ORDERING_KEYS,
                                help=f'Number of distinct ordering keys (default: {ORDERING_KEYS})')
        bench_parser.add_argument('--total-bytes-limit', type=int, default=TOTAL_BYTES_LIMIT,
                                help=f'In-flight bytes limit, -1 = unlimited (default: {TOTAL_BYTES_LIMIT})')
        bench_parser.add_argument('--record-type', dest='payload_type', choices=PAYLOAD_TYPES,
                                default=DEFAULT_PAYLOAD_TYPE,
                                help=f'Payload kind (default: {DEFAULT_PAYLOAD_TYPE})')
        bench_parser.add_argument('--consumer-count', type=int, default=CONSUMER_COUNT,
                                help=f'Number of consumers on the subscription (default: {CONSUMER_COUNT})')
        bench_parser.add_argument('--ack-timeout', dest='ack_timeout_seconds', type=int,
                                default=ACK_TIMEOUT_SECONDS,
                                help=f'Subscription ack timeout in seconds (default: {ACK_TIMEOUT_SECONDS})')
        bench_parser.add_argument('--duration', dest='duration_seconds', type=int,
                                default=RUN_DURATION_SECONDS,
                                help='Stop after this many seconds, 0 = run until interrupted (default: 0)')
        bench_parser.add_argument('--prometheus-port', type=int, default=PROMETHEUS_PORT,
                                help=f'Expose Prometheus metrics on this port, 0 = disabled (default: {PROMETHEUS_PORT})')
        bench_parser.add_argument('--delete-stream', action='store_true',
                                help='Delete the stream and subscription on exit')

        # Purge command
        purge_parser = subparsers.add_parser('purge', help='Delete streams left by earlier runs')
        purge_parser.add_argument('--service-url', type=str, default=SERVICE_URL,
                                help=f'Stream service URL (default: {SERVICE_URL})')
        purge_parser.add_argument('--stream-name-prefix', type=str, default=STREAM_NAME_PREFIX,
                                help=f'Delete streams with this prefix (default: {STREAM_NAME_PREFIX})')

        return parser

    async def run_bench(self, args):
        """Run the write/read benchmark."""
        from common.bench_config import BenchConfig
        from cli.benchmark import BenchmarkRunner, SetupError

        try:
            config = BenchConfig.from_args(args)
        except ValueError as e:
            logger.error(f"Invalid configuration: {e}")
            return 1

        print(config)

        exporter = None
        if config.prometheus_port:
            from metrics.prom import SimplePrometheusExporter
            exporter = SimplePrometheusExporter(config.prometheus_port)
            exporter.start_server()

        try:
            runner = BenchmarkRunner(config, exporter=exporter)
            summary = await runner.run_benchmark()
        except SetupError as e:
            logger.error(f"Benchmark setup failed: {e}")
            return 1
        except ValueError as e:
            logger.error(f"Invalid configuration: {e}")
            return 1

        logger.info(
            f"Benchmark finished: {summary['attempts']} writes issued, "
            f"{summary['success']} succeeded, {summary['failed']} failed, "
            f"{summary['fetched']} fetched"
        )
        return 0

    async def run_purge(self, args):
        """Delete benchmark streams."""
        from common.stream_factory import create_stream_system
        from cli.purge import StreamPurger

        try:
            purger = StreamPurger(create_stream_system(args.service_url), args.stream_name_prefix)
            deleted = await purger.purge()
        except Exception as e:
            logger.error(f"Error in purge: {e}")
            return 1

        for name in deleted:
            logger.info(f"  - {name}")
        return 0

    def run(self, args=None):
        """Run the CLI with the given arguments."""
        if args is None:
            args = sys.argv[1:]

        parsed_args = self.parser.parse_args(args)

        if not parsed_args.command:
            self.parser.print_help()
            return 1

        try:
            if parsed_args.command == 'bench':
                return asyncio.run(self.run_bench(parsed_args))
            elif parsed_args.command == 'purge':
                return asyncio.run(self.run_purge(parsed_args))
            else:
                logger.error(f"Unknown command: {parsed_args.command}")
                return 1

        except KeyboardInterrupt:
            logger.info("Operation interrupted by user")
            return 0


def main():
    """Main entry point."""
    cli = StreamBenchCLI()
    sys.exit(cli.run())


if __name__ == '__main__':
    main()
