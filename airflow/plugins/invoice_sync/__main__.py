"""
Invoice sync worker process.

Runs until SIGINT/SIGTERM, one cycle every INVOICE_SYNC_POLL_INTERVAL_SECONDS.
A stop request lets the running cycle finish before the process exits.

Usage:
    python -m invoice_sync            # long-lived worker
    python -m invoice_sync --once     # one cycle, exit 0 on success, 1 on failure
"""
import argparse
import logging
import signal
import sys
import threading
from dataclasses import replace

from invoice_sync.config import load_settings
from invoice_sync.errors import ConfigurationError
from invoice_sync.logging_setup import configure_logging
from invoice_sync.sync import SyncWorker

logger = logging.getLogger("invoice_sync")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Invoice incremental sync worker")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single cycle and exit",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Override INVOICE_SYNC_LOG_LEVEL",
    )
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    if args.log_level:
        settings = replace(settings, log_level=args.log_level)

    configure_logging(settings)
    logger.info("Starting invoice sync worker: %s", settings.describe())

    worker = SyncWorker.from_settings(settings)

    if args.once:
        result = worker.run_cycle()
        logger.info("Cycle result: %s", result.to_dict())
        return 0 if result.success else 1

    stop_event = threading.Event()

    def _request_stop(signum, _frame):
        logger.info("Received %s, stopping after the current cycle", signal.Signals(signum).name)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    worker.run_forever(stop_event)
    return 0


if __name__ == "__main__":
    sys.exit(main())
