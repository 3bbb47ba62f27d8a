# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Ingestion service entry point.

This module contains:
- IngestService: owns the store, mail client, ingestor, transport and
  retention sweeper, and their lifecycle
- main: CLI entry point
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from pathlib import Path

from magiclink.config import ConfigError, ServerConfig
from magiclink.ingest.jmap import JMAPClient
from magiclink.ingest.orchestrator import Ingestor
from magiclink.ingest.transport import IngestTransport, select_transport
from magiclink.logging import configure_logging
from magiclink.storage.retention import RetentionSweeper
from magiclink.storage.store import LinkStore, SQLiteLinkStore


logger = logging.getLogger(__name__)


class IngestService:
    """Runs ingestion and retention until stopped."""

    def __init__(
        self,
        config: ServerConfig,
        store: LinkStore | None = None,
        client: JMAPClient | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Complete service configuration.
            store: Link store.  If None, a SQLite store is opened at the
                configured database path.
            client: Mail client.  If None, one is created from the config.
        """
        self.config = config
        self.store: LinkStore = store or SQLiteLinkStore(config.database_path)
        self.client = client or JMAPClient(config.mailbox)
        self.ingestor = Ingestor(self.client, self.store)
        self.sweeper = RetentionSweeper(self.store, config.retention)
        self.transport: IngestTransport | None = None
        self._shutdown_event = threading.Event()
        self._stopped = False

    def run_once(self) -> bool:
        """Run a single ingestion cycle.

        Returns:
            True if the cycle completed without errors.
        """
        report = self.ingestor.run_cycle()
        return report is not None and report.ok

    def start(self) -> None:
        """Start retention and ingestion, then block until ``stop()``."""
        logger.info("Starting ingestion service...")
        self.sweeper.start()
        self.transport = select_transport(
            self.client, self.ingestor, self.config.ingest
        )
        self.transport.start()

        self._shutdown_event.wait()

    def stop(self) -> None:
        """Stop the service gracefully.  Safe to call more than once."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping ingestion service...")
        self.ingestor.shutdown()
        idle = True
        if self.transport is not None:
            idle = self.transport.stop()
        idle = self.sweeper.stop() and idle
        if idle:
            self.client.close()
            self.store.close()
        else:
            # A cycle past its first write must finish; the process exit
            # releases the client and store.
            logger.warning(
                "Background work still running; leaving client and store open"
            )
        self._shutdown_event.set()
        logger.info("Service stopped")


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        argv: Command-line arguments. If None, uses sys.argv[1:].

    Returns:
        Exit code (0=success, 1=config error, 2=startup, 3=runtime error).
    """
    parser = argparse.ArgumentParser(
        description="Magic link ingestion service",
        epilog="Collects login links sent to a catch-all mail domain.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single ingestion cycle and exit",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        metavar="PATH",
        help=(
            "Path to magiclink.yaml config file"
            " (default: ~/.config/magiclink/magiclink.yaml)"
        ),
    )
    args = parser.parse_args(argv)

    configure_logging(
        level=logging.DEBUG if args.debug else logging.INFO,
        add_secret_filter=True,
    )

    try:
        config = ServerConfig.from_yaml(config_path=args.config)
    except ConfigError as e:
        logger.critical("Configuration error: %s", e)
        return 1

    try:
        service = IngestService(config)
    except Exception as e:
        logger.exception("Failed to initialize service: %s", e)
        return 2

    if args.once:
        try:
            return 0 if service.run_once() else 3
        finally:
            service.stop()

    def shutdown_handler(signum: int, frame: object) -> None:
        """Handle shutdown signals."""
        logger.info("Received signal %d, initiating shutdown...", signum)
        service.stop()

    signal.signal(signal.SIGINT, shutdown_handler)
    signal.signal(signal.SIGTERM, shutdown_handler)

    try:
        service.start()
        return 0
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.exception("Fatal runtime error: %s", e)
        return 3
    finally:
        service.stop()
