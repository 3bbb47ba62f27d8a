# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Periodic deletion of old magic links."""

from __future__ import annotations

import logging
import threading
from datetime import UTC, datetime, timedelta

from magiclink.config import RetentionConfig
from magiclink.storage.store import LinkStore, StoreError


logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Deletes links older than the retention window on a fixed interval.

    Age is measured from each link's ``received_at``, not from when it was
    ingested.
    """

    def __init__(self, store: LinkStore, config: RetentionConfig) -> None:
        self._store = store
        self._config = config
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def sweep(self, now: datetime | None = None) -> int:
        """Delete expired links once.

        Args:
            now: Reference time.  Defaults to the current UTC time.

        Returns:
            Number of links deleted.
        """
        if now is None:
            now = datetime.now(UTC)
        cutoff = now - timedelta(hours=self._config.link_retention_hours)
        deleted = self._store.delete_links_received_before(cutoff)
        if deleted:
            logger.info("Retention sweep removed %d links", deleted)
        else:
            logger.debug("Retention sweep removed no links")
        return deleted

    def start(self) -> None:
        """Run one sweep now, then keep sweeping in a background thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, daemon=True, name="RetentionSweeper"
        )
        self._thread.start()
        logger.info(
            "Retention sweeper started (interval: %.0fs, retention: %.1fh)",
            self._config.sweep_interval_seconds,
            self._config.link_retention_hours,
        )

    def stop(self) -> bool:
        """Stop the background thread.

        Returns:
            False if a sweep was still running when the wait timed out.
        """
        self._stop_event.set()
        if self._thread is None:
            return True
        self._thread.join(timeout=10)
        if self._thread.is_alive():
            logger.warning("Retention sweeper did not terminate within 10s")
            return False
        self._thread = None
        return True

    def _loop(self) -> None:
        while True:
            try:
                self.sweep()
            except StoreError as e:
                logger.error("Retention sweep failed: %s", e)
            if self._stop_event.wait(timeout=self._config.sweep_interval_seconds):
                break
