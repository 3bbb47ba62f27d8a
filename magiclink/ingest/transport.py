# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""When ingestion cycles run: push notifications or timed polling.

Both transports drive the same ``Ingestor.run_cycle()``; they only decide
when a cycle starts.  Each runs its loop in a daemon thread and stops on a
single ``threading.Event``.  A cycle that is already running when
``stop()`` is called finishes before the thread exits.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from magiclink.config import (
    TRANSPORT_POLL,
    TRANSPORT_PUSH,
    IngestConfig,
)
from magiclink.ingest.events import signals_new_mail
from magiclink.ingest.jmap import JMAPClient, JMAPError
from magiclink.ingest.orchestrator import Ingestor


logger = logging.getLogger(__name__)

_JOIN_TIMEOUT_SECONDS = 10


class TransportHealth(Enum):
    """Health state of a transport.

    Attributes:
        STARTING: Not yet running.
        CONNECTED: Running normally.
        DEGRADED: Lost the event stream, reconnecting.
        STOPPED: Stopped on request.
    """

    STARTING = "starting"
    CONNECTED = "connected"
    DEGRADED = "degraded"
    STOPPED = "stopped"


@dataclass(frozen=True)
class TransportStatus:
    """Current status of a transport.

    Attributes:
        health: Current health state.
        message: Human-readable status description.
        error_type: Exception type name if degraded.
    """

    health: TransportHealth
    message: str = ""
    error_type: str | None = None


class IngestTransport(Protocol):
    """Decides when ingestion cycles run."""

    name: str

    def start(self) -> None:
        """Start the background thread.  Returns immediately."""
        ...

    def stop(self) -> bool:
        """Stop the background thread and wait for it to exit.

        Returns:
            False if the thread was still running when the wait timed out.
        """
        ...

    @property
    def status(self) -> TransportStatus:
        """Current health of this transport."""
        ...


class _ThreadedTransport:
    """Thread and stop-signal plumbing shared by both transports."""

    name = "transport"

    def __init__(self) -> None:
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._status = TransportStatus(health=TransportHealth.STARTING)

    @property
    def status(self) -> TransportStatus:
        """Current health of this transport."""
        return self._status

    @property
    def stopping(self) -> bool:
        """True once stop() has been requested."""
        return self._stop_event.is_set()

    def start(self) -> None:
        """Start the loop in a daemon thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"Ingest-{self.name}",
        )
        self._thread.start()

    def stop(self) -> bool:
        """Signal the loop to stop and join the thread.

        Returns:
            True if the thread exited, False if it is still finishing a
            cycle after the join timed out.
        """
        self._stop_event.set()
        self._interrupt()
        exited = True
        if self._thread is not None:
            self._thread.join(timeout=_JOIN_TIMEOUT_SECONDS)
            if self._thread.is_alive():
                logger.warning(
                    "%s thread did not terminate within %ds",
                    self.name,
                    _JOIN_TIMEOUT_SECONDS,
                )
                exited = False
            else:
                self._thread = None
        self._status = TransportStatus(health=TransportHealth.STOPPED)
        logger.info("Ingestion %s stopped", self.name)
        return exited

    def _interrupt(self) -> None:
        """Wake the loop from a blocking wait, if it has one."""

    def _run(self) -> None:
        raise NotImplementedError


class PollingTransport(_ThreadedTransport):
    """Runs a cycle immediately, then once per interval.

    Cycles are strictly sequential: the next interval starts counting
    only after the previous cycle returns.
    """

    name = "poller"

    def __init__(self, ingestor: Ingestor, interval_seconds: float) -> None:
        super().__init__()
        self._ingestor = ingestor
        self._interval = interval_seconds

    def start(self) -> None:
        """Start polling."""
        logger.info(
            "Starting email poller (interval: %.0fs)", self._interval
        )
        self._status = TransportStatus(health=TransportHealth.CONNECTED)
        super().start()

    def _run(self) -> None:
        while not self.stopping:
            report = self._ingestor.run_cycle()
            if report is not None and not self.stopping:
                self._status = (
                    TransportStatus(health=TransportHealth.CONNECTED)
                    if report.ok
                    else TransportStatus(
                        health=TransportHealth.DEGRADED,
                        message=f"last cycle failed: {report.error}",
                    )
                )
            if self._stop_event.wait(timeout=self._interval):
                break


class PushTransport(_ThreadedTransport):
    """Runs cycles when the provider pushes a mail state change.

    Each (re)connect runs one catch-up cycle so that mail delivered while
    disconnected is not left waiting for the next notification.  When the
    stream ends or cannot be opened, the transport waits a fixed delay and
    reconnects, indefinitely, until stopped.
    """

    name = "push"

    def __init__(
        self,
        client: JMAPClient,
        ingestor: Ingestor,
        config: IngestConfig,
    ) -> None:
        super().__init__()
        self._client = client
        self._ingestor = ingestor
        self._config = config

    def start(self) -> None:
        """Start listening for push notifications."""
        logger.info("Starting JMAP EventSource for real-time notifications")
        super().start()

    def _interrupt(self) -> None:
        self._client.close_event_stream()

    def _run(self) -> None:
        while not self.stopping:
            error_type = None
            try:
                self._listen()
            except JMAPError as e:
                if self.stopping:
                    break
                logger.error("EventSource disconnected: %s", e)
                error_type = type(e).__name__

            if self.stopping:
                break

            self._client.invalidate_session()
            self._status = TransportStatus(
                health=TransportHealth.DEGRADED,
                message="event stream reconnecting",
                error_type=error_type,
            )
            delay = self._config.reconnect_delay_seconds
            logger.info("Reconnecting EventSource in %.0fs...", delay)
            if self._stop_event.wait(timeout=delay):
                break

    def _listen(self) -> None:
        """Hold one event stream open until it ends or stop is requested."""
        account_id = self._client.get_session().account_id

        with self._client.open_event_stream(
            ping_seconds=self._config.ping_interval_seconds
        ) as events:
            self._status = TransportStatus(health=TransportHealth.CONNECTED)
            self._ingestor.run_cycle()

            for event in events:
                if self.stopping:
                    return
                if signals_new_mail(event, account_id):
                    logger.info("New email detected via EventSource")
                    self._ingestor.run_cycle()

        logger.info("EventSource stream ended")


def select_transport(
    client: JMAPClient,
    ingestor: Ingestor,
    config: IngestConfig,
) -> IngestTransport:
    """Pick the transport for this environment.

    ``push`` and ``poll`` are honoured as configured.  ``auto`` probes the
    provider: push is used when session discovery succeeds and the session
    advertises an event source, polling otherwise.
    """
    if config.transport == TRANSPORT_POLL:
        return PollingTransport(ingestor, config.poll_interval_seconds)
    if config.transport == TRANSPORT_PUSH:
        return PushTransport(client, ingestor, config)

    try:
        session = client.get_session()
    except JMAPError as e:
        logger.error(
            "Failed to start EventSource, falling back to polling: %s", e
        )
        return PollingTransport(ingestor, config.poll_interval_seconds)

    if not session.event_source_url:
        logger.info("Provider advertises no event source; using polling")
        return PollingTransport(ingestor, config.poll_interval_seconds)

    return PushTransport(client, ingestor, config)
