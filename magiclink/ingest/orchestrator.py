# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Ingestion cycle: fetch, classify, extract, persist, mark processed.

A cycle pulls the current batch of candidate messages and walks them one
at a time.  Every message that is evaluated, whether it yields a link or
not, is moved out of the inbox afterwards; that move is what stops it from
being evaluated again.  The provider message id is also stored with each
link so a message whose move failed after its link was saved is not
stored twice.

Only one cycle runs at a time.  A trigger that arrives while a cycle is
running is remembered and causes one more pass once the running cycle
finishes.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum

from magiclink.ingest.classifier import is_login_email
from magiclink.ingest.extractor import extract_magic_link
from magiclink.ingest.jmap import JMAPClient, JMAPError, MailMessage
from magiclink.storage.models import Service, slugify, url_origin
from magiclink.storage.store import LinkStore, StoreError


logger = logging.getLogger(__name__)


class MessageStatus(Enum):
    """Outcome of evaluating one message.

    Attributes:
        OK: A link was stored (or had been stored already) and the
            message was marked processed.
        SKIPPED: The message was not a usable login email; it was marked
            processed and dropped.
        FAILED: A network or storage error interrupted the message.  It
            stays in the inbox and is evaluated again next cycle.
    """

    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


SKIP_NO_RECIPIENT = "no-recipient"
SKIP_NOT_LOGIN_EMAIL = "not-login-email"
SKIP_EMPTY_BODY = "empty-body"
SKIP_NO_LINK = "no-link"
ALREADY_STORED = "already-stored"


@dataclass(frozen=True)
class MessageResult:
    """What happened to a single message.

    Attributes:
        message_id: Provider message id.
        status: Outcome.
        reason: Skip reason or error description.
        slug: Service slug, once known.
        url: Extracted link, once known.
    """

    message_id: str
    status: MessageStatus
    reason: str = ""
    slug: str | None = None
    url: str | None = None


@dataclass
class CycleReport:
    """Aggregated results of one cycle.

    Attributes:
        results: Per-message results, in processing order.
        error: Error that aborted the cycle, if any.
    """

    results: list[MessageResult] = field(default_factory=list)
    error: str | None = None

    def count(self, status: MessageStatus) -> int:
        """Number of messages with the given outcome."""
        return sum(1 for r in self.results if r.status is status)

    @property
    def ok(self) -> bool:
        """True if the cycle ran to completion."""
        return self.error is None


class Ingestor:
    """Runs ingestion cycles against a mail client and a link store."""

    def __init__(self, client: JMAPClient, store: LinkStore) -> None:
        """Initialize the ingestor.

        Args:
            client: Mail protocol client.
            store: Persistence for services and links.
        """
        self._client = client
        self._store = store
        self._cycle_lock = threading.Lock()
        self._rerun_requested = threading.Event()
        self._shutting_down = threading.Event()

    @property
    def busy(self) -> bool:
        """True while a cycle is running."""
        return self._cycle_lock.locked()

    def shutdown(self) -> None:
        """Refuse new cycles.

        A cycle already running finishes, but a follow-up pass requested
        while it ran is dropped.
        """
        self._shutting_down.set()
        self._rerun_requested.clear()

    def run_cycle(self) -> CycleReport | None:
        """Run a cycle unless one is already running.

        Never raises.  Errors are logged, invalidate the mail session and
        are reported on the returned ``CycleReport``.

        Returns:
            The report of the last pass, or None if another cycle was
            already running (that cycle will make one more pass) or
            ``shutdown()`` has been called.
        """
        report = None
        while not self._shutting_down.is_set():
            if not self._cycle_lock.acquire(blocking=False):
                self._rerun_requested.set()
                logger.debug("Cycle already running; rerun requested")
                return None
            try:
                self._rerun_requested.clear()
                report = self._run_once()
            finally:
                self._cycle_lock.release()

            if not self._rerun_requested.is_set():
                return report
            logger.debug("Running requested follow-up cycle")
        return report

    def _run_once(self) -> CycleReport:
        report = CycleReport()
        try:
            messages = self._client.fetch_candidate_messages()
            for message in messages:
                result = self.process_message(message)
                report.results.append(result)
                if result.status is MessageStatus.FAILED:
                    report.error = result.reason
                    break
        except JMAPError as e:
            logger.error("Error checking emails: %s", e)
            report.error = str(e)
        except Exception as e:
            logger.exception("Unexpected error checking emails: %s", e)
            report.error = f"{type(e).__name__}: {e}"

        if report.error is not None:
            self._client.invalidate_session()

        self._log_report(report)
        return report

    def process_message(self, message: MailMessage) -> MessageResult:
        """Evaluate one message and mark it processed.

        Returns:
            The outcome.  Network and storage errors are returned as
            ``FAILED`` rather than raised.
        """
        try:
            return self._process(message)
        except (JMAPError, StoreError) as e:
            logger.error("Failed to process message %s: %s", message.id, e)
            return MessageResult(message.id, MessageStatus.FAILED, str(e))

    def _process(self, message: MailMessage) -> MessageResult:
        subject = message.subject or ""

        local_part = message.recipient.split("@", 1)[0]
        if not local_part:
            logger.info("Skipping email: no valid recipient local part")
            return self._skip(message, SKIP_NO_RECIPIENT)

        slug = slugify(local_part)

        if not is_login_email(subject, message.sender or "unknown"):
            logger.info(
                "Skipping email: doesn't look like a login email - %r", subject
            )
            return self._skip(message, SKIP_NOT_LOGIN_EMAIL, slug=slug)

        body = message.body
        if not body:
            logger.info("Skipping email: no body content")
            return self._skip(message, SKIP_EMPTY_BODY, slug=slug)

        url = extract_magic_link(body)
        if url is None:
            logger.info("Skipping email: no magic link found - %r", subject)
            return self._skip(message, SKIP_NO_LINK, slug=slug)

        service = self._resolve_service(slug, local_part, url)

        reason = ""
        if self._store.find_link_by_message_id(message.id) is not None:
            logger.info(
                "Link from message %s already stored; marking processed",
                message.id,
            )
            reason = ALREADY_STORED
        else:
            self._store.insert_magic_link(
                service.id,
                url,
                message.subject,
                message.received_at,
                source_message_id=message.id,
            )
            logger.info("Processed magic link for %s: %r", slug, subject)

        self._client.mark_processed(message.id)
        return MessageResult(
            message.id, MessageStatus.OK, reason, slug=slug, url=url
        )

    def _skip(
        self, message: MailMessage, reason: str, *, slug: str | None = None
    ) -> MessageResult:
        self._client.mark_processed(message.id)
        return MessageResult(message.id, MessageStatus.SKIPPED, reason, slug=slug)

    def _resolve_service(self, slug: str, local_part: str, url: str) -> Service:
        """Find the service for a slug, creating it on first sight."""
        service = self._store.find_service_by_slug(slug)
        if service is not None:
            return service
        return self._store.create_service(
            slug, display_name=local_part, origin_url=url_origin(url)
        )

    def _log_report(self, report: CycleReport) -> None:
        if not report.results and report.ok:
            logger.debug("Cycle complete: no new messages")
            return
        log = logger.info if report.ok else logger.warning
        log(
            "Cycle %s: %d stored, %d skipped, %d failed",
            "complete" if report.ok else "aborted",
            report.count(MessageStatus.OK),
            report.count(MessageStatus.SKIPPED),
            report.count(MessageStatus.FAILED),
        )
