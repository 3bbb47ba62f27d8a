# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""JMAP mail client.

Talks to a JMAP provider (Fastmail) over HTTPS with a bearer token.  The
client negotiates a session on first use and caches it, together with the
resolved mailbox ids, until any request fails.  A failure invalidates the
cache and propagates; the caller decides whether and when to retry.

Processed messages are not deleted.  They are moved out of the inbox into a
dedicated sentinel mailbox, which is what keeps them from being fetched
again.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import httpx

from magiclink.config import MailboxConfig
from magiclink.ingest.events import SSEEvent, iter_sse_events


logger = logging.getLogger(__name__)

_USING = ["urn:ietf:params:jmap:core", "urn:ietf:params:jmap:mail"]
_MAIL_CAPABILITY = "urn:ietf:params:jmap:mail"

#: Maximum number of messages fetched per cycle.
CANDIDATE_PAGE_SIZE = 50

_EMAIL_PROPERTIES = [
    "id",
    "subject",
    "from",
    "to",
    "receivedAt",
    "bodyValues",
    "htmlBody",
    "textBody",
]


class JMAPError(Exception):
    """Raised when a JMAP operation fails."""


class JMAPTransportError(JMAPError):
    """Raised on HTTP failures, transport errors and malformed responses."""


class JMAPMethodError(JMAPError):
    """Raised when the server rejects a method call.

    Attributes:
        method: The JMAP method name, e.g. ``Email/set``.
        error_type: The JMAP error type, e.g. ``invalidArguments``.
    """

    def __init__(self, method: str, error_type: str, detail: str = "") -> None:
        self.method = method
        self.error_type = error_type
        message = f"{method} failed: {error_type}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


@dataclass(frozen=True)
class JMAPSession:
    """Negotiated session details.

    Attributes:
        api_url: Endpoint for method calls.
        account_id: Primary mail account id.
        event_source_url: Push event source URL template, if advertised.
    """

    api_url: str
    account_id: str
    event_source_url: str | None = None


@dataclass(frozen=True)
class MailMessage:
    """The parts of a message that ingestion looks at.

    Attributes:
        id: Provider message id.
        subject: Subject line, None when the message has none.
        sender: First From address, empty when absent.
        recipient: First To address, empty when absent.
        received_at: When the provider received the message.
        html_body: Value of the first HTML body part.
        text_body: Value of the first text body part.
    """

    id: str
    subject: str | None
    sender: str
    recipient: str
    received_at: datetime
    html_body: str = ""
    text_body: str = ""

    @property
    def body(self) -> str:
        """HTML body if present, else the text body."""
        return self.html_body or self.text_body

    @classmethod
    def from_jmap(cls, raw: dict[str, Any]) -> MailMessage:
        """Build from an ``Email/get`` list entry.

        Raises:
            ValueError: If ``id`` or ``receivedAt`` is missing or invalid.
        """
        message_id = raw.get("id")
        received = raw.get("receivedAt")
        if not message_id or not isinstance(received, str):
            raise ValueError(f"Email entry missing id or receivedAt: {raw!r}")

        body_values = raw.get("bodyValues") or {}
        return cls(
            id=message_id,
            subject=raw.get("subject") or None,
            sender=_first_address(raw.get("from")),
            recipient=_first_address(raw.get("to")),
            received_at=datetime.fromisoformat(received.replace("Z", "+00:00")),
            html_body=_first_part_value(raw.get("htmlBody"), body_values),
            text_body=_first_part_value(raw.get("textBody"), body_values),
        )


def _first_address(addresses: Any) -> str:
    if not addresses:
        return ""
    return addresses[0].get("email") or ""


def _first_part_value(parts: Any, body_values: dict[str, Any]) -> str:
    if not parts:
        return ""
    value = body_values.get(parts[0].get("partId"))
    if not value:
        return ""
    return value.get("value") or ""


class JMAPClient:
    """JMAP client for the ingestion pipeline.

    Not safe for concurrent use: callers serialize operations (ingestion
    cycles never overlap).  ``close_event_stream()`` is the one method
    that may be called from another thread.
    """

    def __init__(
        self,
        config: MailboxConfig,
        http_client: httpx.Client | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Mailbox configuration.
            http_client: HTTP client to use.  If None, one is created.
        """
        self.config = config
        self._http = http_client or httpx.Client(
            timeout=config.request_timeout_seconds
        )
        self._session: JMAPSession | None = None
        self._mailbox_ids: dict[str, str] = {}
        self._stream_lock = threading.Lock()
        self._active_stream: httpx.Response | None = None

    @property
    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.token}"}

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._http.close()

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def get_session(self) -> JMAPSession:
        """Return the cached session, negotiating one if needed.

        Raises:
            JMAPTransportError: If discovery fails.
        """
        if self._session is not None:
            return self._session

        try:
            response = self._http.get(
                self.config.session_url, headers=self._auth_headers
            )
            response.raise_for_status()
            data = response.json()
            session = JMAPSession(
                api_url=data["apiUrl"],
                account_id=data["primaryAccounts"][_MAIL_CAPABILITY],
                event_source_url=data.get("eventSourceUrl") or None,
            )
        except httpx.HTTPError as e:
            self.invalidate_session()
            raise JMAPTransportError(f"Failed to get JMAP session: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            self.invalidate_session()
            raise JMAPTransportError(f"Malformed JMAP session: {e}") from e

        logger.debug("Negotiated JMAP session for account %s", session.account_id)
        self._session = session
        return session

    def invalidate_session(self) -> None:
        """Drop the cached session and mailbox ids."""
        if self._session is not None:
            logger.debug("Invalidating JMAP session")
        self._session = None
        self._mailbox_ids.clear()

    # ------------------------------------------------------------------
    # Method calls
    # ------------------------------------------------------------------

    def _request(self, method_calls: list[list[Any]]) -> list[list[Any]]:
        """POST a batch of method calls and return the method responses.

        Raises:
            JMAPTransportError: On HTTP failure or a malformed response.
        """
        session = self.get_session()
        try:
            response = self._http.post(
                session.api_url,
                headers=self._auth_headers,
                json={"using": _USING, "methodCalls": method_calls},
            )
            response.raise_for_status()
            responses = response.json()["methodResponses"]
        except httpx.HTTPError as e:
            self.invalidate_session()
            raise JMAPTransportError(f"JMAP request failed: {e}") from e
        except (ValueError, KeyError, TypeError) as e:
            self.invalidate_session()
            raise JMAPTransportError(f"Malformed JMAP response: {e}") from e

        if not isinstance(responses, list) or len(responses) < len(method_calls):
            self.invalidate_session()
            raise JMAPTransportError(
                f"Expected {len(method_calls)} method responses, "
                f"got {responses!r}"
            )
        return responses

    def _call(self, method: str, arguments: dict[str, Any]) -> dict[str, Any]:
        """Make a single method call and return its arguments.

        Raises:
            JMAPMethodError: If the server answered with an error.
            JMAPTransportError: On transport failure.
        """
        response = self._request([[method, arguments, "0"]])[0]
        try:
            name, result, _ = response
        except (ValueError, TypeError) as e:
            self.invalidate_session()
            raise JMAPTransportError(
                f"Malformed method response: {response!r}"
            ) from e
        if not isinstance(result, dict):
            self.invalidate_session()
            raise JMAPTransportError(f"Malformed {method} result: {result!r}")
        if name == "error":
            self.invalidate_session()
            raise JMAPMethodError(
                method,
                result.get("type", "unknown"),
                result.get("description", ""),
            )
        return result

    # ------------------------------------------------------------------
    # Mailboxes
    # ------------------------------------------------------------------

    def _query_mailbox(self, mailbox_filter: dict[str, Any]) -> str | None:
        session = self.get_session()
        result = self._call(
            "Mailbox/query",
            {"accountId": session.account_id, "filter": mailbox_filter},
        )
        ids = result.get("ids") or []
        return ids[0] if ids else None

    def get_inbox_id(self) -> str:
        """Return the id of the account's inbox.

        Raises:
            JMAPError: If the query fails or no inbox exists.
        """
        cached = self._mailbox_ids.get("inbox")
        if cached:
            return cached

        inbox_id = self._query_mailbox({"role": "inbox"})
        if inbox_id is None:
            self.invalidate_session()
            raise JMAPMethodError("Mailbox/query", "notFound", "no inbox")
        self._mailbox_ids["inbox"] = inbox_id
        return inbox_id

    def get_or_create_processed_mailbox(self) -> str:
        """Return the id of the processed mailbox, creating it if absent.

        Raises:
            JMAPError: If the lookup or creation fails.
        """
        cached = self._mailbox_ids.get("processed")
        if cached:
            return cached

        name = self.config.processed_mailbox
        mailbox_id = self._query_mailbox({"name": name})
        if mailbox_id is None:
            session = self.get_session()
            result = self._call(
                "Mailbox/set",
                {
                    "accountId": session.account_id,
                    "create": {"processed": {"name": name}},
                },
            )
            created = (result.get("created") or {}).get("processed")
            if not created:
                not_created = (result.get("notCreated") or {}).get(
                    "processed", {}
                )
                self.invalidate_session()
                raise JMAPMethodError(
                    "Mailbox/set",
                    not_created.get("type", "notCreated"),
                    not_created.get("description", ""),
                )
            mailbox_id = created["id"]
            logger.info("Created mailbox %r", name)

        self._mailbox_ids["processed"] = mailbox_id
        return mailbox_id

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def fetch_candidate_messages(self) -> list[MailMessage]:
        """Fetch inbox messages addressed to the catch-all domain.

        Newest first, at most ``CANDIDATE_PAGE_SIZE``.

        Raises:
            JMAPError: If either call fails or a message is malformed.
        """
        session = self.get_session()
        inbox_id = self.get_inbox_id()

        query = self._call(
            "Email/query",
            {
                "accountId": session.account_id,
                "filter": {
                    "inMailbox": inbox_id,
                    "to": f"@{self.config.domain}",
                },
                "sort": [{"property": "receivedAt", "isAscending": False}],
                "limit": CANDIDATE_PAGE_SIZE,
            },
        )
        ids = query.get("ids") or []
        if not ids:
            return []

        result = self._call(
            "Email/get",
            {
                "accountId": session.account_id,
                "ids": ids,
                "properties": _EMAIL_PROPERTIES,
                "fetchAllBodyValues": True,
            },
        )
        try:
            messages = [MailMessage.from_jmap(raw) for raw in result["list"]]
        except (KeyError, TypeError, AttributeError, ValueError) as e:
            self.invalidate_session()
            raise JMAPTransportError(f"Malformed Email/get response: {e}") from e

        logger.debug("Fetched %d candidate messages", len(messages))
        return messages

    def mark_processed(self, message_id: str) -> None:
        """Move a message from the inbox into the processed mailbox.

        Raises:
            JMAPError: If the update fails.
        """
        session = self.get_session()
        processed_id = self.get_or_create_processed_mailbox()
        inbox_id = self.get_inbox_id()

        result = self._call(
            "Email/set",
            {
                "accountId": session.account_id,
                "update": {
                    message_id: {
                        f"mailboxIds/{inbox_id}": None,
                        f"mailboxIds/{processed_id}": True,
                    }
                },
            },
        )
        not_updated = (result.get("notUpdated") or {}).get(message_id)
        if not_updated is not None:
            self.invalidate_session()
            raise JMAPMethodError(
                "Email/set",
                not_updated.get("type", "notUpdated"),
                not_updated.get("description", ""),
            )
        logger.debug("Marked message %s as processed", message_id)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    @contextmanager
    def open_event_stream(
        self, types: str = "Email", ping_seconds: int = 30
    ) -> Iterator[Iterator[SSEEvent]]:
        """Open the provider's push event stream.

        The read timeout is three ping intervals, so a silent connection
        surfaces as an error rather than a hang.

        Args:
            types: Comma-separated type names to subscribe to.
            ping_seconds: Keep-alive ping interval to request.

        Yields:
            An iterator of events; it ends when the server closes the stream.

        Raises:
            JMAPTransportError: If the stream cannot be opened or breaks.
            JMAPError: If the session advertises no event source.
        """
        session = self.get_session()
        if not session.event_source_url:
            raise JMAPError("JMAP session has no event source URL")

        url = (
            session.event_source_url.replace("{types}", types)
            .replace("{closeafter}", "no")
            .replace("{ping}", str(ping_seconds))
        )
        timeout = httpx.Timeout(
            self.config.request_timeout_seconds, read=ping_seconds * 3
        )
        headers = {**self._auth_headers, "Accept": "text/event-stream"}

        try:
            with self._http.stream(
                "GET", url, headers=headers, timeout=timeout
            ) as response:
                response.raise_for_status()
                with self._stream_lock:
                    self._active_stream = response
                try:
                    logger.info("JMAP event stream connected")
                    yield iter_sse_events(response.iter_lines())
                finally:
                    # Cleared before the connection goes back to the pool
                    with self._stream_lock:
                        self._active_stream = None
        except (httpx.HTTPError, httpx.StreamError) as e:
            self.invalidate_session()
            raise JMAPTransportError(f"Event stream failed: {e}") from e

    def close_event_stream(self) -> None:
        """Abort the open event stream, if any.  Thread-safe.

        A reader blocked on the stream is woken immediately: the socket is
        shut down, which ends the pending read.  ``Response.close()`` alone
        does not interrupt a read in progress on another thread.
        """
        with self._stream_lock:
            response = self._active_stream
            if response is None:
                return
            network_stream = response.extensions.get("network_stream")
            sock = (
                network_stream.get_extra_info("socket")
                if network_stream is not None
                else None
            )
            try:
                if sock is not None:
                    sock.shutdown(socket.SHUT_RDWR)
                else:
                    response.close()
            except (httpx.HTTPError, httpx.StreamError, OSError) as e:
                logger.debug("Error closing event stream: %s", e)
