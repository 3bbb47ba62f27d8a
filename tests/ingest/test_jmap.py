# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for the JMAP mail client."""

import json
import threading
import time
from collections.abc import Iterator
from datetime import UTC, datetime
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import httpx
import pytest

from magiclink.config import MailboxConfig
from magiclink.ingest.events import SSEEvent
from magiclink.ingest.jmap import (
    CANDIDATE_PAGE_SIZE,
    JMAPClient,
    JMAPError,
    JMAPMethodError,
    JMAPSession,
    JMAPTransportError,
    MailMessage,
)


class TestMailMessage:
    """Tests for MailMessage.from_jmap."""

    def test_parses_entry(self, email_factory) -> None:
        """All fields are taken from the first part and address."""
        message = MailMessage.from_jmap(
            email_factory("M1", html="<a>x</a>", text="plain")
        )
        assert message.id == "M1"
        assert message.subject == "Sign in to Acme"
        assert message.sender == "noreply@acme.com"
        assert message.recipient == "acme@links.example.com"
        assert message.received_at == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
        assert message.html_body == "<a>x</a>"
        assert message.text_body == "plain"
        assert message.body == "<a>x</a>"

    def test_text_body_fallback(self, email_factory) -> None:
        """Body falls back to the text part when there is no HTML."""
        message = MailMessage.from_jmap(email_factory("M1", text="plain"))
        assert message.body == "plain"

    def test_missing_subject(self, email_factory) -> None:
        """Empty or missing subjects become None."""
        for subject in ("", None):
            raw = email_factory("M1", subject=subject)
            assert MailMessage.from_jmap(raw).subject is None

    def test_missing_addresses(self, email_factory) -> None:
        """Missing from/to lists become empty strings."""
        message = MailMessage.from_jmap(
            email_factory("M1", sender="", recipient="")
        )
        assert message.sender == ""
        assert message.recipient == ""

    def test_missing_id(self, email_factory) -> None:
        """An entry without an id is rejected."""
        raw = email_factory("M1")
        del raw["id"]
        with pytest.raises(ValueError):
            MailMessage.from_jmap(raw)


class TestSession:
    """Tests for session negotiation."""

    def test_get_session(self, jmap_client, jmap_server) -> None:
        """Session fields are read from the discovery document."""
        session = jmap_client.get_session()
        assert session == JMAPSession(
            api_url="https://jmap.example.com/api/",
            account_id="u1",
            event_source_url=jmap_server.event_source_url,
        )

    def test_bearer_token(self, jmap_client, jmap_server) -> None:
        """Requests carry the configured bearer token."""
        jmap_client.get_session()
        request = jmap_server.requests[0]
        assert request.headers["Authorization"] == "Bearer test-app-password"

    def test_session_cached(self, jmap_client, jmap_server) -> None:
        """The session is fetched once."""
        jmap_client.get_session()
        jmap_client.get_session()
        assert jmap_server.session_requests() == 1

    def test_invalidate_session(self, jmap_client, jmap_server) -> None:
        """Invalidation forces renegotiation."""
        jmap_client.get_session()
        jmap_client.invalidate_session()
        jmap_client.get_session()
        assert jmap_server.session_requests() == 2

    def test_no_event_source(self, jmap_client, jmap_server) -> None:
        """Sessions without an event source report None."""
        jmap_server.event_source_url = None
        assert jmap_client.get_session().event_source_url is None

    def test_http_error(self, jmap_client, jmap_server) -> None:
        """An HTTP error status raises a transport error."""
        jmap_server.session_status = 401
        with pytest.raises(JMAPTransportError):
            jmap_client.get_session()

    def test_malformed_session(self, mailbox_config) -> None:
        """A session without a mail account raises a transport error."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"apiUrl": "https://x/api"})

        client = JMAPClient(
            mailbox_config,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(JMAPTransportError, match="Malformed"):
            client.get_session()

    def test_network_error(self, mailbox_config) -> None:
        """Connection failures raise a transport error."""

        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = JMAPClient(
            mailbox_config,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(JMAPTransportError):
            client.get_session()


class TestMethodCalls:
    """Tests for method call handling."""

    def test_method_error(self, jmap_client, jmap_server) -> None:
        """Error responses raise JMAPMethodError and drop the session."""
        jmap_server.method_errors["Mailbox/query"] = "accountNotFound"
        with pytest.raises(JMAPMethodError) as exc_info:
            jmap_client.get_inbox_id()
        assert exc_info.value.method == "Mailbox/query"
        assert exc_info.value.error_type == "accountNotFound"

        del jmap_server.method_errors["Mailbox/query"]
        jmap_client.get_inbox_id()
        assert jmap_server.session_requests() == 2

    def test_missing_method_responses(self, mailbox_config) -> None:
        """A response without methodResponses raises a transport error."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(
                    200,
                    json={
                        "apiUrl": "https://jmap.example.com/api/",
                        "primaryAccounts": {"urn:ietf:params:jmap:mail": "u1"},
                    },
                )
            return httpx.Response(200, json={})

        client = JMAPClient(
            mailbox_config,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(JMAPTransportError):
            client.get_inbox_id()

    def test_api_http_error(self, mailbox_config) -> None:
        """A failing API endpoint raises a transport error."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(
                    200,
                    json={
                        "apiUrl": "https://jmap.example.com/api/",
                        "primaryAccounts": {"urn:ietf:params:jmap:mail": "u1"},
                    },
                )
            return httpx.Response(503)

        client = JMAPClient(
            mailbox_config,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(JMAPTransportError):
            client.get_inbox_id()


class TestMailboxes:
    """Tests for mailbox resolution."""

    def test_inbox_id(self, jmap_client, jmap_server) -> None:
        """The inbox is found by role and cached."""
        assert jmap_client.get_inbox_id() == "mb-inbox"
        assert jmap_client.get_inbox_id() == "mb-inbox"
        assert jmap_server.method_names() == ["Mailbox/query"]
        assert jmap_server.calls[0][1]["filter"] == {"role": "inbox"}

    def test_no_inbox(self, mailbox_config) -> None:
        """An account without an inbox raises."""

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(
                    200,
                    json={
                        "apiUrl": "https://jmap.example.com/api/",
                        "primaryAccounts": {"urn:ietf:params:jmap:mail": "u1"},
                    },
                )
            return httpx.Response(
                200,
                json={"methodResponses": [["Mailbox/query", {"ids": []}, "0"]]},
            )

        client = JMAPClient(
            mailbox_config,
            http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        )
        with pytest.raises(JMAPMethodError):
            client.get_inbox_id()

    def test_processed_mailbox_created(self, jmap_client, jmap_server) -> None:
        """A missing processed mailbox is created."""
        assert jmap_client.get_or_create_processed_mailbox() == "mb-processed"
        assert jmap_server.method_names() == ["Mailbox/query", "Mailbox/set"]
        name, arguments = jmap_server.calls[1]
        assert arguments["create"] == {
            "processed": {"name": "Magic Link Processed"}
        }

    def test_processed_mailbox_existing(self, jmap_client, jmap_server) -> None:
        """An existing processed mailbox is reused."""
        jmap_server.processed_mailbox_exists = True
        assert jmap_client.get_or_create_processed_mailbox() == "mb-processed"
        assert jmap_server.method_names() == ["Mailbox/query"]
        assert jmap_server.calls[0][1]["filter"] == {
            "name": "Magic Link Processed"
        }

    def test_processed_mailbox_create_rejected(
        self, jmap_client, jmap_server
    ) -> None:
        """A rejected creation raises with the server's error type."""
        jmap_server.reject_mailbox_create = True
        with pytest.raises(JMAPMethodError) as exc_info:
            jmap_client.get_or_create_processed_mailbox()
        assert exc_info.value.error_type == "forbidden"


class TestFetchCandidateMessages:
    """Tests for fetch_candidate_messages."""

    def test_fetch(self, jmap_client, jmap_server, email_factory) -> None:
        """Inbox messages are queried by domain and fetched with bodies."""
        jmap_server.add_email(email_factory("M1", html="<p>hi</p>"))
        jmap_server.add_email(email_factory("M2", text="hello"))

        messages = jmap_client.fetch_candidate_messages()

        assert [m.id for m in messages] == ["M1", "M2"]
        assert jmap_server.method_names() == [
            "Mailbox/query",
            "Email/query",
            "Email/get",
        ]
        query = jmap_server.calls[1][1]
        assert query["accountId"] == "u1"
        assert query["filter"] == {
            "inMailbox": "mb-inbox",
            "to": "@links.example.com",
        }
        assert query["sort"] == [
            {"property": "receivedAt", "isAscending": False}
        ]
        assert query["limit"] == CANDIDATE_PAGE_SIZE
        get = jmap_server.calls[2][1]
        assert get["ids"] == ["M1", "M2"]
        assert get["fetchAllBodyValues"] is True

    def test_empty_inbox(self, jmap_client, jmap_server) -> None:
        """No Email/get is made when nothing matches."""
        assert jmap_client.fetch_candidate_messages() == []
        assert "Email/get" not in jmap_server.method_names()

    def test_malformed_entry(
        self, jmap_client, jmap_server, email_factory
    ) -> None:
        """A malformed message raises a transport error."""
        raw = email_factory("M1")
        raw["receivedAt"] = None
        jmap_server.add_email(raw)
        with pytest.raises(JMAPTransportError):
            jmap_client.fetch_candidate_messages()


class TestMarkProcessed:
    """Tests for mark_processed."""

    def test_moves_message(
        self, jmap_client, jmap_server, email_factory
    ) -> None:
        """The message leaves the inbox for the processed mailbox."""
        jmap_server.add_email(email_factory("M1"))

        jmap_client.mark_processed("M1")

        assert jmap_server.processed == ["M1"]
        _, arguments = jmap_server.calls[-1]
        assert arguments["update"] == {
            "M1": {
                "mailboxIds/mb-inbox": None,
                "mailboxIds/mb-processed": True,
            }
        }

    def test_mailbox_ids_cached(
        self, jmap_client, jmap_server, email_factory
    ) -> None:
        """Mailbox ids are resolved once per session."""
        jmap_server.add_email(email_factory("M1"))
        jmap_server.add_email(email_factory("M2"))

        jmap_client.mark_processed("M1")
        jmap_client.mark_processed("M2")

        assert jmap_server.method_names().count("Mailbox/query") == 2
        assert jmap_server.method_names().count("Mailbox/set") == 1

    def test_not_updated(self, jmap_client, jmap_server, email_factory) -> None:
        """A rejected update raises."""
        jmap_server.add_email(email_factory("M1"))
        jmap_server.reject_updates.add("M1")
        with pytest.raises(JMAPMethodError) as exc_info:
            jmap_client.mark_processed("M1")
        assert exc_info.value.method == "Email/set"
        assert exc_info.value.error_type == "notFound"


class TestEventStream:
    """Tests for open_event_stream."""

    def test_events(self, jmap_client, jmap_server) -> None:
        """Events are parsed from the stream."""
        data = json.dumps({"changed": {"u1": {"Email": "s1"}}})
        jmap_server.event_lines = [
            ": hello",
            "event: state",
            f"data: {data}",
            "",
        ]

        with jmap_client.open_event_stream(ping_seconds=5) as events:
            received = list(events)

        assert received == [SSEEvent(event="state", data=data)]
        request = jmap_server.requests[-1]
        assert request.url.params["types"] == "Email"
        assert request.url.params["closeafter"] == "no"
        assert request.url.params["ping"] == "5"
        assert request.headers["Accept"] == "text/event-stream"

    def test_no_event_source(self, jmap_client, jmap_server) -> None:
        """Sessions without an event source cannot stream."""
        jmap_server.event_source_url = None
        with pytest.raises(JMAPError):
            with jmap_client.open_event_stream():
                pass

    def test_http_error(self, jmap_client, jmap_server) -> None:
        """A failing stream endpoint raises a transport error."""
        jmap_server.event_status = 500
        with pytest.raises(JMAPTransportError):
            with jmap_client.open_event_stream():
                pass
        assert jmap_client._session is None

    def test_close_without_stream(self, jmap_client) -> None:
        """Closing when no stream is open is a no-op."""
        jmap_client.close_event_stream()


class _SilentEventSourceHandler(BaseHTTPRequestHandler):
    """Serves a session, then an event stream that goes quiet."""

    def do_GET(self) -> None:
        host, port = self.server.server_address
        if self.path == "/session":
            body = json.dumps(
                {
                    "apiUrl": f"http://{host}:{port}/api/",
                    "primaryAccounts": {"urn:ietf:params:jmap:mail": "u1"},
                    "eventSourceUrl": (
                        f"http://{host}:{port}/events/"
                        "?types={types}&closeafter={closeafter}&ping={ping}"
                    ),
                }
            ).encode()
            self.send_response(200)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
            return

        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.end_headers()
        self.wfile.write(b'event: ping\ndata: {"interval": 10}\n\n')
        self.wfile.flush()
        self.server.release.wait(timeout=20)

    def log_message(self, format: str, *args: object) -> None:
        pass


@pytest.fixture
def silent_server() -> Iterator[ThreadingHTTPServer]:
    """Local HTTP server whose event stream never sends a second event."""
    server = ThreadingHTTPServer(("127.0.0.1", 0), _SilentEventSourceHandler)
    server.daemon_threads = True
    server.release = threading.Event()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.release.set()
    server.shutdown()
    server.server_close()


class TestCloseEventStream:
    """Tests for close_event_stream against a real socket."""

    def test_wakes_blocked_reader(self, silent_server) -> None:
        """A reader waiting for the next event returns promptly."""
        host, port = silent_server.server_address
        config = MailboxConfig(
            token="test-app-password",
            domain="links.example.com",
            session_url=f"http://{host}:{port}/session",
        )
        client = JMAPClient(config)
        received = threading.Event()
        finished = threading.Event()
        errors: list[JMAPError] = []

        def read() -> None:
            try:
                with client.open_event_stream(ping_seconds=10) as events:
                    for _ in events:
                        received.set()
            except JMAPError as e:
                errors.append(e)
            finally:
                finished.set()

        reader = threading.Thread(target=read, daemon=True)
        reader.start()
        try:
            assert received.wait(timeout=5)
            started = time.monotonic()
            client.close_event_stream()
            assert finished.wait(timeout=5)
            # Well under the 30s read timeout
            assert time.monotonic() - started < 5
        finally:
            client.close()

        assert all(isinstance(e, JMAPTransportError) for e in errors)
        assert client._active_stream is None
