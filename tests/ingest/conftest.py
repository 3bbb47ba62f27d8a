# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared fixtures for ingestion tests: an in-process JMAP server."""

import json
from collections.abc import Iterator
from typing import Any

import httpx
import pytest

from magiclink.config import MailboxConfig
from magiclink.ingest.jmap import JMAPClient


SESSION_URL = "https://jmap.example.com/session"
API_URL = "https://jmap.example.com/api/"
EVENT_SOURCE_URL = (
    "https://jmap.example.com/events/?types={types}"
    "&closeafter={closeafter}&ping={ping}"
)
ACCOUNT_ID = "u1"
INBOX_ID = "mb-inbox"
PROCESSED_ID = "mb-processed"


def raw_email(
    message_id: str,
    subject: str | None = "Sign in to Acme",
    sender: str = "noreply@acme.com",
    recipient: str = "acme@links.example.com",
    html: str = "",
    text: str = "",
    received_at: str = "2026-03-01T12:00:00Z",
) -> dict[str, Any]:
    """Build an ``Email/get`` list entry."""
    body_values: dict[str, Any] = {}
    html_parts: list[dict[str, str]] = []
    text_parts: list[dict[str, str]] = []
    if html:
        body_values["1"] = {"value": html}
        html_parts.append({"partId": "1", "type": "text/html"})
    if text:
        body_values["2"] = {"value": text}
        text_parts.append({"partId": "2", "type": "text/plain"})
    return {
        "id": message_id,
        "subject": subject,
        "from": [{"name": "Sender", "email": sender}] if sender else None,
        "to": [{"name": None, "email": recipient}] if recipient else None,
        "receivedAt": received_at,
        "bodyValues": body_values,
        "htmlBody": html_parts,
        "textBody": text_parts,
    }


class FakeJMAPServer:
    """Minimal JMAP server speaking through ``httpx.MockTransport``.

    Messages in ``inbox`` are returned by ``Email/query`` and leave it when
    ``Email/set`` moves them to the processed mailbox.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.inbox: dict[str, dict[str, Any]] = {}
        self.processed: list[str] = []
        self.processed_mailbox_exists = False
        self.reject_mailbox_create = False
        self.reject_updates: set[str] = set()
        self.method_errors: dict[str, str] = {}
        self.session_status = 200
        self.event_source_url: str | None = EVENT_SOURCE_URL
        self.event_status = 200
        self.event_lines: list[str] = []

    def add_email(self, raw: dict[str, Any]) -> None:
        self.inbox[raw["id"]] = raw

    def method_names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def session_requests(self) -> int:
        return sum(1 for r in self.requests if str(r.url) == SESSION_URL)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = str(request.url)

        if url == SESSION_URL:
            session: dict[str, Any] = {
                "apiUrl": API_URL,
                "primaryAccounts": {"urn:ietf:params:jmap:mail": ACCOUNT_ID},
            }
            if self.event_source_url:
                session["eventSourceUrl"] = self.event_source_url
            return httpx.Response(self.session_status, json=session)

        if url.startswith("https://jmap.example.com/events/"):
            content = "".join(f"{line}\n" for line in self.event_lines)
            return httpx.Response(
                self.event_status,
                content=content.encode(),
                headers={"Content-Type": "text/event-stream"},
            )

        body = json.loads(request.content)
        responses = []
        for name, arguments, call_id in body["methodCalls"]:
            self.calls.append((name, arguments))
            if name in self.method_errors:
                responses.append(
                    ["error", {"type": self.method_errors[name]}, call_id]
                )
                continue
            handler = getattr(self, "_" + name.replace("/", "_"))
            responses.append([name, handler(arguments), call_id])
        return httpx.Response(200, json={"methodResponses": responses})

    def _Mailbox_query(self, arguments: dict[str, Any]) -> dict[str, Any]:
        mailbox_filter = arguments["filter"]
        if mailbox_filter.get("role") == "inbox":
            return {"ids": [INBOX_ID]}
        if self.processed_mailbox_exists:
            return {"ids": [PROCESSED_ID]}
        return {"ids": []}

    def _Mailbox_set(self, arguments: dict[str, Any]) -> dict[str, Any]:
        if self.reject_mailbox_create:
            return {"notCreated": {"processed": {"type": "forbidden"}}}
        self.processed_mailbox_exists = True
        return {"created": {"processed": {"id": PROCESSED_ID}}}

    def _Email_query(self, arguments: dict[str, Any]) -> dict[str, Any]:
        return {"ids": list(self.inbox)[: arguments.get("limit", 50)]}

    def _Email_get(self, arguments: dict[str, Any]) -> dict[str, Any]:
        return {"list": [self.inbox[i] for i in arguments["ids"]]}

    def _Email_set(self, arguments: dict[str, Any]) -> dict[str, Any]:
        updated: dict[str, Any] = {}
        not_updated: dict[str, Any] = {}
        for message_id in arguments["update"]:
            rejected = message_id in self.reject_updates
            if rejected or message_id not in self.inbox:
                not_updated[message_id] = {"type": "notFound"}
                continue
            del self.inbox[message_id]
            self.processed.append(message_id)
            updated[message_id] = None
        result: dict[str, Any] = {"updated": updated}
        if not_updated:
            result["notUpdated"] = not_updated
        return result


@pytest.fixture
def jmap_server() -> FakeJMAPServer:
    """Fresh fake JMAP server."""
    return FakeJMAPServer()


@pytest.fixture
def jmap_client(
    mailbox_config: MailboxConfig, jmap_server: FakeJMAPServer
) -> Iterator[JMAPClient]:
    """JMAP client wired to the fake server."""
    http_client = httpx.Client(
        transport=httpx.MockTransport(jmap_server.handler)
    )
    client = JMAPClient(mailbox_config, http_client=http_client)
    yield client
    client.close()


@pytest.fixture
def email_factory():
    """Factory for ``Email/get`` list entries."""
    return raw_email
