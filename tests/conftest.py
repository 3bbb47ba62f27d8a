# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

from collections.abc import Callable, Iterator
from datetime import UTC, datetime

import pytest

from magiclink.config import IngestConfig, MailboxConfig, RetentionConfig
from magiclink.ingest.jmap import MailMessage
from magiclink.logging import SecretFilter
from magiclink.storage.store import SQLiteLinkStore


LOGIN_HTML = (
    "<html><body>"
    "<p>Click below to sign in.</p>"
    '<table><tr><td><a href="https://app.example.com/login?token='
    'a1b2c3d4e5f6g7h8i9j0k1l2">Sign in</a></td></tr></table>'
    '<p><a href="https://app.example.com/unsubscribe">Unsubscribe</a></p>'
    "</body></html>"
)


@pytest.fixture(autouse=True)
def _clear_secrets() -> Iterator[None]:
    """Keep registered secrets from leaking between tests."""
    yield
    SecretFilter.clear_secrets()


@pytest.fixture
def mailbox_config() -> MailboxConfig:
    """Test mailbox configuration."""
    return MailboxConfig(
        token="test-app-password",
        domain="links.example.com",
        session_url="https://jmap.example.com/session",
    )


@pytest.fixture
def ingest_config() -> IngestConfig:
    """Ingest configuration with short delays."""
    return IngestConfig(
        transport="auto",
        poll_interval_seconds=0.05,
        reconnect_delay_seconds=0.05,
        ping_interval_seconds=1,
    )


@pytest.fixture
def retention_config() -> RetentionConfig:
    """Retention configuration with the default window."""
    return RetentionConfig(link_retention_hours=24, sweep_interval_seconds=60)


@pytest.fixture
def store() -> Iterator[SQLiteLinkStore]:
    """In-memory link store."""
    link_store = SQLiteLinkStore(":memory:")
    yield link_store
    link_store.close()


@pytest.fixture
def make_message() -> Callable[..., MailMessage]:
    """Factory for mail messages with login-email defaults."""

    def _make(
        message_id: str = "M1",
        subject: str | None = "Sign in to Acme",
        sender: str = "noreply@acme.com",
        recipient: str = "acme@links.example.com",
        html_body: str = LOGIN_HTML,
        text_body: str = "",
        received_at: datetime | None = None,
    ) -> MailMessage:
        return MailMessage(
            id=message_id,
            subject=subject,
            sender=sender,
            recipient=recipient,
            received_at=received_at or datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
            html_body=html_body,
            text_body=text_body,
        )

    return _make
