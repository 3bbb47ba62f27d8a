# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Persistence for services and magic links.

``LinkStore`` is the interface the ingestion pipeline and the retention
sweep depend on.  ``SQLiteLinkStore`` implements it on a single SQLite
file; timestamps are stored as fixed-width ISO-8601 UTC strings so that
string comparison orders them correctly.
"""

from __future__ import annotations

import logging
import secrets
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from magiclink.storage.models import MagicLink, Service


logger = logging.getLogger(__name__)

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS services (
    id TEXT PRIMARY KEY,
    slug TEXT NOT NULL UNIQUE,
    display_name TEXT,
    icon_url TEXT,
    origin_url TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS magic_links (
    id TEXT PRIMARY KEY,
    service_id TEXT NOT NULL REFERENCES services(id) ON DELETE CASCADE,
    link_url TEXT NOT NULL,
    subject TEXT,
    received_at TEXT NOT NULL,
    used_at TEXT,
    used_by TEXT,
    source_message_id TEXT UNIQUE
);

CREATE INDEX IF NOT EXISTS idx_magic_links_service_received
    ON magic_links (service_id, received_at);
"""


class StoreError(Exception):
    """Raised when a storage operation fails."""


class LinkStore(Protocol):
    """Persistence port consumed by ingestion and retention."""

    def find_service_by_slug(self, slug: str) -> Service | None:
        """Return the service with this slug, if any."""
        ...

    def create_service(
        self,
        slug: str,
        display_name: str,
        origin_url: str | None = None,
    ) -> Service:
        """Create a service.

        Raises:
            StoreError: If the slug already exists or the write fails.
        """
        ...

    def insert_magic_link(
        self,
        service_id: str,
        url: str,
        subject: str | None,
        received_at: datetime,
        *,
        source_message_id: str | None = None,
    ) -> MagicLink:
        """Store a newly ingested link."""
        ...

    def find_link_by_message_id(self, message_id: str) -> MagicLink | None:
        """Return the link ingested from a provider message, if any."""
        ...

    def list_links(self, service_id: str) -> list[MagicLink]:
        """Return a service's links, newest first."""
        ...

    def mark_link_used(
        self,
        link_id: str,
        user_id: str,
        used_at: datetime | None = None,
    ) -> bool:
        """Set the used-marker.  Returns False if the link does not exist."""
        ...

    def delete_links_received_before(self, cutoff: datetime) -> int:
        """Delete links received before ``cutoff``; return the count."""
        ...

    def close(self) -> None:
        """Release the store's resources."""
        ...


def new_id() -> str:
    """Return a random URL-safe identifier."""
    return secrets.token_urlsafe(16)


def format_timestamp(value: datetime) -> str:
    """Format a datetime for storage.  Naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    """Parse a stored timestamp back into an aware UTC datetime."""
    return datetime.strptime(value, _TIMESTAMP_FORMAT).replace(tzinfo=UTC)


def _row_to_service(row: sqlite3.Row) -> Service:
    return Service(
        id=row["id"],
        slug=row["slug"],
        display_name=row["display_name"] or row["slug"],
        icon_url=row["icon_url"],
        origin_url=row["origin_url"],
        created_at=parse_timestamp(row["created_at"]),
    )


def _row_to_link(row: sqlite3.Row) -> MagicLink:
    return MagicLink(
        id=row["id"],
        service_id=row["service_id"],
        url=row["link_url"],
        subject=row["subject"],
        received_at=parse_timestamp(row["received_at"]),
        used_at=parse_timestamp(row["used_at"]) if row["used_at"] else None,
        used_by=row["used_by"],
        source_message_id=row["source_message_id"],
    )


class SQLiteLinkStore:
    """SQLite implementation of ``LinkStore``.

    A single connection is shared between threads and serialized with a
    lock; the ingestion worker and the retention sweep are the only
    writers and both write rarely.

    Attributes:
        path: Database file path, or ``":memory:"``.
    """

    def __init__(self, path: Path | str) -> None:
        """Open (creating if needed) the database and apply the schema.

        Args:
            path: Database file path, or ``":memory:"`` for tests.

        Raises:
            StoreError: If the database cannot be opened.
        """
        self.path = path
        self._lock = threading.Lock()

        if isinstance(path, Path):
            path.parent.mkdir(parents=True, exist_ok=True)

        try:
            self._conn = sqlite3.connect(
                str(path), check_same_thread=False, timeout=10
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            if str(path) != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(_SCHEMA)
            self._conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to open database {path}: {e}") from e

        logger.debug("Opened link store: %s", path)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run statements atomically, translating errors to StoreError."""
        with self._lock:
            try:
                with self._conn:
                    yield self._conn
            except sqlite3.Error as e:
                raise StoreError(str(e)) from e

    def close(self) -> None:
        """Close the underlying connection."""
        with self._lock:
            self._conn.close()

    def find_service_by_slug(self, slug: str) -> Service | None:
        """Return the service with this slug, if any."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM services WHERE slug = ?", (slug,)
            ).fetchone()
        return _row_to_service(row) if row else None

    def create_service(
        self,
        slug: str,
        display_name: str,
        origin_url: str | None = None,
    ) -> Service:
        """Create a service.

        Raises:
            StoreError: If the slug already exists or the write fails.
        """
        service = Service(
            id=new_id(),
            slug=slug,
            display_name=display_name,
            origin_url=origin_url,
            created_at=datetime.now(UTC),
        )
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO services "
                "(id, slug, display_name, icon_url, origin_url, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    service.id,
                    service.slug,
                    service.display_name,
                    service.icon_url,
                    service.origin_url,
                    format_timestamp(service.created_at),
                ),
            )
        logger.info("Created service %s", slug)
        return service

    def delete_service(self, service_id: str) -> bool:
        """Delete a service and, by cascade, all of its links."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM services WHERE id = ?", (service_id,)
            )
        return cursor.rowcount > 0

    def insert_magic_link(
        self,
        service_id: str,
        url: str,
        subject: str | None,
        received_at: datetime,
        *,
        source_message_id: str | None = None,
    ) -> MagicLink:
        """Store a newly ingested link.

        Raises:
            StoreError: If the service does not exist, the message id was
                already ingested, or the write fails.
        """
        link = MagicLink(
            id=new_id(),
            service_id=service_id,
            url=url,
            subject=subject,
            received_at=received_at,
            source_message_id=source_message_id,
        )
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO magic_links "
                "(id, service_id, link_url, subject, received_at, "
                "source_message_id) VALUES (?, ?, ?, ?, ?, ?)",
                (
                    link.id,
                    link.service_id,
                    link.url,
                    link.subject,
                    format_timestamp(link.received_at),
                    link.source_message_id,
                ),
            )
        return link

    def find_link_by_message_id(self, message_id: str) -> MagicLink | None:
        """Return the link ingested from a provider message, if any."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM magic_links WHERE source_message_id = ?",
                (message_id,),
            ).fetchone()
        return _row_to_link(row) if row else None

    def list_services(self) -> list[Service]:
        """Return all services ordered by slug."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM services ORDER BY slug"
            ).fetchall()
        return [_row_to_service(row) for row in rows]

    def list_links(self, service_id: str) -> list[MagicLink]:
        """Return a service's links, newest first."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM magic_links WHERE service_id = ? "
                "ORDER BY received_at DESC",
                (service_id,),
            ).fetchall()
        return [_row_to_link(row) for row in rows]

    def mark_link_used(
        self,
        link_id: str,
        user_id: str,
        used_at: datetime | None = None,
    ) -> bool:
        """Set the used-marker.  Returns False if the link does not exist."""
        if used_at is None:
            used_at = datetime.now(UTC)
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE magic_links SET used_at = ?, used_by = ? WHERE id = ?",
                (format_timestamp(used_at), user_id, link_id),
            )
        return cursor.rowcount > 0

    def delete_links_received_before(self, cutoff: datetime) -> int:
        """Delete links received before ``cutoff``; return the count."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM magic_links WHERE received_at < ?",
                (format_timestamp(cutoff),),
            )
        return cursor.rowcount
