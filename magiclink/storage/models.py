# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Domain records for services and their magic links."""

import re
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import urlsplit


_SLUG_DISALLOWED = re.compile(r"[^a-z0-9-]")


def slugify(local_part: str) -> str:
    """Derive a service slug from a recipient local-part.

    Lowercases and replaces every character outside ``[a-z0-9-]`` with
    ``-``, one for one, so the mapping is deterministic.

    >>> slugify("GitHub.Work")
    'github-work'
    """
    return _SLUG_DISALLOWED.sub("-", local_part.lower())


def url_origin(url: str) -> str | None:
    """Return ``scheme://host[:port]`` for a URL, or None if malformed."""
    try:
        parsed = urlsplit(url)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


@dataclass(frozen=True)
class Service:
    """A third-party account family, keyed by recipient local-part.

    Attributes:
        id: Stable identifier.
        slug: Unique slug derived from the recipient local-part.
        display_name: Human-readable name (defaults to the local-part).
        icon_url: Optional icon shown in the UI.
        origin_url: Origin of the first ingested link, if known.
        created_at: Creation time (UTC).
    """

    id: str
    slug: str
    display_name: str
    created_at: datetime
    icon_url: str | None = None
    origin_url: str | None = None


@dataclass(frozen=True)
class MagicLink:
    """One ingested login link.

    ``received_at`` comes from the source message and orders links and
    drives retention.  Only ``used_at``/``used_by`` change after insert.

    Attributes:
        id: Stable identifier.
        service_id: Owning service.
        url: The extracted login URL.
        subject: Subject of the source message, if it had one.
        received_at: When the provider received the message (UTC).
        used_at: When a user marked the link as used.
        used_by: Identifier of that user.
        source_message_id: Provider message id the link came from.
    """

    id: str
    service_id: str
    url: str
    subject: str | None
    received_at: datetime
    used_at: datetime | None = None
    used_by: str | None = None
    source_message_id: str | None = None
