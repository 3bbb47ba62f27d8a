# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Parsing for the JMAP push event stream.

The provider pushes Server-Sent Events.  Each ``state`` event carries a
JSON ``StateChange`` object::

    event: state
    data: {"@type":"StateChange","changed":{"u123":{"Email":"s42"}}}

Pings arrive as their own events with a non-StateChange payload and are
ignored, as are records that fail to parse.
"""

import json
import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass


logger = logging.getLogger(__name__)

#: Type names whose state changes mean new mail may have arrived.
MAIL_STATE_TYPES = frozenset({"Email", "EmailDelivery"})


@dataclass(frozen=True)
class SSEEvent:
    """A single dispatched Server-Sent Event."""

    event: str
    data: str
    event_id: str | None = None


def iter_sse_events(lines: Iterable[str]) -> Iterator[SSEEvent]:
    """Group raw stream lines into events.

    Args:
        lines: Decoded lines without trailing newlines.

    Yields:
        One ``SSEEvent`` per blank-line-terminated block that had data.
    """
    event_type = ""
    data_lines: list[str] = []
    event_id: str | None = None

    for line in lines:
        if not line:
            if data_lines:
                yield SSEEvent(
                    event=event_type or "message",
                    data="\n".join(data_lines),
                    event_id=event_id,
                )
            event_type = ""
            data_lines = []
            event_id = None
            continue

        if line.startswith(":"):
            continue

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            data_lines.append(value)
        elif name == "event":
            event_type = value
        elif name == "id":
            event_id = value


def changed_types(data: str, account_id: str) -> frozenset[str]:
    """Return the type names a StateChange payload reports for an account.

    Args:
        data: The event's data field.
        account_id: The JMAP account to look at.

    Returns:
        Changed type names; empty for pings or unparseable payloads.
    """
    try:
        payload = json.loads(data)
    except ValueError:
        logger.debug("Ignoring non-JSON event data: %.80s", data)
        return frozenset()

    if not isinstance(payload, dict):
        return frozenset()
    changed = payload.get("changed")
    if not isinstance(changed, dict):
        return frozenset()
    account_changes = changed.get(account_id)
    if not isinstance(account_changes, dict):
        return frozenset()
    return frozenset(account_changes)


def signals_new_mail(event: SSEEvent, account_id: str) -> bool:
    """Return True if the event reports a mail state change for the account."""
    return not MAIL_STATE_TYPES.isdisjoint(changed_types(event.data, account_id))
