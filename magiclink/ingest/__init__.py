# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Email ingestion pipeline.

- tokens: token-shape heuristics
- classifier: login email detection from subject and sender
- extractor: scored magic link extraction from HTML bodies
- jmap: JMAP mail client (session, queries, processed-mailbox moves, push)
- events: push event stream parsing
- orchestrator: the per-cycle state machine
- transport: push and polling strategies that decide when cycles run
"""

from magiclink.ingest.classifier import is_login_email
from magiclink.ingest.extractor import ScoredLink, extract_magic_link, score_link
from magiclink.ingest.jmap import (
    JMAPClient,
    JMAPError,
    JMAPMethodError,
    JMAPSession,
    JMAPTransportError,
    MailMessage,
)
from magiclink.ingest.orchestrator import (
    CycleReport,
    Ingestor,
    MessageResult,
    MessageStatus,
)
from magiclink.ingest.tokens import looks_like_token
from magiclink.ingest.transport import (
    IngestTransport,
    PollingTransport,
    PushTransport,
    TransportHealth,
    TransportStatus,
    select_transport,
)


__all__ = [
    # classifier
    "is_login_email",
    # extractor
    "ScoredLink",
    "extract_magic_link",
    "score_link",
    # jmap
    "JMAPClient",
    "JMAPError",
    "JMAPMethodError",
    "JMAPSession",
    "JMAPTransportError",
    "MailMessage",
    # orchestrator
    "CycleReport",
    "Ingestor",
    "MessageResult",
    "MessageStatus",
    # tokens
    "looks_like_token",
    # transport
    "IngestTransport",
    "PollingTransport",
    "PushTransport",
    "TransportHealth",
    "TransportStatus",
    "select_transport",
]
