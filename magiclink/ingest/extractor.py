# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Magic link extraction from email bodies.

Login emails rarely mark their login link explicitly, so every anchor in
the body is scored on a handful of signals:

- Login-looking path (``/login``, ``/verify``, ``/magic``, ...): +10
- Token-looking query parameter name (``token``, ``code``, ...): +15 each
- Query parameter value that looks like a random token: +10 each
- Path segment that looks like a random token: +8
- Button-like markup (``btn`` class, inline-block, inside a table): +5
- One of the first three anchors: +3, +2, +1

Links that are obviously not login links (unsubscribe, privacy, social
networks, ``mailto:``, ...) are dropped before scoring.  The highest score
wins, earlier anchors winning ties.  When nothing scores, a second pass
returns the first surviving anchor that carries any token at all.
"""

import logging
import re
from dataclasses import dataclass, field
from html.parser import HTMLParser
from urllib.parse import SplitResult, parse_qsl, urlsplit

from magiclink.ingest.tokens import looks_like_token


logger = logging.getLogger(__name__)


_LOGIN_PATH_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"/login",
        r"/auth",
        r"/verify",
        r"/magic",
        r"/signin",
        r"/sign-in",
        r"/confirm",
        r"/sso",
        r"/callback",
        r"/authenticate",
        r"/access",
    )
)

_TOKEN_PARAM_NAMES = frozenset(
    {
        "token",
        "code",
        "key",
        "t",
        "k",
        "otp",
        "magic",
        "auth",
        "session",
        "ticket",
    }
)

# Matched against the raw href, not just the path
_EXCLUDE_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"unsubscribe",
        r"opt-out",
        r"optout",
        r"preferences",
        r"privacy",
        r"terms",
        r"legal",
        r"policy",
        r"facebook\.com",
        r"twitter\.com",
        r"linkedin\.com",
        r"instagram\.com",
        r"support",
        r"help",
        r"faq",
        r"mailto:",
        r"tel:",
    )
)

_BUTTON_CLASSES = frozenset({"button", "btn"})

_LOGIN_PATH_SCORE = 10
_TOKEN_PARAM_SCORE = 15
_TOKEN_VALUE_SCORE = 10
_TOKEN_SEGMENT_SCORE = 8
_PROMINENT_SCORE = 5
_POSITION_BONUS_SLOTS = 3


@dataclass
class ScoredLink:
    """A candidate link and why it scored the way it did."""

    url: str
    score: int
    reasons: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class _Anchor:
    href: str
    prominent: bool


class _AnchorCollector(HTMLParser):
    """Collects ``<a href>`` elements in document order.

    Records whether each anchor looks like a button: a ``button``/``btn``
    class, ``display: inline-block`` inline style, or any enclosing
    ``<table>`` (email clients lay buttons out with tables).
    """

    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.anchors: list[_Anchor] = []
        self._table_depth = 0

    def handle_starttag(
        self, tag: str, attrs: list[tuple[str, str | None]]
    ) -> None:
        if tag == "table":
            self._table_depth += 1
            return
        if tag != "a":
            return

        attr_map = dict(attrs)
        if "href" not in attr_map:
            return

        self.anchors.append(
            _Anchor(
                href=(attr_map["href"] or "").strip(),
                prominent=(
                    self._table_depth > 0
                    or _has_button_class(attr_map.get("class"))
                    or _is_inline_block(attr_map.get("style"))
                ),
            )
        )

    def handle_endtag(self, tag: str) -> None:
        if tag == "table" and self._table_depth > 0:
            self._table_depth -= 1


def _has_button_class(class_attr: str | None) -> bool:
    if not class_attr:
        return False
    return not _BUTTON_CLASSES.isdisjoint(class_attr.split())


def _is_inline_block(style_attr: str | None) -> bool:
    """Check an inline style for ``display: inline-block``.

    Later declarations override earlier ones, as in CSS.
    """
    if not style_attr:
        return False
    display = None
    for declaration in style_attr.split(";"):
        prop, sep, value = declaration.partition(":")
        if sep and prop.strip().lower() == "display":
            display = value.replace("!important", "").strip().lower()
    return display == "inline-block"


def _parse_candidate(href: str) -> SplitResult | None:
    """Parse an href, rejecting non-web and excluded links.

    Returns:
        The split URL, or None if the link can never be a login link.
    """
    if not href:
        return None
    try:
        parsed = urlsplit(href)
    except ValueError:
        return None

    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return None

    if any(p.search(href) for p in _EXCLUDE_PATTERNS):
        return None

    return parsed


def _path_segments(parsed: SplitResult) -> list[str]:
    return [segment for segment in parsed.path.split("/") if segment]


def score_link(url: str, is_button: bool, position: int) -> ScoredLink | None:
    """Score a single link.

    Args:
        url: The anchor's href.
        is_button: Whether the anchor is styled or laid out like a button.
        position: Zero-based index of the anchor among all anchors.

    Returns:
        The scored link, or None if the link is excluded outright.
    """
    parsed = _parse_candidate(url)
    if parsed is None:
        return None

    scored = ScoredLink(url=url, score=0)

    for pattern in _LOGIN_PATH_PATTERNS:
        if pattern.search(parsed.path):
            scored.score += _LOGIN_PATH_SCORE
            scored.reasons.append(f"path matches {pattern.pattern}")
            break

    seen_token_params: set[str] = set()
    for name, value in parse_qsl(parsed.query, keep_blank_values=True):
        lowered = name.lower()
        if lowered in _TOKEN_PARAM_NAMES and lowered not in seen_token_params:
            seen_token_params.add(lowered)
            scored.score += _TOKEN_PARAM_SCORE
            scored.reasons.append(f"has token param: {name}")
        if looks_like_token(value):
            scored.score += _TOKEN_VALUE_SCORE
            scored.reasons.append(f"param {name} looks like token")

    if any(looks_like_token(s) for s in _path_segments(parsed)):
        scored.score += _TOKEN_SEGMENT_SCORE
        scored.reasons.append("path has token-like segment")

    if is_button:
        scored.score += _PROMINENT_SCORE
        scored.reasons.append("in button/prominent element")

    if position < _POSITION_BONUS_SLOTS:
        scored.score += _POSITION_BONUS_SLOTS - position
        scored.reasons.append(f"early position: {position}")

    return scored


def _carries_token(parsed: SplitResult) -> bool:
    if any(looks_like_token(s) for s in _path_segments(parsed)):
        return True
    return any(
        looks_like_token(value)
        for _, value in parse_qsl(parsed.query, keep_blank_values=True)
    )


def extract_magic_link(body: str) -> str | None:
    """Return the most likely login link in an HTML or text body.

    Args:
        body: Message body.  Plain text is parsed as HTML too; it simply
            contains no anchors.

    Returns:
        The chosen URL, or None if no anchor qualifies.
    """
    collector = _AnchorCollector()
    collector.feed(body)
    collector.close()
    anchors = collector.anchors

    candidates: list[ScoredLink] = []
    for position, anchor in enumerate(anchors):
        scored = score_link(anchor.href, anchor.prominent, position)
        if scored is not None and scored.score > 0:
            candidates.append(scored)

    if candidates:
        # sort() is stable, so document order breaks ties
        candidates.sort(key=lambda c: c.score, reverse=True)
        best = candidates[0]
        logger.debug(
            "Best of %d candidates scored %d: %s",
            len(candidates),
            best.score,
            "; ".join(best.reasons),
        )
        return best.url

    for anchor in anchors:
        parsed = _parse_candidate(anchor.href)
        if parsed is not None and _carries_token(parsed):
            logger.debug("Using fallback token link")
            return anchor.href

    return None
