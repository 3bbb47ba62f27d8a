# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Heuristics for recognizing random-looking token strings."""

import re


_UUID = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# base64url-ish alphabet, long enough that it is unlikely to be a word
_LONG_ALPHANUMERIC = re.compile(r"^[A-Za-z0-9_-]{20,}$")

_LONG_HEX = re.compile(r"^[0-9a-f]{32,}$", re.IGNORECASE)


def looks_like_token(value: str) -> bool:
    """Return True if ``value`` looks like a random token.

    Matches UUIDs, long base64url-style strings (20+ characters) and long
    hex strings (32+ characters).
    """
    return bool(
        _UUID.match(value)
        or _LONG_ALPHANUMERIC.match(value)
        or _LONG_HEX.match(value)
    )
