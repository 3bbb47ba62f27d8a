# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Decide whether a message is a login/authentication email.

The filter is deliberately broad.  A false positive only costs an
extraction attempt that finds no link, while a false negative silently
drops a login email, so new patterns should err on the side of matching.
"""

import re


_LOGIN_SUBJECT_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"sign\s*in",
        r"log\s*in",
        r"login",
        r"verify",
        r"verification",
        r"magic\s*link",
        r"secure\s*link",
        r"confirm",
        r"confirmation",
        r"one[- ]?time",
        r"access\s*link",
        r"authentication",
        r"security\s*code",
    )
)

# Matched against the sender's local-part only
_AUTH_SENDER_PATTERNS = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"auth",
        r"login",
        r"account",
        r"mail",
        r"noreply",
        r"no-reply",
        r"notify",
        r"notification",
    )
)


def is_login_email(subject: str, from_address: str) -> bool:
    """Return True if the subject or sender suggests a login email.

    Args:
        subject: Message subject (may be empty).
        from_address: Sender address, e.g. ``noreply@example.com``.
    """
    if any(p.search(subject) for p in _LOGIN_SUBJECT_PATTERNS):
        return True

    sender_local_part = from_address.split("@", 1)[0]
    return any(p.search(sender_local_part) for p in _AUTH_SENDER_PATTERNS)
