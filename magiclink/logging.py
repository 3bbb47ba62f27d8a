# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Logging setup with bearer token redaction.

The mailbox token travels in every request header, so ``MailboxConfig``
registers it with ``SecretFilter`` at load time.  From then on it is
scrubbed from any log line that happens to include it, most commonly
through the text of a failed request's exception.

Usage:
    # In entry points
    from magiclink.logging import configure_logging
    configure_logging(level=logging.INFO)

    # In library modules
    import logging
    logger = logging.getLogger(__name__)
    logger.info("Processed magic link for %s", slug)
"""

import logging
import re
from typing import ClassVar


DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

REDACTED = "[REDACTED]"

# Third-party loggers that log every request at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore")


class SecretFilter(logging.Filter):
    """Replaces registered secrets with ``[REDACTED]``.

    Applies to the message template and to string or exception
    arguments.  Records are never dropped.
    """

    _secrets: ClassVar[set[str]] = set()
    _pattern: ClassVar[re.Pattern[str] | None] = None

    @classmethod
    def register_secret(cls, secret: str) -> None:
        """Register a secret. Empty strings are ignored."""
        if not secret or secret in cls._secrets:
            return
        cls._secrets.add(secret)
        # Longest first so a secret containing another is masked whole
        alternatives = sorted(cls._secrets, key=len, reverse=True)
        cls._pattern = re.compile("|".join(map(re.escape, alternatives)))

    @classmethod
    def clear_secrets(cls) -> None:
        """Forget all registered secrets. Primarily for testing."""
        cls._secrets.clear()
        cls._pattern = None

    @classmethod
    def redact(cls, text: str) -> str:
        """Return ``text`` with every registered secret masked."""
        if cls._pattern is None:
            return text
        return cls._pattern.sub(REDACTED, text)

    def filter(self, record: logging.LogRecord) -> bool:
        if self._pattern is None:
            return True
        record.msg = self.redact(str(record.msg))
        if isinstance(record.args, tuple):
            record.args = tuple(self._redact_arg(arg) for arg in record.args)
        return True

    @classmethod
    def _redact_arg(cls, arg: object) -> object:
        if isinstance(arg, str):
            return cls.redact(arg)
        if isinstance(arg, BaseException):
            text = str(arg)
            redacted = cls.redact(text)
            return redacted if redacted != text else arg
        return arg


def configure_logging(
    level: int = logging.INFO,
    format_string: str | None = None,
    add_secret_filter: bool = True,
) -> None:
    """Install a single stderr handler on the root logger.

    Args:
        level: Root log level.
        format_string: Record format.  Defaults to ``DEFAULT_FORMAT``.
        add_secret_filter: Attach ``SecretFilter`` to the handler.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(format_string or DEFAULT_FORMAT))
    if add_secret_filter:
        handler.addFilter(SecretFilter())

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)
