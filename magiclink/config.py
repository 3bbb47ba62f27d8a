# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Configuration for the magic link ingestion service.

Configuration is loaded from a YAML file.  The default location follows
the XDG Base Directory Specification:

    ``$XDG_CONFIG_HOME/magiclink/magiclink.yaml``
    (typically ``~/.config/magiclink/magiclink.yaml``)

``!env`` tags resolve values from environment variables, so the mailbox
token never has to live in the YAML file itself::

    mailbox:
      token: !env FASTMAIL_APP_PASSWORD
      domain: !env FASTMAIL_DOMAIN
    ingest:
      transport: auto
      poll_interval_seconds: 30
    retention:
      link_retention_hours: 24
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar, overload

import yaml
from platformdirs import user_config_path, user_state_path

from magiclink.dotenv_loader import load_dotenv_once
from magiclink.logging import SecretFilter


logger = logging.getLogger(__name__)

#: Application name for XDG path resolution.
_APP_NAME = "magiclink"

#: Fastmail's JMAP session discovery endpoint.
DEFAULT_SESSION_URL = "https://api.fastmail.com/jmap/session"

#: Name of the sentinel mailbox that processed messages are moved into.
DEFAULT_PROCESSED_MAILBOX = "Magic Link Processed"

TRANSPORT_AUTO = "auto"
TRANSPORT_PUSH = "push"
TRANSPORT_POLL = "poll"
_TRANSPORTS = frozenset({TRANSPORT_AUTO, TRANSPORT_PUSH, TRANSPORT_POLL})

_BOOL_TRUTHY = frozenset({"true", "1", "yes", "on"})
_BOOL_FALSY = frozenset({"false", "0", "no", "off"})


def get_config_path() -> Path:
    """Return the default config file path.

    Returns:
        ``$XDG_CONFIG_HOME/magiclink/magiclink.yaml``.
    """
    return user_config_path(_APP_NAME) / "magiclink.yaml"


def get_dotenv_path() -> Path:
    """Return the ``.env`` path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


def get_default_database_path() -> Path:
    """Return the default SQLite database path (XDG state directory)."""
    return user_state_path(_APP_NAME) / "magic-link.db"


class ConfigError(Exception):
    """Base exception for configuration errors."""


# ---------------------------------------------------------------------------
# YAML tag placeholders
# ---------------------------------------------------------------------------


class _EnvVar:
    """Placeholder for an unresolved ``!env VAR_NAME`` tag."""

    def __init__(self, var_name: str) -> None:
        self.var_name = var_name


def _env_constructor(loader: yaml.SafeLoader, node: yaml.Node) -> _EnvVar:
    """Handle ``!env VAR_NAME`` in YAML."""
    value = loader.construct_scalar(node)  # type: ignore[arg-type]
    return _EnvVar(str(value))


def _make_loader() -> type[yaml.SafeLoader]:
    """Create a YAML loader that understands ``!env``."""

    class EnvLoader(yaml.SafeLoader):
        pass

    EnvLoader.add_constructor("!env", _env_constructor)
    return EnvLoader


# ---------------------------------------------------------------------------
# Value resolution
# ---------------------------------------------------------------------------


def _coerce_bool(value: object) -> bool:
    """Coerce a value to bool, handling string representations."""
    if isinstance(value, bool):
        return value
    s = str(value).lower().strip()
    if s in _BOOL_TRUTHY:
        return True
    if s in _BOOL_FALSY:
        return False
    raise ConfigError(f"Cannot convert {value!r} to bool")


def _raw_resolve(value: object) -> str | None:
    """Resolve an ``_EnvVar`` to its string value, or stringify literals.

    Returns None if the value is None or the env var is unset or empty.
    """
    if isinstance(value, _EnvVar):
        raw = os.environ.get(value.var_name)
        if not raw:
            return None
        return raw
    if value is None:
        return None
    return str(value)


_MISSING = object()

T = TypeVar("T")


@overload
def _resolve(value: object, coerce: type[T], *, default: T) -> T: ...


@overload
def _resolve(
    value: object,
    coerce: type[T],
    *,
    required: str,
) -> T: ...


@overload
def _resolve(value: object, coerce: type[T]) -> T | None: ...


def _resolve(
    value: object,
    coerce: type[Any],
    *,
    default: object = _MISSING,
    required: str = "",
) -> Any:
    """Resolve a YAML value, handling ``!env`` tags and type coercion.

    Args:
        value: Raw value from YAML (may be ``_EnvVar``, None, or a
            literal already parsed by PyYAML).
        coerce: Target type (``str``, ``int``, ``bool``, ``Path``).
        default: Default when value is absent.
        required: Human-readable field name.  When set, raises
            ``ConfigError`` if the value is absent.

    Returns:
        The resolved, coerced value, or None when optional and absent.
    """
    if not isinstance(value, _EnvVar) and value is not None:
        if coerce is bool:
            return _coerce_bool(value)
        if isinstance(value, coerce) and not isinstance(value, bool):
            return value

    resolved = _raw_resolve(value)

    if resolved is None:
        if required:
            if isinstance(value, _EnvVar):
                raise ConfigError(
                    f"Required config '{required}': environment variable "
                    f"'{value.var_name}' is not set"
                )
            raise ConfigError(f"Required config '{required}' is missing")
        if default is not _MISSING:
            return default
        return None

    if coerce is bool:
        return _coerce_bool(resolved)
    if coerce is Path:
        return Path(resolved).expanduser()
    try:
        return coerce(resolved)
    except ValueError as e:
        raise ConfigError(
            f"Cannot convert {resolved!r} to {coerce.__name__}"
        ) from e


# ---------------------------------------------------------------------------
# Configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class MailboxConfig:
    """Remote mailbox (JMAP) settings.

    Attributes:
        token: Bearer credential (app password).  Auto-redacted in logs.
        domain: Catch-all recipient domain, without the ``@``.
        session_url: JMAP session discovery URL.
        processed_mailbox: Name of the sentinel mailbox for handled mail.
        request_timeout_seconds: Timeout for ordinary API requests.
    """

    token: str
    domain: str
    session_url: str = DEFAULT_SESSION_URL
    processed_mailbox: str = DEFAULT_PROCESSED_MAILBOX
    request_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        """Validate and register the token for redaction.

        Raises:
            ConfigError: If a value is invalid.
        """
        SecretFilter.register_secret(self.token)
        if not self.domain or "@" in self.domain:
            raise ConfigError(
                f"Mailbox domain must be a bare domain name: {self.domain!r}"
            )
        if not self.processed_mailbox:
            raise ConfigError("Processed mailbox name must not be empty")
        if self.request_timeout_seconds <= 0:
            raise ConfigError(
                f"Request timeout must be > 0: {self.request_timeout_seconds}"
            )


@dataclass(frozen=True)
class IngestConfig:
    """When ingestion cycles run.

    Attributes:
        transport: ``auto`` (probe for push support), ``push`` or ``poll``.
        poll_interval_seconds: Delay between cycles in polling mode.
        reconnect_delay_seconds: Delay before reopening a dropped stream.
        ping_interval_seconds: Keep-alive ping requested from the provider.
    """

    transport: str = TRANSPORT_AUTO
    poll_interval_seconds: float = 30.0
    reconnect_delay_seconds: float = 5.0
    ping_interval_seconds: int = 30

    def __post_init__(self) -> None:
        """Validate configuration.

        Raises:
            ConfigError: If a value is invalid.
        """
        if self.transport not in _TRANSPORTS:
            raise ConfigError(
                f"Unknown transport {self.transport!r}; expected one of "
                f"{', '.join(sorted(_TRANSPORTS))}"
            )
        if self.poll_interval_seconds <= 0:
            raise ConfigError(
                f"Poll interval must be > 0: {self.poll_interval_seconds}"
            )
        if self.reconnect_delay_seconds < 0:
            raise ConfigError(
                f"Reconnect delay must be >= 0: {self.reconnect_delay_seconds}"
            )
        if self.ping_interval_seconds < 1:
            raise ConfigError(
                f"Ping interval must be >= 1s: {self.ping_interval_seconds}"
            )


@dataclass(frozen=True)
class RetentionConfig:
    """Retention sweep settings.

    Attributes:
        link_retention_hours: Links older than this (by received time)
            are deleted.
        sweep_interval_seconds: How often the sweep runs.
    """

    link_retention_hours: float = 24.0
    sweep_interval_seconds: float = 60 * 60

    def __post_init__(self) -> None:
        """Validate configuration.

        Raises:
            ConfigError: If a value is invalid.
        """
        if self.link_retention_hours <= 0:
            raise ConfigError(
                f"Link retention must be > 0 hours: {self.link_retention_hours}"
            )
        if self.sweep_interval_seconds <= 0:
            raise ConfigError(
                f"Sweep interval must be > 0: {self.sweep_interval_seconds}"
            )


@dataclass(frozen=True)
class ServerConfig:
    """Complete service configuration."""

    mailbox: MailboxConfig
    ingest: IngestConfig
    retention: RetentionConfig
    database_path: Path

    @classmethod
    def from_yaml(cls, config_path: Path | None = None) -> "ServerConfig":
        """Load configuration from a YAML file.

        A ``.env`` file is loaded first if present, then ``!env`` tags are
        resolved from the environment.

        Args:
            config_path: Path to YAML config file.  Defaults to
                ``~/.config/magiclink/magiclink.yaml`` (XDG).

        Raises:
            ConfigError: If the file is missing or values are invalid.
        """
        load_dotenv_once()

        if config_path is None:
            config_path = get_config_path()

        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")

        with open(config_path) as f:
            raw = yaml.load(f, Loader=_make_loader())

        if not isinstance(raw, dict):
            raise ConfigError(
                f"Config file must be a YAML mapping: {config_path}"
            )

        config = cls._from_raw(raw)
        logger.info(
            "Config loaded: domain=%s, transport=%s",
            config.mailbox.domain,
            config.ingest.transport,
        )
        return config

    @classmethod
    def _from_raw(cls, raw: dict) -> "ServerConfig":
        """Build config from parsed (but unresolved) YAML dict."""
        mailbox = _section(raw, "mailbox")
        ingest = _section(raw, "ingest")
        retention = _section(raw, "retention")
        storage = _section(raw, "storage")

        return cls(
            mailbox=MailboxConfig(
                token=_resolve(mailbox.get("token"), str, required="mailbox.token"),
                domain=_resolve(
                    mailbox.get("domain"), str, required="mailbox.domain"
                ).lstrip("@"),
                session_url=_resolve(
                    mailbox.get("session_url"), str, default=DEFAULT_SESSION_URL
                ),
                processed_mailbox=_resolve(
                    mailbox.get("processed_mailbox"),
                    str,
                    default=DEFAULT_PROCESSED_MAILBOX,
                ),
                request_timeout_seconds=_resolve(
                    mailbox.get("request_timeout"), float, default=30.0
                ),
            ),
            ingest=IngestConfig(
                transport=_resolve(
                    ingest.get("transport"), str, default=TRANSPORT_AUTO
                ).lower(),
                poll_interval_seconds=_resolve(
                    ingest.get("poll_interval_seconds"), float, default=30.0
                ),
                reconnect_delay_seconds=_resolve(
                    ingest.get("reconnect_delay_seconds"), float, default=5.0
                ),
                ping_interval_seconds=_resolve(
                    ingest.get("ping_interval_seconds"), int, default=30
                ),
            ),
            retention=RetentionConfig(
                link_retention_hours=_resolve(
                    retention.get("link_retention_hours"), float, default=24.0
                ),
                sweep_interval_seconds=_resolve(
                    retention.get("sweep_interval_seconds"),
                    float,
                    default=60.0 * 60,
                ),
            ),
            database_path=_resolve(
                storage.get("database"),
                Path,
                default=get_default_database_path(),
            ),
        )


def _section(raw: dict, name: str) -> dict:
    """Return a top-level mapping section, empty when absent."""
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{name}' must be a YAML mapping")
    return value
