# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Load ``.env`` files before config values are resolved.

Keeps the mailbox token out of ``magiclink.yaml``: the YAML says
``token: !env FASTMAIL_APP_PASSWORD`` and the value lives in a ``.env``
file.  Candidates, in precedence order:

1. ``~/.config/magiclink/.env`` (XDG config directory)
2. ``.env`` in the current working directory

``python-dotenv`` never overwrites variables that are already set, so the
process environment beats both files and the first file beats the second.
"""

import logging
from pathlib import Path

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

_loaded_files: list[Path] | None = None


def _candidates() -> list[Path]:
    from magiclink.config import get_dotenv_path

    paths: list[Path] = []
    for path in (get_dotenv_path(), Path.cwd() / ".env"):
        if path.is_file() and path not in paths:
            paths.append(path)
    return paths


def load_dotenv_once() -> list[Path]:
    """Load the ``.env`` candidates on first call; later calls are no-ops.

    Returns:
        The files that were loaded by the first call.
    """
    global _loaded_files
    if _loaded_files is not None:
        return _loaded_files

    _loaded_files = []
    for path in _candidates():
        load_dotenv(path)
        _loaded_files.append(path)
        logger.debug("Loaded .env from %s", path)
    return _loaded_files


def reset_dotenv_state() -> None:
    """Forget that .env files were loaded. For testing only."""
    global _loaded_files
    _loaded_files = None
