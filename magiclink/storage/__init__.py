# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Storage for services and magic links."""

from magiclink.storage.models import MagicLink, Service, slugify, url_origin
from magiclink.storage.retention import RetentionSweeper
from magiclink.storage.store import LinkStore, SQLiteLinkStore, StoreError


__all__ = [
    "LinkStore",
    "MagicLink",
    "RetentionSweeper",
    "SQLiteLinkStore",
    "Service",
    "StoreError",
    "slugify",
    "url_origin",
]
