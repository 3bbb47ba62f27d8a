# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Magic link inbox.

Collects one-time login links delivered to a catch-all mail domain so a
household or team can share logins without sharing passwords.
"""
