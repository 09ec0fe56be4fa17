# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Conflict policy: last-writer-wins by version.

When a remote row arrives for an id whose local row is still dirty, the two
versions are compared:

- remote.version > local.version: the remote write happened after the local
  one was queued. The remote row wins, the local edit is discarded and the
  dirty flag cleared.
- remote.version <= local.version: the remote row is stale relative to what
  the client is about to push. It is ignored and the local dirty row is left
  untouched.

Wall-clock timestamps are never consulted, clocks are not trusted across
devices. There is no field-level merge.
"""

from __future__ import annotations

from enum import Enum


class Resolution(str, Enum):
    """Outcome of the conflict policy."""

    REMOTE_WINS = "remote_wins"
    KEEP_LOCAL = "keep_local"


def resolve_conflict(local_version: int, remote_version: int) -> Resolution:
    """
    Decide which side of a conflicting edit survives.

    Parameters
    ----------
    local_version:
        Version of the dirty local row.
    remote_version:
        Version of the incoming remote row.

    Returns
    -------
    Resolution
        ``REMOTE_WINS`` iff ``remote_version > local_version``.
    """
    if remote_version > local_version:
        return Resolution.REMOTE_WINS
    return Resolution.KEEP_LOCAL
