# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Ledger Sync
-----------

An offline-first synchronization engine for small-business financial
ledgers. Each device keeps a local SQLite mirror of one company's ledger
records, keeps working while the network is unavailable, and reconciles
locally-mutated ("dirty") rows with an authoritative multi-tenant remote
store once connectivity returns.

Main capabilities:
- a tenant-partitioned local store with dirty flags, versions and tombstones,
- an ordered chain of identity sources resolving the active company,
- a push reconciler with batching, idempotent retry and per-row error flags,
- a pull reconciler with a durable per-tenant (updated_at, id) cursor,
- last-writer-wins-by-version conflict resolution,
- a per-tenant sync cycle state machine with backoff and cancellation,
- a persisted sync log with health diagnostics,
- a small command-line interface for scripting and troubleshooting.

Version: 0.2.0

Usage:
    python -m ledger_sync.cli --help
"""

__all__ = [
    "company",
    "config",
    "conflict",
    "db",
    "engine",
    "errors",
    "locks",
    "monitor",
    "pull",
    "push",
    "remote",
    "retry",
    "transactions_service",
]

__version__ = "0.2.0"
