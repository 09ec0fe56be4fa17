# Ledger Sync - Offline-first ledger synchronization for SMBs
# Copyright (c) 2025 Maxence Bernard (maxencebernardhub)
# Licensed under the MIT License. See LICENSE file for details.

"""
Command-Line Interface (CLI) for Ledger Sync.

This module wires together the main building blocks of Ledger Sync:

- application configuration (database, remote store, sync tuning),
- the company resolver and its identity sources,
- the local store and the transactions service,
- the sync engine (push / pull cycles) and the sync monitor.

The CLI is intentionally thin: it does not implement any sync logic
itself. It orchestrates the underlying modules based on command-line
arguments and the configuration file, and prints results.


Commands
--------

    login --company-id ID          remember the company for this device
    logout                         forget the company

    transactions add               record a transaction (offline)
    transactions edit ID           partial update
    transactions delete ID         soft-delete (tombstone)
    transactions list              list transactions for a date range
    transactions totals            daily / weekly / monthly totals

    sync run                       push then pull
    sync push | sync pull          a single phase
    sync status                    pending rows, last sync, faulted flag
    sync health                    health and diagnostics from the sync log

    errors list                    rows rejected by the remote
    errors retry ID                put a rejected row back in the queue

    tombstones purge               drop acknowledged deletions


Configuration and secrets
-------------------------
The TOML file (``ledger_sync_config.toml`` by default, ``--config`` to
override) holds every setting except the API key, which is read from the
environment variable named by ``[remote].api_key_env``. The optional
``LEDGER_SYNC_ACCESS_TOKEN`` and ``LEDGER_SYNC_USER_ID`` variables enable
the remote membership lookup of the company.
"""

import argparse
import os
import sys
from datetime import date
from typing import Optional

from . import __version__
from .company import (
    CompanyResolver,
    IdentitySource,
    LocalStorageSource,
    RemoteLookupSource,
    SecureStorageSource,
)
from .config import AppConfig, load_app_config
from .db import init_database
from .engine import CycleResult, CycleStatus, SyncEngine, SyncTrigger
from .errors import LedgerSyncError
from .logging_setup import configure_logging
from .monitor import SyncMonitor
from .remote import Session, SupabaseRemoteStore
from .retry import RetryConfig
from .transactions_service import (
    CLEARABLE_FIELDS,
    TransactionInput,
    TransactionUpdate,
    daily_totals,
    delete_transaction,
    edit_transaction,
    format_cents,
    get_sync_status,
    list_sync_errors,
    list_transactions,
    login,
    logout,
    monthly_totals,
    parse_amount_cents,
    purge_tombstones,
    record_transaction,
    retry_sync_error,
    weekly_totals,
)

ACCESS_TOKEN_ENV = "LEDGER_SYNC_ACCESS_TOKEN"
USER_ID_ENV = "LEDGER_SYNC_USER_ID"


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _session_from_env() -> Optional[Session]:
    token = os.getenv(ACCESS_TOKEN_ENV)
    user_id = os.getenv(USER_ID_ENV)
    if not token or not user_id:
        return None
    return Session(access_token=token, user_id=user_id)


def build_engine(config: AppConfig) -> SyncEngine:
    """
    Build a SyncEngine from the application configuration.

    The remote store is only created when both the URL and the API key are
    available; otherwise the engine works locally and sync commands fail
    with an explicit message.
    """
    remote: Optional[SupabaseRemoteStore] = None
    api_key = config.remote.api_key
    if config.remote.url and api_key:
        session = _session_from_env()
        remote = SupabaseRemoteStore(
            config.remote.url,
            api_key,
            table=config.remote.table,
            push_function=config.remote.push_function,
            membership_table=config.remote.membership_table,
            timeout=config.remote.timeout_seconds,
            access_token=session.access_token if session else None,
        )

    sources: list[IdentitySource] = [
        SecureStorageSource(config.identity.secure_storage_path, config.identity.key),
        LocalStorageSource(config.identity.local_storage_path, config.identity.key),
    ]
    if remote is not None:
        sources.append(RemoteLookupSource(remote.lookup_tenant_id, _session_from_env))

    retry_config = RetryConfig(
        base_delay=config.sync.backoff_base_seconds,
        multiplier=config.sync.backoff_multiplier,
        max_delay=config.sync.backoff_max_seconds,
    )

    return SyncEngine(
        config.database,
        remote,
        CompanyResolver(sources),
        monitor=SyncMonitor(config.database),
        retry_config=retry_config,
        push_batch_size=config.sync.push_batch_size,
        pull_page_size=config.sync.pull_page_size,
    )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _build_parser() -> argparse.ArgumentParser:
    """Create and configure the argument parser for the CLI."""
    ap = argparse.ArgumentParser(
        prog="ledger-sync",
        description=(
            "Ledger Sync - Offline-first ledger synchronization for SMBs. "
            "Records transactions in a local SQLite mirror and reconciles "
            "them with the company's remote ledger."
        ),
    )
    ap.add_argument(
        "--config",
        dest="config_path",
        help="Path to the TOML configuration file (default: ledger_sync_config.toml).",
    )
    ap.add_argument(
        "--version",
        action="store_true",
        help="Show the Ledger Sync version and exit.",
    )

    subparsers = ap.add_subparsers(dest="command", metavar="command")

    # ------------------------------------------------------------------
    # login / logout
    # ------------------------------------------------------------------
    login_parser = subparsers.add_parser("login", help="Remember the company id.")
    login_parser.add_argument("--company-id", dest="company_id", required=True)

    subparsers.add_parser("logout", help="Forget the company id.")

    # ------------------------------------------------------------------
    # transactions
    # ------------------------------------------------------------------
    tx_parser = subparsers.add_parser("transactions", help="Record and list transactions.")
    tx_subparsers = tx_parser.add_subparsers(dest="tx_command", metavar="transactions-command")

    tx_add = tx_subparsers.add_parser("add", help="Record a new transaction.")
    tx_add.add_argument("--kind", choices=["income", "expense"], required=True)
    tx_add.add_argument("--amount", required=True, help="Amount, e.g. 15.00")
    tx_add.add_argument("--date", dest="tx_date", help="YYYY-MM-DD (default: today).")
    tx_add.add_argument("--description")
    tx_add.add_argument("--category")
    tx_add.add_argument("--time", help="Time of day, HH:MM.")
    tx_add.add_argument("--client", dest="client_name")
    tx_add.add_argument("--expense-type", dest="expense_type")

    tx_edit = tx_subparsers.add_parser("edit", help="Edit a transaction.")
    tx_edit.add_argument("record_id")
    tx_edit.add_argument("--kind", choices=["income", "expense"])
    tx_edit.add_argument("--amount")
    tx_edit.add_argument("--date", dest="tx_date")
    tx_edit.add_argument("--description")
    tx_edit.add_argument("--category")
    tx_edit.add_argument("--time", help="Time of day, HH:MM.")
    tx_edit.add_argument("--client", dest="client_name")
    tx_edit.add_argument("--expense-type", dest="expense_type")
    tx_edit.add_argument(
        "--clear",
        action="append",
        default=[],
        choices=sorted(CLEARABLE_FIELDS),
        help="Reset an optional field to empty (repeatable).",
    )

    tx_delete = tx_subparsers.add_parser("delete", help="Soft-delete a transaction.")
    tx_delete.add_argument("record_id")

    tx_list = tx_subparsers.add_parser("list", help="List transactions.")
    tx_list.add_argument("--from-date", dest="from_date", required=True)
    tx_list.add_argument("--to-date", dest="to_date", required=True)
    tx_list.add_argument("--include-deleted", action="store_true")

    tx_totals = tx_subparsers.add_parser("totals", help="Income / expense totals.")
    tx_totals.add_argument("--from-date", dest="from_date", required=True)
    tx_totals.add_argument("--to-date", dest="to_date", required=True)
    tx_totals.add_argument(
        "--by", choices=["day", "week", "month"], default="month"
    )

    # ------------------------------------------------------------------
    # sync
    # ------------------------------------------------------------------
    sync_parser = subparsers.add_parser("sync", help="Synchronize with the remote ledger.")
    sync_subparsers = sync_parser.add_subparsers(dest="sync_command", metavar="sync-command")
    sync_subparsers.add_parser("run", help="Push local changes, then pull remote ones.")
    sync_subparsers.add_parser("push", help="Push local changes only.")
    sync_subparsers.add_parser("pull", help="Pull remote changes only.")
    sync_subparsers.add_parser("status", help="Show the sync status.")
    sync_subparsers.add_parser("health", help="Show sync health and diagnostics.")

    # ------------------------------------------------------------------
    # errors
    # ------------------------------------------------------------------
    errors_parser = subparsers.add_parser("errors", help="Rows rejected by the remote.")
    errors_subparsers = errors_parser.add_subparsers(
        dest="errors_command", metavar="errors-command"
    )
    errors_subparsers.add_parser("list", help="List rejected rows.")
    errors_retry = errors_subparsers.add_parser("retry", help="Retry a rejected row.")
    errors_retry.add_argument("record_id")

    # ------------------------------------------------------------------
    # tombstones
    # ------------------------------------------------------------------
    tomb_parser = subparsers.add_parser("tombstones", help="Deleted rows maintenance.")
    tomb_subparsers = tomb_parser.add_subparsers(dest="tomb_command", metavar="tombstones-command")
    tomb_subparsers.add_parser("purge", help="Remove acknowledged deletions.")

    return ap


def _parse_date(value: Optional[str], default: Optional[date] = None) -> Optional[date]:
    """
    Parse an optional CLI date argument (YYYY-MM-DD).

    Raises
    ------
    SystemExit
        If the date format is invalid.
    """
    if value is None:
        return default

    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        msg = f"Invalid date format: {value!r}. Expected YYYY-MM-DD."
        raise SystemExit(msg) from exc


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _print_record(record) -> None:
    print(f"  id:          {record.id}")
    print(f"  kind:        {record.kind}")
    print(f"  date:        {record.date.isoformat()}")
    print(f"  amount:      {format_cents(record.amount_cents)}")
    print(f"  description: {record.description or ''}")
    print(f"  category:    {record.category or ''}")
    if record.time:
        print(f"  time:        {record.time}")
    if record.client_name:
        print(f"  client:      {record.client_name}")
    if record.expense_type:
        print(f"  expense:     {record.expense_type}")
    print(f"  version:     {record.version}")
    print(f"  dirty:       {record.dirty}")
    if record.deleted_at is not None:
        print(f"  deleted_at:  {record.deleted_at.isoformat()}")


def _handle_transactions(args: argparse.Namespace, config: AppConfig, engine: SyncEngine) -> None:
    subcmd = getattr(args, "tx_command", None)

    if subcmd == "add":
        fields = TransactionInput(
            kind=args.kind,
            date=_parse_date(args.tx_date, date.today()),
            amount_cents=parse_amount_cents(args.amount),
            description=args.description,
            category=args.category,
            time=args.time,
            client_name=args.client_name,
            expense_type=args.expense_type,
        )
        record = record_transaction(engine, fields, device_name=config.sync.device_name)
        print("Transaction recorded:")
        _print_record(record)
    elif subcmd == "edit":
        update = TransactionUpdate(
            kind=args.kind,
            date=_parse_date(args.tx_date),
            amount_cents=parse_amount_cents(args.amount) if args.amount else None,
            description=args.description,
            category=args.category,
            time=args.time,
            client_name=args.client_name,
            expense_type=args.expense_type,
            clear=frozenset(args.clear),
        )
        record = edit_transaction(
            engine, args.record_id, update, device_name=config.sync.device_name
        )
        print("Transaction updated:")
        _print_record(record)
    elif subcmd == "delete":
        record = delete_transaction(engine, args.record_id)
        print("Transaction marked as deleted:")
        _print_record(record)
    elif subcmd == "list":
        start = _parse_date(args.from_date)
        end = _parse_date(args.to_date)
        df = list_transactions(engine, start, end, include_deleted=args.include_deleted)
        if df.empty:
            print("No transactions found for the given period.")
            return
        df_display = df[["id", "date", "kind", "amount_cents", "description", "category", "dirty"]].copy()
        df_display["date"] = df_display["date"].dt.strftime("%Y-%m-%d")
        df_display["amount"] = df_display.pop("amount_cents").map(format_cents)
        print(df_display.to_string(index=False))
        print()
        print(f"Total transactions: {len(df)}")
    elif subcmd == "totals":
        start = _parse_date(args.from_date)
        end = _parse_date(args.to_date)
        builders = {"day": daily_totals, "week": weekly_totals, "month": monthly_totals}
        df = builders[args.by](engine, start, end)
        if df.empty:
            print("No transactions found for the given period.")
            return
        for col in ("income_cents", "expense_cents", "net_cents"):
            df[col.replace("_cents", "")] = df.pop(col).map(format_cents)
        print(df.to_string(index=False))
    else:
        print(
            "No transactions subcommand specified. "
            "Available subcommands are: 'add', 'edit', 'delete', 'list', 'totals'."
        )


def _print_cycle(result: CycleResult) -> None:
    print(f"Sync {result.status.value} ({result.trigger.value})")
    if result.skipped_reason:
        print(f"  skipped:     {result.skipped_reason}")
    if result.push is not None:
        p = result.push
        print(
            f"  push:        {p.accepted} accepted, {p.rejected} rejected, "
            f"{p.remote_won} overwritten by remote, {p.deferred} deferred"
        )
    if result.pull is not None:
        print(
            f"  pull:        {result.pull.received} received, "
            f"{result.pull.applied} applied in {result.pull.pages} page(s)"
        )
    if result.error:
        print(f"  error:       {result.error}")
    if result.backoff_seconds:
        print(f"  next automatic attempt in {result.backoff_seconds:.0f}s")


def _handle_sync(args: argparse.Namespace, engine: SyncEngine) -> bool:
    """Handle the 'sync' subcommands. Returns False when a cycle failed."""
    subcmd = getattr(args, "sync_command", None)

    if subcmd in ("run", "push", "pull"):
        if subcmd == "run":
            result = engine.sync(SyncTrigger.MANUAL)
        else:
            tenant_id = engine.resolver.resolve_tenant_id()
            result = engine.run_cycle(
                tenant_id,
                SyncTrigger.MANUAL,
                push=subcmd == "push",
                pull=subcmd == "pull",
            )
        _print_cycle(result)
        return result.status in (CycleStatus.COMPLETED, CycleStatus.SKIPPED)

    if subcmd == "status":
        status = get_sync_status(engine)
        last = status.last_synced_at.isoformat() if status.last_synced_at else "never"
        print(f"State:          {status.state.value}")
        print(f"Pending rows:   {status.pending_count}")
        print(f"Rejected rows:  {status.error_count}")
        print(f"Last synced at: {last}")
        print(f"Faulted:        {status.faulted}")
        return True

    if subcmd == "health":
        tenant_id = engine.resolver.resolve_tenant_id()
        health = engine.monitor.get_health(tenant_id)
        diagnostics = engine.monitor.run_diagnostics(tenant_id)
        last = health.last_sync.isoformat() if health.last_sync else "never"
        print(f"Healthy:          {health.is_healthy}")
        print(f"Last event:       {last}")
        print(f"Failures:         {health.failure_count}")
        print(f"Average latency:  {health.average_latency_ms}ms")
        print(f"Diagnostics:      {diagnostics.status}")
        for issue in diagnostics.issues:
            print(f"  - {issue}")
        for recommendation in diagnostics.recommendations:
            print(f"  > {recommendation}")
        return True

    print(
        "No sync subcommand specified. "
        "Available subcommands are: 'run', 'push', 'pull', 'status', 'health'."
    )
    return True


def _handle_errors(args: argparse.Namespace, engine: SyncEngine) -> None:
    subcmd = getattr(args, "errors_command", None)

    if subcmd == "list":
        records = list_sync_errors(engine)
        if not records:
            print("No rejected transactions.")
            return
        for record in records:
            print(
                f"{record.id}  {record.date.isoformat()}  {record.kind:<7}  "
                f"{format_cents(record.amount_cents):>12}  "
                f"[{record.sync_error_kind}] {record.sync_error_message or ''}"
            )
    elif subcmd == "retry":
        retry_sync_error(engine, args.record_id)
        print(f"Transaction {args.record_id} queued for the next sync.")
    else:
        print("No errors subcommand specified. Available subcommands are: 'list', 'retry'.")


def main(argv: Optional[list[str]] = None) -> None:
    """Entry point for the Ledger Sync CLI.

    This function parses command-line arguments, loads the application
    configuration, configures logging, initializes the local database,
    builds the sync engine and dispatches to the selected command.
    """
    parser = _build_parser()
    args = parser.parse_args(argv)

    # --version: short-circuit and exit early.
    if args.version:
        print(f"ledger_sync version {__version__}")
        return

    if args.command is None:
        parser.print_help()
        return

    # 1) Load application configuration
    if args.config_path:
        config = load_app_config(args.config_path)
    else:
        config = load_app_config()

    configure_logging(config.log_level)

    # 2) Initialize the database (create file and schema if needed)
    init_database(config.database)

    engine = build_engine(config)

    # 3) Dispatch
    ok = True
    try:
        if args.command == "login":
            login(engine, args.company_id)
            print(f"Logged in to company {args.company_id}.")
        elif args.command == "logout":
            logout(engine)
            print("Logged out.")
        elif args.command == "transactions":
            _handle_transactions(args, config, engine)
        elif args.command == "sync":
            ok = _handle_sync(args, engine)
        elif args.command == "errors":
            _handle_errors(args, engine)
        elif args.command == "tombstones":
            if getattr(args, "tomb_command", None) == "purge":
                removed = purge_tombstones(engine)
                print(f"Removed {removed} acknowledged deletion(s).")
            else:
                print("No tombstones subcommand specified. Available subcommands are: 'purge'.")
    except (LedgerSyncError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    finally:
        if engine.remote is not None:
            engine.remote.close()

    if not ok:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
