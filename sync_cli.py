"""Command line driver for sheet connections, sync passes and drum upkeep."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional

from core import drum_ledger
from core.auth import AuthContext, load_token_table, require_role
from core.connections import ConnectionRegistry
from core.errors import SheetsAccessError, SyncError
from core.jobs import SyncJobRunner
from core.logging_config import configure_logging
from core.pipeline import ProgressChannel, ProgressEvent
from core.sheets_client import SheetsClient
from core.sync_service import SyncService
from core.wastage import WastagePolicy
from db import Store, open_store
from settings import (
    DEFAULT_TOKENS_PATH,
    SERVICE_ACCOUNT_ENV_VAR,
    SYNC_SETTINGS_PATH,
    TOKEN_ENV_VAR,
    SyncSettings,
    load_sync_settings,
)

logger = logging.getLogger(__name__)

JOB_POLL_INTERVAL = 0.5


def _settings(args: argparse.Namespace) -> SyncSettings:
    return load_sync_settings(args.settings)


def _store(settings: SyncSettings) -> Store:
    return open_store(settings.database_path)


def _policy(settings: SyncSettings) -> WastagePolicy:
    return WastagePolicy(method=settings.wastage_method, low_stock_threshold=settings.low_stock_threshold)


def _authorize(args: argparse.Namespace, settings: SyncSettings) -> Optional[AuthContext]:
    authorizer = load_token_table(Path(args.tokens))
    if authorizer is None:
        logger.warning("No token table at %s; running as local operator", args.tokens)
        return None
    token = args.token or os.getenv(TOKEN_ENV_VAR)
    return require_role(authorizer, token, settings.allowed_roles)


def _print_error(exc: Exception) -> None:
    print(f"Error: {exc}", file=sys.stderr)
    if isinstance(exc, SheetsAccessError) and exc.hint:
        print(f"Hint : {exc.hint}", file=sys.stderr)


def command_connection_add(args: argparse.Namespace) -> int:
    settings = _settings(args)
    context = _authorize(args, settings)
    registry = ConnectionRegistry(_store(settings))
    connection = registry.create(
        month=args.month,
        year=args.year,
        sheet_url=args.url,
        sheet_name=args.name,
        sheet_tab=args.tab,
        secondary_tab=args.secondary_tab,
        created_by=context.user_id if context else None,
    )
    print(f"Created connection {connection.id} for {connection.month:02d}/{connection.year}")
    return 0


def command_connection_list(args: argparse.Namespace) -> int:
    registry = ConnectionRegistry(_store(_settings(args)))
    connections = registry.list()
    if not connections:
        print("No connections configured.")
        return 0
    for connection in connections:
        line = (
            f"{connection.id}  {connection.month:02d}/{connection.year}  {connection.status:<6}  "
            f"records={connection.record_count}  last_synced={connection.last_synced or '-'}"
        )
        if connection.last_error:
            line += f"  error={connection.last_error}"
        print(line)
    return 0


def command_connection_delete(args: argparse.Namespace) -> int:
    settings = _settings(args)
    _authorize(args, settings)
    ConnectionRegistry(_store(settings)).delete(args.connection_id)
    print(f"Deleted connection {args.connection_id}")
    return 0


def _print_progress(event: ProgressEvent) -> None:
    suffix = f" - {event.message}" if event.message else ""
    print(f"[{event.percent:3d}%] {event.step} {event.state}{suffix}")


def command_sync(args: argparse.Namespace) -> int:
    settings = _settings(args)
    _authorize(args, settings)
    store = _store(settings)
    client = SheetsClient.from_credentials(Path(settings.credential_path), SERVICE_ACCOUNT_ENV_VAR)

    def make_service() -> SyncService:
        return SyncService(store, client, settings, policy=_policy(settings))

    if args.background:
        runner = SyncJobRunner(make_service)
        job = runner.submit(args.connection_id)
        print(f"Job {job.id} started")
        last_message = ""
        while True:
            snapshot = runner.jobs.poll(job.id)["job"]
            if snapshot["message"] != last_message:
                last_message = snapshot["message"]
                print(f"[{snapshot['progress']:3d}%] {last_message}")
            if snapshot["status"] in {"done", "error"}:
                break
            time.sleep(JOB_POLL_INTERVAL)
        if snapshot["status"] == "error":
            return 1
        print(json.dumps(snapshot.get("result", {}), indent=2))
        return 0

    channel = ProgressChannel()
    channel.subscribe(_print_progress)
    result = make_service().sync_connection(args.connection_id, channel)
    print(json.dumps(result.as_dict(), indent=2))
    return 0


def command_drums_list(args: argparse.Namespace) -> int:
    store = _store(_settings(args))
    drums = store.list_drums()
    if not drums:
        print("No drums recorded.")
        return 0
    for drum in drums:
        print(
            f"{drum['drum_number']:<12} {drum['status']:<12} "
            f"current={float(drum['current_quantity'] or 0):.2f} "
            f"initial={float(drum['initial_quantity'] or 0):.2f}"
        )
    return 0


def command_drums_recalc(args: argparse.Namespace) -> int:
    settings = _settings(args)
    _authorize(args, settings)
    summary = drum_ledger.recalculate_all_drums(
        _store(settings),
        _policy(settings),
        default_capacity=settings.default_drum_capacity,
    )
    print(json.dumps(summary.as_dict(), indent=2))
    return 0


def command_drums_set_wastage(args: argparse.Namespace) -> int:
    settings = _settings(args)
    _authorize(args, settings)
    value = None if args.clear else args.value
    if value is None and not args.clear:
        print("Error: provide a wastage value or --clear", file=sys.stderr)
        return 2
    check = drum_ledger.set_manual_wastage(
        _store(settings),
        args.drum_number,
        value,
        _policy(settings),
        default_capacity=settings.default_drum_capacity,
    )
    if not check.valid:
        print(f"Error: {check.message}", file=sys.stderr)
        if check.adjusted_value is not None:
            print(f"Largest accepted value: {check.adjusted_value:.2f}", file=sys.stderr)
        return 1
    if check.warning:
        print(f"Warning: {check.warning}")
    print(f"Manual wastage for drum {args.drum_number} {'cleared' if value is None else 'saved'}.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CableLedger sheet reconciliation tool")
    parser.add_argument("--settings", default=SYNC_SETTINGS_PATH, help="Path to sync_settings.json")
    parser.add_argument("--tokens", default=DEFAULT_TOKENS_PATH, help="Path to the token table")
    parser.add_argument("--token", help=f"Caller token (defaults to ${TOKEN_ENV_VAR})")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to the console")
    subparsers = parser.add_subparsers(dest="command", required=True)

    connection_parser = subparsers.add_parser("connection", help="Manage month/year sheet connections")
    connection_sub = connection_parser.add_subparsers(dest="action", required=True)

    add_parser = connection_sub.add_parser("add", help="Bind a spreadsheet to a month and year")
    add_parser.add_argument("--month", required=True, type=int)
    add_parser.add_argument("--year", required=True, type=int)
    add_parser.add_argument("--url", required=True, help="Spreadsheet URL or id")
    add_parser.add_argument("--name", help="Display label")
    add_parser.add_argument("--tab", help="Primary worksheet title")
    add_parser.add_argument("--secondary-tab", dest="secondary_tab", help="Secondary worksheet title")
    add_parser.set_defaults(func=command_connection_add)

    list_parser = connection_sub.add_parser("list", help="Show connections")
    list_parser.set_defaults(func=command_connection_list)

    delete_parser = connection_sub.add_parser("delete", help="Remove a connection")
    delete_parser.add_argument("connection_id")
    delete_parser.set_defaults(func=command_connection_delete)

    sync_parser = subparsers.add_parser("sync", help="Run a reconciliation pass")
    sync_parser.add_argument("connection_id")
    sync_parser.add_argument(
        "--background",
        action="store_true",
        help="Run as a background job and poll its status",
    )
    sync_parser.set_defaults(func=command_sync)

    drums_parser = subparsers.add_parser("drums", help="Inspect and maintain cable drums")
    drums_sub = drums_parser.add_subparsers(dest="action", required=True)

    drums_list = drums_sub.add_parser("list", help="Show drum balances")
    drums_list.set_defaults(func=command_drums_list)

    drums_recalc = drums_sub.add_parser("recalc", help="Recalculate every drum")
    drums_recalc.set_defaults(func=command_drums_recalc)

    wastage_parser = drums_sub.add_parser("set-wastage", help="Store a manual wastage override")
    wastage_parser.add_argument("drum_number")
    wastage_parser.add_argument("value", nargs="?", type=float)
    wastage_parser.add_argument("--clear", action="store_true", help="Remove the override")
    wastage_parser.set_defaults(func=command_drums_set_wastage)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO, console=True)
    try:
        return args.func(args)
    except SyncError as exc:
        _print_error(exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
