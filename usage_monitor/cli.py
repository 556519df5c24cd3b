from __future__ import annotations

import argparse
import asyncio
import logging.config
import signal

import anyio
from prometheus_client import start_http_server

from usage_monitor.core.config.settings import Settings, get_settings
from usage_monitor.core.metrics import get_metrics
from usage_monitor.core.usage.types import UsageStatus
from usage_monitor.main import format_state_line, log_snapshot, monitor_lifespan
from usage_monitor.modules.accounts.schemas import Account, short_account_id
from usage_monitor.modules.accounts.store import build_account_store
from usage_monitor.modules.usage.manager import UsageManager


def _build_log_config(settings: Settings) -> dict:
    # Only the `usage_monitor.*` namespace is configured; third-party loggers keep their defaults.
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
            },
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "usage_monitor": {
                "handlers": ["default"],
                "level": settings.log_level,
                "propagate": False,
            },
        },
    }


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Track usage limits and reset times for one or more accounts.")
    parser.add_argument("--metrics-port", type=int, default=None, help="Serve Prometheus metrics on this port.")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("run", help="Poll until interrupted (default).")
    subparsers.add_parser("once", help="Fetch usage for every account once and print it.")

    accounts = subparsers.add_parser("accounts", help="Manage tracked accounts.")
    accounts_sub = accounts.add_subparsers(dest="accounts_command", required=True)
    accounts_sub.add_parser("list", help="List configured accounts.")
    add = accounts_sub.add_parser("add", help="Add an account or update its session key.")
    add.add_argument("org_id", help="Organization id.")
    add.add_argument("session_key", help="Session key cookie value.")
    add.add_argument("--name", default=None, help="Friendly display name.")
    remove = accounts_sub.add_parser("remove", help="Remove an account.")
    remove.add_argument("org_id", help="Organization id.")

    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    settings = get_settings()
    logging.config.dictConfig(_build_log_config(settings))

    if args.command == "accounts":
        _run_accounts_command(args)
        return

    metrics_port = args.metrics_port or settings.metrics_port
    if metrics_port is not None:
        start_http_server(metrics_port, registry=get_metrics().registry)

    if args.command in (None, "run"):
        anyio.run(_run_forever)
        return

    if args.command == "once":
        anyio.run(_run_once)
        return

    raise SystemExit(f"Unknown command: {args.command}")


def _run_accounts_command(args: argparse.Namespace) -> None:
    store = build_account_store()
    if args.accounts_command == "list":
        accounts = store.list_accounts()
        if not accounts:
            print(f"no accounts in {store.path}")
            return
        for account in accounts:
            print(f"{account.id}\t{account.name or ''}")
        return

    if args.accounts_command == "add":
        store.add_or_update(Account(id=args.org_id, credential=args.session_key, name=args.name))
        print(f"saved account={short_account_id(args.org_id)}")
        return

    if args.accounts_command == "remove":
        if not store.remove(args.org_id):
            raise SystemExit(f"Unknown account: {args.org_id}")
        print(f"removed account={short_account_id(args.org_id)}")
        return

    raise SystemExit(f"Unknown accounts command: {args.accounts_command}")


async def _run_forever() -> None:
    store = build_account_store()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers; Ctrl+C still raises.
            pass

    async with monitor_lifespan(
        account_store=store,
        on_state_change=lambda manager: log_snapshot(manager, store),
    ):
        await stop.wait()


async def _run_once() -> None:
    store = build_account_store()
    settings = get_settings()
    done = asyncio.Event()

    def _on_state_change(manager: UsageManager) -> None:
        if all(state.status is not UsageStatus.LOADING for state in manager.snapshot()):
            done.set()

    async with monitor_lifespan(account_store=store, on_state_change=_on_state_change) as manager:
        if not store.list_accounts():
            print(f"no accounts in {store.path}")
            return
        timeout = settings.usage_fetch_total_timeout_seconds + settings.debounce_timeout_seconds
        try:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            print("timed out waiting for usage")
        for state in manager.snapshot():
            print(format_state_line(state, store.display_name(state.account_id)))


if __name__ == "__main__":
    main()
