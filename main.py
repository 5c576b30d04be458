"""
Nano Sentry - Main Entry Point

Wallet management and a single operator-started faucet claim.

Usage:
    python main.py wallet create bank
    python main.py wallet list
    python main.py wallet balance bank
    python main.py wallet send bank nano_1abc... 0.01
    python main.py config set-bank bank
    python main.py claim --visible
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import argparse
import asyncio
import logging
import sys

from rich import box
from rich.console import Console
from rich.table import Table

from core.config import SentryConfig, SentrySettings
from core.events import LOG, Event, EventBus
from core.exceptions import SentryError
from core.logging_setup import setup_logging
from core.wallet_store import WalletStore
from faucets.claim_session import ClaimSession
from nano.accounts import AccountEngine
from nano.rpc import LedgerRpcClient
from nano.units import from_raw, to_raw
from nano.work import WorkProvider

logger = logging.getLogger(__name__)
console = Console()

_STYLES = {"success": "green", "warning": "yellow", "error": "red", "action": "cyan"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Nano Sentry - wallet and faucet claim tool")
    sub = parser.add_subparsers(dest="command", required=True)

    wallet = sub.add_parser("wallet", help="Manage encrypted wallets")
    wsub = wallet.add_subparsers(dest="action", required=True)
    wsub.add_parser("list", help="List wallets")
    for name in ("create", "delete", "derive", "balance", "receive"):
        p = wsub.add_parser(name)
        p.add_argument("name")
    p = wsub.add_parser("import")
    p.add_argument("name")
    p.add_argument("seed", help="64 hex character seed")
    p = wsub.add_parser("send")
    p.add_argument("name")
    p.add_argument("to_address")
    p.add_argument("amount", help="Amount in NANO")
    p = wsub.add_parser("backup")
    p.add_argument("name")
    p.add_argument("confirmation", help="The wallet store passphrase")

    config = sub.add_parser("config", help="Operator configuration")
    csub = config.add_subparsers(dest="action", required=True)
    p = csub.add_parser("set-bank")
    p.add_argument("name")
    p = csub.add_parser("set-worker")
    p.add_argument("url", nargs="?", default=None)
    p = csub.add_parser("set-proxy")
    p.add_argument("url", nargs="?", default=None)
    csub.add_parser("show")

    claim = sub.add_parser("claim", help="Run one faucet claim")
    claim.add_argument("--visible", action="store_true", help="Show browser")
    return parser


def print_event(event: Event) -> None:
    style = _STYLES.get(event.level, "white")
    console.print(f"[{style}][{event.source}] {event.message}[/{style}]")


async def run_wallet(args, settings: SentrySettings, config: SentryConfig,
                     store: WalletStore, engine: AccountEngine) -> None:
    if args.action == "list":
        table = Table(title="Wallets", box=box.SIMPLE)
        table.add_column("Name")
        table.add_column("Address")
        table.add_column("Accounts", justify="right")
        table.add_column("Created")
        for info in store.list_wallets():
            marker = " (bank)" if info.name == config.bank_wallet_name else ""
            table.add_row(info.name + marker, info.address, str(info.account_count),
                          info.created_at.strftime("%Y-%m-%d %H:%M"))
        console.print(table)
    elif args.action == "create":
        wallet = store.create_wallet(args.name)
        console.print(f"Address: {wallet.accounts[0].address}")
        console.print("[yellow]Back up the seed with 'wallet backup' before funding it.[/yellow]")
    elif args.action == "import":
        wallet = store.import_wallet(args.name, args.seed)
        console.print(f"Address: {wallet.accounts[0].address}")
    elif args.action == "delete":
        store.delete_wallet(args.name)
    elif args.action == "derive":
        account = store.derive_account(args.name)
        console.print(f"#{account.index}: {account.address}")
    elif args.action == "backup":
        console.print(store.backup(args.name, args.confirmation))
    elif args.action == "balance":
        account = store.get_account(args.name)
        info = await engine.sync(account.address)
        console.print(f"{info['address']}\n  balance: {info['balance']} NANO\n"
                      f"  pending: {info['pending']} NANO ({len(info['pending_blocks'])} block(s))")
    elif args.action == "receive":
        summary = await engine.receive_all(store.get_account(args.name))
        console.print(f"Received {summary.count} block(s), {from_raw(summary.total_raw)} NANO")
    elif args.action == "send":
        block_hash = await engine.send(store.get_account(args.name), args.to_address, to_raw(args.amount))
        console.print(f"Block: {block_hash}")


def run_config(args, config: SentryConfig, store: WalletStore) -> None:
    if args.action == "set-bank":
        store.get_wallet(args.name)
        config.bank_wallet_name = args.name
    elif args.action == "set-worker":
        config.work_worker_url = args.url
    elif args.action == "set-proxy":
        config.connection_type = "proxy" if args.url else "direct"
        config.proxy_url = args.url
    if args.action != "show":
        config.save()
    console.print_json(config.model_dump_json())


async def main() -> int:
    args = build_parser().parse_args()
    settings = SentrySettings()
    setup_logging(settings.log_level)

    events = EventBus()
    events.subscribe(LOG, print_event)

    config = SentryConfig.load()
    rpc = LedgerRpcClient(settings.rpc_url, settings.rpc_fallback_urls, settings.rpc_timeout_seconds)
    work = WorkProvider(
        settings.pow_public_url,
        worker_url=config.work_worker_url,
        worker_timeout=settings.pow_worker_timeout_seconds,
        public_timeout=settings.pow_public_timeout_seconds,
    )
    try:
        store = WalletStore(settings.wallets_file, settings.nano_wallet_key, events)
        engine = AccountEngine(rpc, work, events, difficulty=settings.pow_difficulty)

        if args.command == "wallet":
            await run_wallet(args, settings, config, store, engine)
        elif args.command == "config":
            run_config(args, config, store)
        elif args.command == "claim":
            if args.visible:
                settings.headless = False
            session = ClaimSession(settings, config, store, engine, events)
            try:
                net = await session.run_once()
            finally:
                config.save()
            console.print(session.get_status())
            logger.info(f"Claim finished, net {net} raw")
        return 0
    except SentryError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        return 1
    finally:
        await rpc.close()
        await work.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
