import argparse
import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv
from rich.console import Console
from rich.markup import escape as rich_escape
from rich.table import Table
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from quota_app.db import init_db_runtime
from quota_app.reconciler import AccountNotFoundError, UsageReconciler
from quota_app.refresh_service import RefreshService
from quota_app.security_config import validate_secret_settings
from quota_app.settings import get_http_timeout_seconds, get_refresh_concurrency
from quota_app.usage_store import get_latest_usage, list_accounts
from quota_app.vault import get_vault
from quota_library import ProviderSet, create_http_client
from quota_library.error_handler import ProviderError

console = Console()


def _pct_style(percentage: float) -> str:
    if percentage >= 90:
        return "red"
    if percentage >= 70:
        return "yellow"
    return "green"


async def build_status_table(session_maker: async_sessionmaker[AsyncSession]) -> Table:
    table = Table(title="Kuota accounts")
    table.add_column("ID", justify="right")
    table.add_column("Account")
    table.add_column("Type")
    table.add_column("Plan")
    table.add_column("Usage", justify="right")
    table.add_column("Source")
    table.add_column("Last error")

    async with session_maker() as session:
        for account in await list_accounts(session):
            latest = await get_latest_usage(session, account.id)
            plan = (
                account.copilot_plan
                if account.account_type == "copilot"
                else account.claude_plan or "-"
            )
            if latest is None:
                usage_cell = "-"
            else:
                usage_cell = f"[{_pct_style(latest.percentage)}]{latest.percentage:.1f}%[/]"
            name = rich_escape(account.username)
            if account.is_paused:
                name = f"{name} [dim](paused)[/dim]"
            table.add_row(
                str(account.id),
                name,
                account.account_type,
                plan,
                usage_cell,
                rich_escape(latest.source or "-") if latest else "-",
                rich_escape(account.last_error or ""),
            )
    return table


async def _run_status(root_dir: Path) -> int:
    engine, session_maker = await init_db_runtime(root_dir)
    try:
        console.print(await build_status_table(session_maker))
    finally:
        await engine.dispose()
    return 0


async def _run_refresh(root_dir: Path, account_id: int | None) -> int:
    validate_secret_settings()
    engine, session_maker = await init_db_runtime(root_dir)
    http_client = create_http_client(get_http_timeout_seconds())
    try:
        reconciler = UsageReconciler(
            session_maker, get_vault(root_dir), ProviderSet.from_client(http_client)
        )
        service = RefreshService(
            reconciler, session_maker, default_concurrency=get_refresh_concurrency()
        )

        if account_id is not None:
            try:
                outcome = await service.refresh_account(account_id)
            except AccountNotFoundError:
                console.print(f"[red]Account {account_id} not found[/red]")
                return 1
            except ProviderError as e:
                console.print(f"[red]Refresh failed:[/red] {rich_escape(str(e))}")
                return 1
            if outcome.skipped:
                console.print(f"[yellow]Skipped:[/yellow] {outcome.error}")
                return 1
            console.print(
                f"[green]Refreshed account {account_id}[/green] "
                f"({rich_escape(outcome.source or '')}, {outcome.percentage or 0:.1f}%)"
            )
            return 0

        with console.status("Refreshing all accounts..."):
            report = await service.refresh_all(trigger="cli")
        console.print(
            f"[bold]{report.succeeded}[/bold] ok, "
            f"[bold red]{report.failed}[/bold red] failed, "
            f"[bold]{report.skipped}[/bold] skipped"
        )
        return 0 if report.failed == 0 else 1
    finally:
        await http_client.aclose()
        await engine.dispose()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kuota", description="Subscription usage tracker")
    parser.add_argument("--root", type=Path, default=Path.cwd(), help="Directory holding data/")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("status", help="Show every account with its latest usage")
    refresh = sub.add_parser("refresh", help="Refresh one account or all active accounts")
    refresh.add_argument("--id", type=int, dest="account_id", help="Account id to refresh")
    return parser


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    logging.basicConfig(level=logging.WARNING)
    args = build_parser().parse_args(argv)

    if args.command == "status":
        return asyncio.run(_run_status(args.root))
    return asyncio.run(_run_refresh(args.root, args.account_id))


if __name__ == "__main__":
    raise SystemExit(main())
