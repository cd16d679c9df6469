"""CLI command implementations. Every command works on the shared MailSession."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import click
from rich import box
from rich.console import Console
from rich.table import Table
from rich.tree import Tree

from mail_mcp.clients.base import MailError
from mail_mcp.clients.criteria import Criterion, SearchField, all_of
from mail_mcp.clients.session import MailSession
from mail_mcp.processing.dates import DateRange
from mail_mcp.processing.replies import find_unreplied
from mail_mcp.processing.search import SearchResult, federated_search
from mail_mcp.server.tools import mailbox_tree

logger = logging.getLogger(__name__)
console = Console(width=200)

T = TypeVar("T")


def _run(session: MailSession, work: Callable[[MailSession], Awaitable[T]]) -> T:
    """Run one async unit of work, always closing the connections afterwards."""

    async def _wrapped() -> T:
        try:
            return await work(session)
        finally:
            await session.disconnect_all()

    try:
        return asyncio.run(_wrapped())
    except (MailError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc


def _date_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    fn = click.option("--end", "end", default=None, help="End date (inclusive), e.g. 2025-01-31.")(fn)
    fn = click.option("--start", "start", default=None, help="Start date, e.g. 2025-01-01 or '3 days ago'.")(fn)
    return fn


def _print_warnings(result: SearchResult) -> None:
    for outcome in result.mailboxes_searched:
        if outcome.error:
            console.print(f"[red]{outcome.mailbox}: {outcome.error}[/red]")
    if result.warning:
        console.print(f"[yellow]{result.warning}[/yellow]")


# ── serve ────────────────────────────────────────────────────────────────────


@click.command()
@click.pass_obj
def serve(session: MailSession) -> None:
    """Run the MCP server on stdio."""
    from mail_mcp.server.main import configure_logging, serve as serve_stdio

    configure_logging()
    for line in session.settings.describe():
        logger.info("%s", line)
    asyncio.run(serve_stdio(session))


# ── search ───────────────────────────────────────────────────────────────────


@click.command()
@click.option("--sender", default=None, help="Match the From header.")
@click.option("--subject", default=None, help="Match the Subject header.")
@click.option("--recipient", default=None, help="Match the To header.")
@click.option("--unread", is_flag=True, help="Only unread messages.")
@_date_options
@click.option("--limit", default=20, show_default=True, help="Rows to display.")
@click.pass_obj
def search(
    session: MailSession,
    sender: str | None,
    subject: str | None,
    recipient: str | None,
    unread: bool,
    start: str | None,
    end: str | None,
    limit: int,
) -> None:
    """Search INBOX and the sent folder."""
    terms = []
    if unread:
        terms.append(Criterion(SearchField.UNSEEN))
    if sender:
        terms.append(Criterion(SearchField.FROM, sender))
    if subject:
        terms.append(Criterion(SearchField.SUBJECT, subject))
    if recipient:
        terms.append(Criterion(SearchField.TO, recipient))
    if not terms:
        raise click.UsageError("Give at least one of --sender, --subject, --recipient or --unread.")
    criterion = terms[0] if len(terms) == 1 else all_of(*terms)
    date_range = DateRange.from_inputs(start, end)

    async def work(s: MailSession) -> SearchResult:
        return await federated_search(await s.receiver(), criterion, date_range)

    result = _run(session, work)
    _print_warnings(result)

    if not result.messages:
        console.print(f"[yellow]{result.note}[/yellow]")
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim", width=3)
    table.add_column("Mailbox", max_width=18)
    table.add_column("Id", width=7)
    table.add_column("Subject", max_width=48)
    table.add_column("From", max_width=30)
    table.add_column("Date", width=16)

    for i, message in enumerate(result.messages[:limit], start=1):
        style = "bold" if not message.is_seen else ""
        table.add_row(
            str(i),
            message.mailbox,
            str(message.id),
            f"[{style}]{message.subject}[/{style}]" if style else message.subject,
            message.sender_display or message.sender,
            message.date.strftime("%Y-%m-%d %H:%M") if message.date else "",
        )

    console.print(f"\n{result.note}\n")
    console.print(table)
    if result.total_matches > limit:
        console.print(f"  [dim]{result.total_matches - limit} more not shown (use --limit).[/dim]")


# ── unreplied ────────────────────────────────────────────────────────────────


@click.command()
@click.argument("sender")
@_date_options
@click.pass_obj
def unreplied(session: MailSession, sender: str, start: str | None, end: str | None) -> None:
    """List messages from SENDER that have no detectable reply."""
    date_range = DateRange.from_inputs(start, end)

    async def work(s: MailSession):
        return await find_unreplied(await s.receiver(), sender, date_range)

    report = _run(session, work)
    _print_warnings(report.received)

    if not report.unreplied:
        console.print(
            f"[green]Every one of {report.total_received} message(s) from "
            f"{report.sender} has a reply.[/green]"
        )
        return

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Mailbox", max_width=18)
    table.add_column("Id", width=7)
    table.add_column("Subject", max_width=60)
    table.add_column("Date", width=16)
    for verdict in report.unreplied:
        table.add_row(
            verdict.mailbox,
            str(verdict.original_id),
            verdict.subject,
            verdict.date.strftime("%Y-%m-%d %H:%M") if verdict.date else "",
        )

    console.print(
        f"\n[bold]{len(report.unreplied)}[/bold] of {report.total_received} message(s) "
        f"from {report.sender} without a reply\n"
    )
    console.print(table)
    console.print("  [dim]Detection is subject-based and best-effort.[/dim]")


# ── mailboxes ────────────────────────────────────────────────────────────────


def _add_nodes(parent: Tree, nodes: dict[str, Any]) -> None:
    for name, node in nodes.items():
        label = name if "path" in node else f"[dim]{name}[/dim]"
        _add_nodes(parent.add(label), node["children"])


@click.command()
@click.pass_obj
def mailboxes(session: MailSession) -> None:
    """Show the account's mailbox tree."""

    async def work(s: MailSession):
        return await (await s.receiver()).list_mailboxes()

    entries = _run(session, work)
    root = Tree(f"[bold]{session.account_address}[/bold]")
    _add_nodes(root, mailbox_tree(entries))
    console.print(root)


# ── status ───────────────────────────────────────────────────────────────────


@click.command()
@click.pass_obj
def status(session: MailSession) -> None:
    """Connect to both servers and report the outcome."""

    async def work(s: MailSession) -> dict[str, Any]:
        return await s.connect_all()

    results = _run(session, work)

    table = Table(box=box.ROUNDED, show_header=True, header_style="bold cyan")
    table.add_column("Service", width=8)
    table.add_column("Server", max_width=50)
    table.add_column("State", width=10)
    table.add_column("Error", max_width=60)
    for label, outcome in results.items():
        if label == "summary":
            continue
        state = "[green]ok[/green]" if outcome["connected"] else "[red]failed[/red]"
        table.add_row(label, outcome["server"], state, outcome.get("error", ""))

    console.print(f"\nAccount [bold]{session.account_address}[/bold]\n")
    console.print(table)
