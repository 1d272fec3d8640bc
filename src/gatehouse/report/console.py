"""
Console audit report for Gatehouse.

Renders a time range of the audit log in the terminal with Rich: one row
per decision with an outcome icon, followed by summary counts.

Design Principles:
    - Denials stand out: reason and denial kind are always shown
    - Status at a glance: icons and colors per outcome
    - Progressive detail: trace ids and attribution only with --verbose
"""

from datetime import datetime
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from gatehouse.store import AuditDB, AuditRecord

ICON_ALLOWED = "[green]✓[/green]"
ICON_DENIED = "[yellow]⊘[/yellow]"
ICON_REJECTED = "[red]✗[/red]"

# Denials that did not come from policy evaluation
SYSTEM_DENIALS = {"audit", "unavailable", "upstream"}


def generate_console_report(
    db_path: str | Path = "gatehouse.db",
    start: datetime | None = None,
    end: datetime | None = None,
    identity_id: str | None = None,
    limit: int = 100,
    console: Console | None = None,
    verbose: bool = False,
) -> None:
    """
    Print decisions from the audit log.

    Args:
        db_path: Path to the SQLite audit log
        start: Inclusive lower time bound
        end: Exclusive upper time bound
        identity_id: Only this identity's decisions
        limit: Maximum rows to show
        console: Rich Console instance (creates one if not provided)
        verbose: Show trace ids and policy attribution
    """
    if console is None:
        console = Console()

    with AuditDB(db_path) as db:
        records = db.query(start=start, end=end, identity_id=identity_id, limit=limit)
        summary = db.summary(start=start, end=end)

    _print_header(console, start, end, identity_id)
    console.print()

    if not records:
        console.print("[dim]No decisions recorded in this range.[/dim]")
        return

    _print_decisions(console, records, verbose)
    console.print()
    _print_summary(console, summary)


def _print_header(
    console: Console,
    start: datetime | None,
    end: datetime | None,
    identity_id: str | None,
) -> None:
    header = Text()
    header.append(" Audit log ", style="bold")
    header.append("│ ", style="dim")
    header.append(_fmt(start) if start else "beginning", style="cyan")
    header.append(" → ", style="dim")
    header.append(_fmt(end) if end else "now", style="cyan")
    if identity_id:
        header.append(" │ ", style="dim")
        header.append(identity_id, style="bold magenta")
    console.print(Panel(header, expand=False))


def _print_decisions(console: Console, records: list[AuditRecord], verbose: bool) -> None:
    table = Table(
        show_header=True,
        header_style="bold",
        show_lines=verbose,
        expand=True,
    )
    table.add_column("Time", style="dim", width=19)
    table.add_column("", width=2, justify="center")
    table.add_column("Identity", style="cyan", width=16)
    table.add_column("Action", width=24)
    table.add_column("Details", overflow="fold")

    for record in records:
        table.add_row(
            _fmt(record.timestamp),
            _icon(record),
            record["identity_id"],
            record["action"],
            _format_details(record, verbose),
        )

    console.print(table)


def _icon(record: AuditRecord) -> str:
    if record.allowed:
        return ICON_ALLOWED
    if record["denial"] in SYSTEM_DENIALS:
        return ICON_REJECTED
    return ICON_DENIED


def _format_details(record: AuditRecord, verbose: bool) -> str:
    parts = []
    if not record.allowed:
        parts.append(f"[yellow]{record['reason']}[/yellow] [dim]({record['denial']})[/dim]")
    if verbose:
        if record["policy_name"]:
            rule = record["rule_index"]
            where = f"{record['policy_name']}" + (f"#{rule}" if rule is not None else "")
            parts.append(f"[dim]policy:[/dim] {where}")
        parts.append(f"[dim]trace:[/dim] {record['trace_id']}")
    return "\n".join(parts)


def _print_summary(console: Console, summary: dict[str, Any]) -> None:
    console.print("[bold]Summary[/bold]")
    console.print()

    stats = Table(show_header=False, box=None, padding=(0, 2))
    stats.add_column("Metric", style="dim")
    stats.add_column("Value")
    stats.add_row("Decisions", str(summary["total"]))
    stats.add_row(
        "Allowed",
        f"[green]{summary['allowed']}[/green]" if summary["allowed"] else "0",
    )
    stats.add_row(
        "Denied",
        f"[yellow]{summary['denied']}[/yellow]" if summary["denied"] else "0",
    )
    for kind, count in summary["denied_by_kind"].items():
        stats.add_row(f"  {kind}", str(count))
    console.print(stats)

    if summary["top_denied_identities"]:
        console.print()
        console.print("  [dim]Most denied identities:[/dim]")
        for identity_id, count in summary["top_denied_identities"]:
            console.print(f"    • {identity_id} ({count})")


def _fmt(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S")
