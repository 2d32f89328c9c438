"""CLI commands for ClinicOS."""

import asyncio
import json
from datetime import date
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from clinic_os.config import get_settings

app = typer.Typer(
    name="clinic-os",
    help="Recurring appointment scheduling for multi-discipline clinics",
    add_completion=False,
)
console = Console()


def _parse_date(value: str, name: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        console.print(f"[red]Invalid {name}: {value}. Use YYYY-MM-DD[/red]")
        raise typer.Exit(1)


@app.command()
def preview(
    anchor: str = typer.Argument(..., help="Anchor date (YYYY-MM-DD)"),
    pattern: str = typer.Option("weekly", "--pattern", "-p", help="weekly, biweekly or monthly"),
    count: Optional[int] = typer.Option(None, "--count", "-c", help="End after N occurrences"),
    until: Optional[str] = typer.Option(None, "--until", "-u", help="End on this date (YYYY-MM-DD)"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", help="Max occurrences to show"),
    output_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Preview the occurrence dates of a recurrence rule."""
    from clinic_os.scheduling import (
        InvalidRuleError,
        OccurrenceGenerator,
        RecurrencePattern,
        RecurrenceRule,
    )

    settings = get_settings()
    anchor_date = _parse_date(anchor, "anchor date")

    try:
        pattern_enum = RecurrencePattern(pattern)
    except ValueError:
        console.print(f"[red]Invalid pattern: {pattern}. Use weekly, biweekly or monthly[/red]")
        raise typer.Exit(1)

    if count is not None and until is not None:
        console.print("[red]Use either --count or --until, not both[/red]")
        raise typer.Exit(1)

    if count is not None:
        rule = RecurrenceRule.after_count(pattern_enum, count)
    elif until is not None:
        rule = RecurrenceRule.until(pattern_enum, _parse_date(until, "end date"))
    else:
        rule = RecurrenceRule.indefinite(pattern_enum)

    generator = OccurrenceGenerator(max_occurrences=settings.max_occurrences)
    try:
        dates = generator.take(anchor_date, rule, limit or settings.preview_limit)
        total = generator.remaining_count(anchor_date, rule, anchor_date)
    except InvalidRuleError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    if output_json:
        console.print(json.dumps({
            "rule": rule.model_dump(mode="json"),
            "dates": [d.isoformat() for d in dates],
            "total": total,
        }, indent=2))
        return

    table = Table(title=f"Occurrences ({pattern_enum.value})")
    table.add_column("#", justify="right")
    table.add_column("Date")
    table.add_column("Weekday")
    for index, d in enumerate(dates):
        table.add_row(str(index), d.isoformat(), d.strftime("%A"))
    console.print(table)

    if total is None:
        console.print(f"[dim]Indefinite series: showing first {len(dates)}[/dim]")
    elif total > len(dates):
        console.print(f"[dim]Showing {len(dates)} of {total} occurrences[/dim]")


@app.command("validate-retroactive")
def validate_retroactive(
    session_date: str = typer.Argument(..., help="Session date (YYYY-MM-DD)"),
    today: Optional[str] = typer.Option(None, "--today", "-t", help="Reference date (default: system date)"),
):
    """Check whether a session date can be recorded retroactively."""
    from clinic_os.scheduling.validation import (
        RetroactiveDateStatus,
        retroactive_message,
        validate_retroactive_date,
    )

    window = get_settings().retroactive_window_days
    day = _parse_date(session_date, "session date")
    reference = _parse_date(today, "today") if today else date.today()

    status = validate_retroactive_date(day, reference, window_days=window)
    color = "green" if status == RetroactiveDateStatus.VALID else "red"
    console.print(f"[{color}]{status.value}[/{color}]: {retroactive_message(status, window)}")
    if status != RetroactiveDateStatus.VALID:
        raise typer.Exit(1)


@app.command("init-db")
def init_db():
    """Create the booking store tables."""
    from clinic_os.core.database import close_db, init_db as _init_db

    async def _run():
        try:
            await _init_db()
        finally:
            await close_db()

    asyncio.run(_run())
    console.print("[green]Booking store tables created[/green]")


@app.command()
def serve(
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Host to bind"),
    port: int = typer.Option(8080, "--port", "-p", help="Port to bind"),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload"),
):
    """Start the REST API server."""
    import uvicorn

    console.print(f"Starting ClinicOS API server on {host}:{port}")
    uvicorn.run(
        "clinic_os.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
    )


@app.command()
def version():
    """Show version information."""
    from clinic_os import __version__

    console.print(f"ClinicOS v{__version__}")
