"""CLI commands for PeeLog using Typer."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from peelog import __version__
from peelog.core.config import get_config
from peelog.core.errors import AuthError, MigrationError, NotFoundError, PeeLogError

T = TypeVar("T")

app = typer.Typer(
    name="peelog",
    help="Offline-first hydration log with cloud sync and statistics.",
    add_completion=False,
)

console = Console()

_SOURCE_STYLE = {
    "remote": "[green]verified[/green]",
    "cache": "[yellow]cached[/yellow]",
    "local": "[red]local only, unverified[/red]",
}

_QUALITY_COLORS = {
    "clear": "bright_white",
    "paleYellow": "yellow",
    "yellow": "gold1",
    "darkYellow": "dark_orange",
    "amber": "orange_red1",
}


def setup_logging(log_level: str, log_file: Path | None = None) -> None:
    """Configure logging for the application."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )

    # Reduce noise from external libraries
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", "-l", help="Log level (DEBUG, INFO, WARNING, ERROR)"),
) -> None:
    """PeeLog command line."""
    config = get_config()
    setup_logging(log_level, config.log_dir / "peelog.log")


def _run(action: Callable[[Any], Awaitable[T]], wait: bool = True) -> T:
    """Start the app, run one action, let background sync settle, stop."""
    from peelog.core.app import PeeLogApp

    async def runner() -> T:
        peelog = PeeLogApp(get_config())
        await peelog.start()
        try:
            result = await action(peelog)
            if wait:
                await peelog.wait_idle()
            return result
        finally:
            await peelog.stop()

    try:
        return asyncio.run(runner())
    except AuthError as e:
        console.print(f"[red]{e.user_message}[/red]")
        raise typer.Exit(1)
    except MigrationError as e:
        hint = " Run [bold]peelog migrate[/bold] again to resume." if e.retryable else ""
        console.print(f"[red]Migration failed: {e.message}[/red]{hint}")
        raise typer.Exit(1)
    except PeeLogError as e:
        console.print(f"[red]{e.message}[/red]")
        console.print(f"[dim]{e.recovery_suggestion}[/dim]")
        raise typer.Exit(1)


def _parse_range(value: str):
    from peelog.analytics.ranges import AnalyticsRange

    try:
        return AnalyticsRange.parse(value)
    except PeeLogError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)


def _source_label(source) -> str:
    return _SOURCE_STYLE.get(source.value, source.value)


def _local_time(value: datetime) -> str:
    return value.astimezone(get_config().tz).strftime("%Y-%m-%d %H:%M")


@app.command()
def version() -> None:
    """Show version information."""
    console.print(f"PeeLog v{__version__}")


@app.command()
def log(
    quality: str = typer.Argument(..., help="clear, paleYellow, yellow, darkYellow or amber"),
    notes: str = typer.Option(None, "--notes", "-n", help="Free-text note"),
    at: datetime = typer.Option(None, "--at", help="When it happened (defaults to now)"),
    latitude: float = typer.Option(None, "--lat", help="Latitude"),
    longitude: float = typer.Option(None, "--lon", help="Longitude"),
    place: str = typer.Option(None, "--place", help="Place name"),
) -> None:
    """Log a new event."""
    from peelog.core.schemas import Quality

    async def action(peelog):
        timestamp = at
        if timestamp is not None and timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=get_config().tz)
        return await peelog.log_event(
            Quality.parse(quality),
            timestamp=timestamp,
            notes=notes,
            latitude=latitude,
            longitude=longitude,
            location_name=place,
        )

    event = _run(action)
    console.print(
        f"[green]Logged[/green] {event.quality.label} ({event.quality.description}) "
        f"at {_local_time(event.timestamp)} [dim]{event.id}[/dim]"
    )


@app.command()
def history(
    range_: str = typer.Option("7d", "--range", "-r", help="today, yesterday, 3d, 7d, 30d, 90d, all or START..END"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of events to show"),
    with_location: bool = typer.Option(False, "--with-location", help="Only events that carry coordinates"),
) -> None:
    """Show recent events."""
    from peelog.core.schemas import utcnow

    rng = _parse_range(range_)

    async def action(peelog):
        resolved = rng.resolve(utcnow(), peelog.config.tz)
        if with_location:
            located = await peelog.events.list_with_location(peelog.session.active_user_id)
            return [e for e in located if resolved.contains(e.timestamp)][:limit]
        return await peelog.events.list_events(
            peelog.session.active_user_id, resolved.start, resolved.end, limit=limit
        )

    events = _run(action, wait=False)
    if not events:
        console.print(f"[yellow]No events for {rng.label}[/yellow]")
        return

    table = Table(title=f"Events: {rng.label}", show_header=True, header_style="bold cyan")
    table.add_column("When")
    table.add_column("Quality")
    table.add_column("Notes")
    table.add_column("Location")
    table.add_column("Sync", style="dim")
    table.add_column("ID", style="dim")
    for event in events:
        color = _QUALITY_COLORS.get(event.quality.value, "white")
        table.add_row(
            _local_time(event.timestamp),
            f"[{color}]{event.quality.label}[/{color}]",
            event.notes or "",
            event.location_name or "",
            event.sync_state.value,
            event.id[:8],
        )
    console.print(table)


@app.command()
def delete(event_id: str = typer.Argument(..., help="Event id (as shown by history, full or prefix)")) -> None:
    """Delete an event."""

    async def action(peelog):
        target = event_id
        if len(target) < 32:
            matches = [
                e.id for e in await peelog.events.list_events(peelog.session.active_user_id) if e.id.startswith(target)
            ]
            if len(matches) != 1:
                raise NotFoundError(f"{len(matches)} events match {target!r}")
            target = matches[0]
        return await peelog.delete_event(target)

    event = _run(action)
    console.print(f"[green]Deleted[/green] {event.quality.label} event from {_local_time(event.timestamp)}")


@app.command()
def stats(
    range_: str = typer.Option("7d", "--range", "-r", help="today, yesterday, 3d, 7d, 30d, 90d, all or START..END"),
) -> None:
    """Show statistics with their provenance."""
    rng = _parse_range(range_)

    async def action(peelog):
        agg = peelog.aggregator
        return (
            await agg.fetch_overview(rng),
            await agg.fetch_quality_distribution(rng),
            await agg.fetch_hourly(rng),
            await agg.fetch_weekly(rng),
            await agg.fetch_insights(rng),
        )

    overview, distribution, hourly, weekly, insights = _run(action, wait=False)

    o = overview.data
    console.print(
        Panel(
            f"Total: [bold]{o.total_events}[/bold] | This week: {o.this_week_events} | "
            f"Avg/active day: {o.average_daily:.2f} | Active days: {o.active_days}\n"
            f"Health score: [bold]{o.health_score:.2f}[/bold] ({o.display_label})\n"
            f"[dim]Source: {_source_label(overview.source)}[/dim]",
            title=f"Overview: {rng.label}",
            border_style="blue",
        )
    )

    if distribution.data:
        table = Table(title="Quality distribution", show_header=True, header_style="bold cyan")
        table.add_column("Quality")
        table.add_column("Count", justify="right")
        for item in distribution.data:
            table.add_row(item.quality.label, str(item.count))
        console.print(table)
        console.print(f"[dim]Source: {_source_label(distribution.source)}[/dim]")

    busiest = max(hourly.data, key=lambda b: b.count)
    if busiest.count:
        console.print(f"Busiest hour: [bold]{busiest.hour:02d}:00[/bold] ({busiest.count} events)")

    week = Table(title="Last 7 days", show_header=True, header_style="bold cyan")
    week.add_column("Day")
    week.add_column("Count", justify="right")
    week.add_column("Avg quality", justify="right")
    week.add_column("Rating")
    for day in weekly.data:
        week.add_row(day.day_name, str(day.count), f"{day.average_quality:.1f}", day.severity.value)
    console.print(week)
    console.print(f"[dim]Source: {_source_label(weekly.source)}[/dim]")

    styles = {"positive": "green", "info": "blue", "warning": "yellow"}
    for insight in insights.data:
        style = styles.get(insight.type.value, "white")
        console.print(f"[{style}]{insight.title}[/{style}]: {insight.message}")
        if insight.recommendation:
            console.print(f"  [dim]{insight.recommendation}[/dim]")


@app.command()
def sync(full: bool = typer.Option(False, "--full", help="Re-fetch the entire remote event set")) -> None:
    """Synchronize with the cloud now."""
    from peelog.sync.coordinator import SyncReason

    async def action(peelog):
        if full:
            return await peelog.sync.initial_full_sync()
        return await peelog.sync.sync_if_needed(SyncReason.MANUAL, force=True)

    result = _run(action)
    if result.skipped:
        console.print(f"[yellow]Sync skipped: {result.skipped}[/yellow]")
    elif result.discarded:
        console.print("[yellow]Sync result discarded: the account changed[/yellow]")
    elif result.error:
        console.print(f"[red]Sync failed: {result.error.user_message}[/red]")
        raise typer.Exit(1)
    else:
        console.print(
            f"[green]{'Full' if result.full else 'Incremental'} sync complete[/green]: "
            f"{result.merged.changed} merged, {result.merged.preserved} local kept, "
            f"{result.uploaded} uploaded, {result.deleted} deletions pushed"
        )


@app.command()
def export(output: Path = typer.Option(None, "--output", "-o", help="CSV file to write")) -> None:
    """Export your events to CSV."""
    from peelog.storage.export import default_export_name, export_events_csv

    path = output or Path.cwd() / default_export_name()

    async def action(peelog):
        return await export_events_csv(peelog.events, peelog.session.active_user_id, path, peelog.config.tz)

    count = _run(action, wait=False)
    console.print(f"[green]Exported {count} events to {path}[/green]")


@app.command()
def status() -> None:
    """Show account, connectivity and sync status."""

    async def action(peelog):
        user = peelog.session.user
        pending = await peelog.events.pending_uploads(user.id) if user else []
        deletes = await peelog.events.pending_deletes(user.id) if user else []
        cursor = await peelog.cursors.get(user.id) if user else None
        size_mb = await peelog.db.get_size_mb()
        return peelog.auth.current, peelog.connectivity.is_online, len(pending), len(deletes), cursor, size_mb

    state, online, pending, deletes, cursor, size_mb = _run(action, wait=False)
    config = get_config()

    table = Table(title="PeeLog Status", show_header=True, header_style="bold cyan")
    table.add_column("Setting")
    table.add_column("Value")

    user = state.user
    table.add_row("[bold]Account[/bold]", "")
    table.add_row("  State", state.status.value)
    if user:
        table.add_row("  User", user.display_name or user.email or user.id)
        table.add_row("  Provider", user.auth_provider.value)
        table.add_row("  Cloud sync", "on" if user.preferences.sync_enabled and not user.is_guest else "off")

    table.add_row("[bold]Sync[/bold]", "")
    table.add_row("  Connectivity", "[green]online[/green]" if online else "[red]offline[/red]")
    last = cursor.last_success_at if cursor else None
    table.add_row("  Last synced", _local_time(last) if last else "[yellow]never[/yellow]")
    table.add_row("  Pending uploads", str(pending))
    table.add_row("  Pending deletions", str(deletes))

    table.add_row("[bold]Paths[/bold]", "")
    table.add_row("  Database", str(config.db_path))
    table.add_row("  Database size", f"{size_mb:.2f} MB")
    table.add_row("  Config", str(config.config_file))
    console.print(table)


@app.command()
def login(
    email: str = typer.Option(..., "--email", "-e", prompt=True),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True),
) -> None:
    """Sign in with email and password."""

    async def action(peelog):
        user = await peelog.auth.sign_in(email, password)
        return user, peelog.auth.pending_migration

    user, offer = _run(action)
    console.print(f"[green]Signed in as {user.display_name or user.email}[/green]")
    if offer:
        console.print(
            f"[yellow]{offer.event_count} events were logged as a guest.[/yellow] "
            "Run [bold]peelog migrate[/bold] to move them to this account or [bold]peelog migrate --skip[/bold]."
        )


@app.command()
def register(
    email: str = typer.Option(..., "--email", "-e", prompt=True),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True, confirmation_prompt=True),
    name: str = typer.Option(None, "--name", help="Display name"),
) -> None:
    """Create an account."""

    async def action(peelog):
        user = await peelog.auth.register(email, password, name)
        return user, peelog.auth.pending_migration

    user, offer = _run(action)
    console.print(f"[green]Welcome, {user.display_name or user.email}![/green]")
    if offer:
        console.print(f"[yellow]{offer.event_count} guest events can be migrated with [bold]peelog migrate[/bold].[/yellow]")


@app.command()
def guest() -> None:
    """Continue without an account (events stay on this device)."""

    async def action(peelog):
        return await peelog.auth.continue_as_guest()

    user = _run(action)
    console.print(f"[green]Using guest profile[/green] [dim]{user.id}[/dim]")


@app.command()
def logout() -> None:
    """Sign out (pending changes are pushed first when possible)."""

    async def action(peelog):
        await peelog.auth.sign_out()

    _run(action)
    console.print("[green]Signed out[/green]")


@app.command(name="delete-account")
def delete_account(
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete the current account and its events on this device."""
    if not yes:
        typer.confirm("Delete this account and all of its events?", abort=True)

    async def action(peelog):
        await peelog.auth.delete_account()

    _run(action)
    console.print("[green]Account deleted[/green]")


@app.command()
def migrate(skip: bool = typer.Option(False, "--skip", help="Leave guest events on this device only")) -> None:
    """Move events logged as a guest into the signed-in account."""

    async def action(peelog):
        if skip:
            return await peelog.skip_guest_migration()
        return await peelog.migrate_guest_data()

    report = _run(action)
    if skip:
        console.print(f"[yellow]Migration skipped; {report.remaining} events stay local to the guest profile[/yellow]")
    else:
        console.print(
            f"[green]Migration complete[/green]: {report.reassigned} reassigned, {report.uploaded} uploaded"
        )


@app.command()
def insight(kind: str = typer.Argument("daily", help="daily, weekly or custom")) -> None:
    """Show the latest AI insight."""
    if kind not in ("daily", "weekly", "custom"):
        console.print("[red]Kind must be daily, weekly or custom[/red]")
        raise typer.Exit(1)

    async def action(peelog):
        fetchers = {
            "daily": peelog.ai.fetch_daily_insight,
            "weekly": peelog.ai.fetch_weekly_insight,
            "custom": peelog.ai.fetch_custom_insight,
        }
        return await fetchers[kind](), await peelog.ai.remaining_today()

    result, remaining = _run(action, wait=False)
    if result is None:
        console.print(f"[yellow]No {kind} insight yet[/yellow]")
    else:
        title = f"{kind.title()} insight ({_local_time(result.generated_at)})"
        body = f"[bold]Q:[/bold] {result.question}\n\n{result.content}" if result.question else result.content
        console.print(Panel(body, title=title, border_style="magenta"))
    console.print(f"[dim]Questions left today: {remaining}[/dim]")


@app.command()
def ask(question: str = typer.Argument(..., help="Your question about your hydration")) -> None:
    """Ask the AI one question (limited per day)."""

    async def action(peelog):
        return await peelog.ai.ask(question)

    response = _run(action, wait=False)
    console.print(Panel(response.insight, title="AI answer", border_style="magenta"))


if __name__ == "__main__":
    app()
