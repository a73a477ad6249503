"""
Command-line interface for termcal.
"""

import logging
import queue
from dataclasses import dataclass
from dataclasses import field
from datetime import UTC
from datetime import datetime
from datetime import timedelta
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from termcal.auth import SessionManager
from termcal.config import Settings
from termcal.config import load_settings
from termcal.credential_store import CredentialStore
from termcal.db import ReplicaStore
from termcal.db import query_status
from termcal.graph_client import GraphClient
from termcal.models import DEFAULT_CONFIG
from termcal.models import DEFAULT_LOG_FILE
from termcal.models import DEFAULT_REPLICA_DB
from termcal.models import MY_CALENDARS
from termcal.models import CalendarSyncError
from termcal.models import Event
from termcal.models import SyncOutcome
from termcal.models import SyncTrigger
from termcal.models import SyncWindow
from termcal.notifications import UpcomingEventNotifier
from termcal.sync import SyncOrchestrator
from termcal.sync.worker import LoginResult
from termcal.sync.worker import SyncWorker

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Offline-first Microsoft 365 calendar viewer: login, sync and read the local replica.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    db_path: Path = field(default_factory=lambda: DEFAULT_REPLICA_DB)
    verbose: bool = False
    debug: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    db: Annotated[
        Path,
        typer.Option("--db", help=f"Replica DB path (default: {DEFAULT_REPLICA_DB})"),
    ] = DEFAULT_REPLICA_DB,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help=f"Also write a debug log to {DEFAULT_LOG_FILE}"),
    ] = False,
) -> None:
    state.config_path = config
    state.db_path = db
    state.verbose = verbose
    state.debug = debug


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool, debug_log: bool) -> None:
    handlers: list[logging.Handler] = [
        RichHandler(
            level=logging.DEBUG if verbose else logging.INFO,
            rich_tracebacks=True,
            show_path=False,
            console=console,
        )
    ]
    if debug_log:
        DEFAULT_LOG_FILE.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(DEFAULT_LOG_FILE)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)
    logging.basicConfig(
        level=logging.DEBUG if verbose or debug_log else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=handlers,
        force=True,
    )


def _load() -> Settings:
    try:
        settings = load_settings(state.config_path)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    _setup_logging(state.verbose, state.debug or settings.debug)
    return settings


def _build_session(settings: Settings, interactive: bool = True) -> SessionManager:
    try:
        client_id = settings.require_client_id()
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None
    return SessionManager(
        client_id,
        CredentialStore(),
        redirect_port=settings.redirect_port,
        login_timeout=settings.login_timeout_seconds,
        interactive=interactive,
    )


def _format_when(event: Event) -> str:
    start = event.start.astimezone()
    if event.all_day_flag:
        return f"{start:%a %Y-%m-%d}  all day"
    end = event.end.astimezone()
    return f"{start:%a %Y-%m-%d %H:%M}–{end:%H:%M}"


def _format_age(moment: datetime | None) -> str:
    if moment is None:
        return "never"
    seconds = int((datetime.now(UTC) - moment).total_seconds())
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    if seconds < 86400:
        return f"{seconds // 3600}h ago"
    return f"{seconds // 86400}d ago"


def _print_outcome(outcome: SyncOutcome, store: ReplicaStore) -> None:
    names = {c.id: c.display_name for c in store.read_calendars()}
    results = Table(show_header=True, header_style="bold cyan")
    results.add_column("Calendar", style="bold")
    results.add_column("Added", justify="right")
    results.add_column("Updated", justify="right")
    results.add_column("Deleted", justify="right")
    results.add_column("Status")
    for cal_id, stats in outcome.stats.items():
        results.add_row(
            names.get(cal_id, cal_id),
            str(stats.inserted),
            str(stats.updated),
            str(stats.deleted),
            Text("✓", style="green"),
        )
    for cal_id, message in outcome.failures.items():
        results.add_row(names.get(cal_id, cal_id), "-", "-", "-", Text(message, style="bold red"))
    console.print(Panel(results, title="[bold]Sync results[/bold]", expand=False))


# ---------------------------------------------------------------------------
# Subcommands: session
# ---------------------------------------------------------------------------


@app.command()
def login() -> None:
    """Log in through the browser and store the refresh token in the system keyring."""
    settings = _load()
    session = _build_session(settings)
    try:
        session.interactive_login()
    except CalendarSyncError as e:
        console.print(f"[bold red]Login failed:[/] {e}")
        raise typer.Exit(1) from None
    finally:
        session.close()
    console.print("[green]Logged in.[/] Refresh token saved to the system keyring.")


@app.command()
def logout() -> None:
    """Forget the stored refresh token."""
    _load()
    try:
        CredentialStore().clear()
    except CalendarSyncError as e:
        console.print(f"[bold red]Logout failed:[/] {e}")
        raise typer.Exit(1) from None
    console.print("[green]Logged out.[/] Cached calendar data is kept for offline use.")


# ---------------------------------------------------------------------------
# Subcommands: sync
# ---------------------------------------------------------------------------


@app.command()
def sync(
    no_login: Annotated[
        bool,
        typer.Option("--no-login", help="Fail instead of opening a browser when logged out"),
    ] = False,
) -> None:
    """Run one synchronization cycle in the foreground."""
    from termcal.preflight import run_preflight_checks

    settings = _load()
    if not run_preflight_checks(settings, state.db_path, CredentialStore(), console):
        raise typer.Exit(1)

    session = _build_session(settings, interactive=not no_login)
    client = GraphClient(on_unauthorized=session.report_unauthorized)
    try:
        with ReplicaStore(state.db_path) as store:
            orchestrator = SyncOrchestrator(
                session,
                client,
                store,
                past_days=settings.window_past_days,
                future_days=settings.window_future_days,
            )
            outcome = orchestrator.run_cycle(SyncTrigger.MANUAL)
            _print_outcome(outcome, store)
    except CalendarSyncError as e:
        console.print(f"[bold red]Sync failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    finally:
        client.close()
        session.close()

    if outcome.error:
        console.print(f"[bold red]Sync failed:[/] {outcome.error}")
        console.print("[dim]Previously synced data is still available offline.[/dim]")
    if not outcome.ok:
        raise typer.Exit(1)


@app.command()
def watch() -> None:
    """Sync in the background every refresh interval and print upcoming-event reminders."""
    settings = _load()
    session = _build_session(settings)
    client = GraphClient(on_unauthorized=session.report_unauthorized)
    notifications: queue.Queue = queue.Queue()
    notifier = UpcomingEventNotifier(settings.notifications, settings.notify_minutes_before)

    try:
        writer = ReplicaStore(state.db_path)
        writer.connect()
        reader = ReplicaStore(state.db_path, readonly=True)
        reader.connect()
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None

    orchestrator = SyncOrchestrator(
        session,
        client,
        writer,
        past_days=settings.window_past_days,
        future_days=settings.window_future_days,
        notifications=notifications,
    )
    worker = SyncWorker(
        orchestrator, session, settings.refresh_interval_minutes * 60, notifications
    )
    console.print(
        f"Watching calendars (refresh every {settings.refresh_interval_minutes} min). "
        "Press [bold]Ctrl+C[/] to stop."
    )
    worker.start()
    try:
        while True:
            try:
                item = notifications.get(timeout=30)
            except queue.Empty:
                item = None
            if isinstance(item, SyncOutcome):
                totals = item.totals
                style = "green" if item.ok else "yellow"
                console.print(
                    f"[{style}]Synced[/] +{totals.inserted} ~{totals.updated} -{totals.deleted}"
                    + (f"  [bold red]{orchestrator.state.last_error}[/]" if not item.ok else "")
                )
            elif isinstance(item, LoginResult) and not item.ok:
                console.print(f"[bold red]Login failed:[/] {item.error}")

            now = datetime.now(UTC)
            upcoming = reader.read_events(
                None, SyncWindow(now, now + timedelta(minutes=settings.notify_minutes_before + 1))
            )
            for event in notifier.check(upcoming, now):
                console.print(
                    Panel(
                        f"[bold]{event.subject}[/]\n{_format_when(event)}"
                        + (f"\n{event.location}" if event.location else ""),
                        title="[bold yellow]Upcoming[/]",
                        expand=False,
                    )
                )
    except KeyboardInterrupt:
        console.print("[yellow]Stopping...[/]")
    finally:
        worker.stop(timeout=5)
        reader.close()
        writer.close()
        client.close()
        session.close()


# ---------------------------------------------------------------------------
# Subcommands: offline reads
# ---------------------------------------------------------------------------


@app.command()
def calendars() -> None:
    """List calendars from the local replica (works offline)."""
    _load()
    with ReplicaStore(state.db_path, readonly=True) as store:
        rows = store.read_calendars()
    if not rows:
        console.print("[yellow]No calendars cached yet — run[/] [cyan]termcal sync[/].")
        return

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("", width=2)
    table.add_column("Name", style="bold")
    table.add_column("Owner")
    table.add_column("ID", style="dim", overflow="fold")
    for cal in rows:
        table.add_row(
            Text("●", style=cal.assigned_color),
            cal.display_name,
            "yes" if cal.owner_flag else "",
            cal.id,
        )
    console.print(table)


@app.command()
def events(
    calendar: Annotated[
        str | None,
        typer.Option(
            "--calendar", "-C", help=f"Calendar id, or {MY_CALENDARS} for calendars you own"
        ),
    ] = None,
    days: Annotated[int, typer.Option("--days", "-d", min=1, help="Days ahead to show")] = 7,
) -> None:
    """List upcoming events from the local replica (works offline)."""
    _load()
    now = datetime.now(UTC)
    window = SyncWindow(now, now + timedelta(days=days))
    with ReplicaStore(state.db_path, readonly=True) as store:
        colors = {c.id: c.assigned_color for c in store.read_calendars()}
        rows = store.read_events(calendar, window)
        sync_state = store.load_sync_state()

    if not rows:
        console.print(f"[yellow]No events in the next {days} day(s).[/]")
    else:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("", width=2)
        table.add_column("When")
        table.add_column("Subject", style="bold", overflow="fold")
        table.add_column("Location", overflow="fold")
        for event in rows:
            table.add_row(
                Text("●", style=colors.get(event.calendar_id, "white")),
                _format_when(event),
                event.subject,
                event.location,
            )
        console.print(table)
    console.print(f"[dim]Last updated {_format_age(sync_state.last_successful_sync_at)}[/dim]")


# ---------------------------------------------------------------------------
# Subcommand: status
# ---------------------------------------------------------------------------


@app.command()
def status() -> None:
    """Show configuration, login and replica freshness."""
    settings = _load()
    config_exists = state.config_path.exists()

    info = Text()
    info.append("  Config:       ", style="bold")
    info.append(str(state.config_path) + " ")
    info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    info.append("\n  Client id:    ", style="bold")
    info.append(settings.client_id or "(not set)", style="" if settings.client_id else "red")
    info.append("\n  Refresh:      ", style="bold")
    info.append(f"every {settings.refresh_interval_minutes} min")
    info.append("\n  Window:       ", style="bold")
    info.append(f"-{settings.window_past_days}d / +{settings.window_future_days}d")
    logged_in = CredentialStore().load() is not None
    info.append("\n  Login:        ", style="bold")
    info.append(
        "stored refresh token" if logged_in else "logged out",
        style="green" if logged_in else "yellow",
    )

    try:
        summary = query_status(state.db_path)
    except CalendarSyncError as e:
        console.print(f"[bold red]Error:[/] {e}")
        raise typer.Exit(1) from None

    info.append("\n  Replica:      ", style="bold")
    info.append(str(state.db_path) + " ")
    if summary is None:
        info.append("(not synced yet)", style="yellow")
    else:
        info.append("✓", style="green")
        info.append("\n  Contents:     ", style="bold")
        info.append(f"{summary['calendars']} calendar(s), {summary['events']} event(s)")
        info.append("\n  Last sync:    ", style="bold")
        info.append(_format_age(summary["last_successful_sync_at"]))
        if summary["last_error"]:
            info.append("\n  Last error:   ", style="bold")
            info.append(summary["last_error"], style="bold red")

    console.print(Panel(info, title="[bold]termcal — Status[/bold]"))
