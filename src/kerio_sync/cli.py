"""
Command-line interface for Kerio Sync.
"""

import logging
import os
from configparser import ConfigParser
from contextlib import contextmanager
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from kerio_sync.context import ChangeSuppressor
from kerio_sync.context import RunGuard
from kerio_sync.context import SyncContext
from kerio_sync.kerio_client import KerioApiClient
from kerio_sync.models import DEFAULT_CONFIG
from kerio_sync.models import DEFAULT_STATE_DB
from kerio_sync.models import KerioSyncError
from kerio_sync.models import SyncConfig
from kerio_sync.models import SyncPassResult
from kerio_sync.store import LocalStore
from kerio_sync.sync import SyncPassOrchestrator
from kerio_sync.triggers import ChangeTrigger

CONFIG_SECTION = "kerio-sync"
PASSWORD_ENV = "KERIO_SYNC_PASSWORD"

# ---------------------------------------------------------------------------
# Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    no_args_is_help=True,
    rich_markup_mode="rich",
    help="Two-way sync between a Kerio Connect account and a local calendar/contacts store.",
)

console = Console()


# ---------------------------------------------------------------------------
# Global state shared across subcommands
# ---------------------------------------------------------------------------


@dataclass
class _State:
    config_path: Path = field(default_factory=lambda: DEFAULT_CONFIG)
    state_db: Path = field(default_factory=lambda: DEFAULT_STATE_DB)
    verbose: bool = False


state = _State()


@app.callback()
def _global(
    config: Annotated[
        Path,
        typer.Option("--config", "-c", help=f"Config file path (default: {DEFAULT_CONFIG})"),
    ] = DEFAULT_CONFIG,
    state_db: Annotated[
        Path,
        typer.Option("--state-db", help=f"State DB path (default: {DEFAULT_STATE_DB})"),
    ] = DEFAULT_STATE_DB,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose debug output"),
    ] = False,
) -> None:
    state.config_path = config
    state.state_db = state_db
    state.verbose = verbose
    _setup_logging(verbose)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False, console=console)],
    )
    # Keep urllib3 connection logs out of --verbose output.
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _load_config_file(config_path: Path) -> dict[str, str]:
    if not config_path.exists():
        return {}
    parser = ConfigParser()
    parser.read(config_path)
    if CONFIG_SECTION not in parser:
        return {}
    return dict(parser[CONFIG_SECTION])


def _flag(values: dict[str, str], key: str, default: bool) -> bool:
    raw = values.get(key)
    if raw is None:
        return default
    try:
        return ConfigParser.BOOLEAN_STATES[raw.strip().lower()]
    except KeyError:
        raise typer.BadParameter(f"{key} must be a boolean, got {raw!r}") from None


def _number(values: dict[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        raise typer.BadParameter(f"{key} must be an integer, got {raw!r}") from None


def _build_config(
    calendars: bool | None = None,
    contacts: bool | None = None,
    require_credentials: bool = True,
) -> SyncConfig:
    values = _load_config_file(state.config_path)
    server_url = values.get("server_url", "")
    username = values.get("username", "")
    password = os.environ.get(PASSWORD_ENV) or values.get("password", "")

    if require_credentials and not (server_url and username and password):
        console.print(
            "[bold red]Error:[/] [cyan]server_url[/], [cyan]username[/] and [cyan]password[/] "
            f"must be set in the [cyan][{CONFIG_SECTION}][/] section of {state.config_path} "
            f"(the password may come from [cyan]{PASSWORD_ENV}[/] instead)."
        )
        raise typer.Exit(1)

    return SyncConfig(
        account=values.get("account") or username or "default",
        server_url=server_url,
        username=username,
        password=password,
        state_db_path=state.state_db,
        verify_tls=_flag(values, "verify_tls", True),
        past_window_days=_number(values, "past_window_days", 180),
        future_window_days=_number(values, "future_window_days", 365),
        sync_calendars=_flag(values, "sync_calendars", True) if calendars is None else calendars,
        sync_contacts=_flag(values, "sync_contacts", True) if contacts is None else contacts,
        suppress_start_seconds=_number(values, "suppress_start_seconds", 30),
        suppress_end_seconds=_number(values, "suppress_end_seconds", 8),
        lease_seconds=_number(values, "lease_seconds", 3600),
        verbose=state.verbose,
    )


@contextmanager
def _open_state(cfg: SyncConfig):
    """Open the local store and sync context living in the state DB."""
    context = SyncContext(cfg.state_db_path)
    with LocalStore(cfg.state_db_path, cfg.account) as store:
        yield store, context


def _make_runner(cfg: SyncConfig, store: LocalStore, context: SyncContext):
    def run(reason: str) -> SyncPassResult:
        client = KerioApiClient(
            cfg.server_url, cfg.username, cfg.password, verify=cfg.verify_tls
        )
        return SyncPassOrchestrator(cfg, client, store, context).run(reason)

    return run


def _print_results(stats: SyncPassResult) -> None:
    if stats.skipped:
        console.print("[yellow]Another sync pass is already running — nothing to do.[/]")
        return

    results = Table.grid(padding=(0, 2))
    results.add_column(style="bold")
    results.add_column(justify="right")
    results.add_row("Inserted", str(stats.inserted))
    results.add_row("Updated", str(stats.updated))
    results.add_row("Deleted", str(stats.deleted))
    if stats.deferred:
        results.add_row("Deferred", Text(str(stats.deferred), style="yellow"))
    for label, count in (
        ("Auth failures", stats.auth_failures),
        ("I/O failures", stats.io_failures),
        ("Parse failures", stats.parse_failures),
    ):
        value = Text(str(count))
        if count == 0:
            value.append(" ✓", style="green")
        else:
            value.stylize("bold red")
        results.add_row(label, value)
    if stats.cancelled:
        results.add_row("Status", Text("cancelled", style="yellow"))

    console.print(Panel(results, title="[bold]Results[/bold]", expand=False))


def _run_and_report(run, reason: str) -> SyncPassResult | None:
    try:
        stats = run(reason)
    except KerioSyncError as e:
        console.print(f"[bold red]Sync failed:[/] {e}")
        raise typer.Exit(1) from None
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted by user[/]")
        raise typer.Exit(130) from None
    if stats is None:
        console.print("[dim]Suppressed — no pass started.[/dim]")
        return None
    _print_results(stats)
    if stats.auth_failures or stats.io_failures:
        raise typer.Exit(1)
    return stats


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


@app.command()
def sync(
    reason: Annotated[str, typer.Option("--reason", help="Reason recorded for this pass")] = "manual",
    calendars: Annotated[
        bool | None,
        typer.Option("--calendars/--no-calendars", help="Sync calendars (overrides config)"),
    ] = None,
    contacts: Annotated[
        bool | None,
        typer.Option("--contacts/--no-contacts", help="Sync contacts (overrides config)"),
    ] = None,
) -> None:
    """Run one sync pass now."""
    cfg = _build_config(calendars, contacts)

    info = Text()
    info.append("  Server:   ", style="bold")
    info.append(f"{cfg.server_url}\n")
    info.append("  Account:  ", style="bold")
    info.append(f"{cfg.account}\n")
    info.append("  Items:    ", style="bold")
    info.append(", ".join(kind.value + "s" for kind in cfg.kinds) or "none", style="cyan")
    info.append("\n  Window:   ", style="bold")
    info.append(f"-{cfg.past_window_days}d / +{cfg.future_window_days}d")
    if not cfg.verify_tls:
        info.append("\n  TLS:      ")
        info.append("certificate checks disabled", style="bold red")
    console.print(Panel(info, title="[bold]Kerio Sync[/bold]"))

    with _open_state(cfg) as (store, context):
        _run_and_report(_make_runner(cfg, store, context), reason)


@app.command()
def trigger(
    soon: Annotated[
        float | None,
        typer.Option("--soon", help="Only record a request to sync after this many seconds"),
    ] = None,
    reason: Annotated[str, typer.Option("--reason", help="Reason for a --soon request")] = "requested",
) -> None:
    """Change-observer entry point: sync unless the suppression window is open."""
    cfg = _build_config()
    with _open_state(cfg) as (store, context):
        suppressor = ChangeSuppressor(context, scope=cfg.account)
        change_trigger = ChangeTrigger(
            _make_runner(cfg, store, context), suppressor, context, scope=cfg.account
        )

        if soon is not None:
            change_trigger.request_pass_soon(reason, soon)
            console.print(f"Sync requested in {soon:g}s ([cyan]{reason}[/]).")
            return

        pending = change_trigger.pending_request()
        if pending is not None:
            _run_and_report(lambda _: change_trigger.run_pending(), pending)
            return

        if suppressor.is_suppressed():
            console.print(
                f"[dim]Suppressed for another {suppressor.remaining_seconds():.1f}s "
                f"({suppressor.reason}) — ignoring.[/dim]"
            )
            return
        _run_and_report(lambda _: change_trigger.on_local_change(), "local-change")


@app.command()
def status() -> None:
    """Show configuration, suppression window, run lease and local collections."""
    cfg = _build_config(require_credentials=False)
    config_exists = state.config_path.exists()
    db_exists = state.state_db.exists()

    cfg_info = Text()
    cfg_info.append("  Config:   ", style="bold")
    cfg_info.append(str(state.config_path) + " ")
    cfg_info.append(
        "✓" if config_exists else "(not found)", style="green" if config_exists else "red"
    )
    cfg_info.append("\n  State DB: ", style="bold")
    cfg_info.append(str(state.state_db) + " ")
    cfg_info.append("✓" if db_exists else "(not found)", style="green" if db_exists else "yellow")
    cfg_info.append("\n  Server:   ", style="bold")
    cfg_info.append(cfg.server_url or "(not set)")
    cfg_info.append("\n  Account:  ", style="bold")
    cfg_info.append(cfg.account)

    if not db_exists:
        console.print(Panel(cfg_info, title="[bold]Kerio Sync — Status[/bold]"))
        console.print(
            "[yellow]No state database yet — run[/] [cyan]kerio-sync sync[/] "
            "[yellow]to create it.[/]"
        )
        return

    with _open_state(cfg) as (store, context):
        suppressor = ChangeSuppressor(context, scope=cfg.account)
        guard = RunGuard(context, cfg.account, cfg.lease_seconds)

        cfg_info.append("\n\n  Suppressed: ", style="bold")
        if suppressor.is_suppressed():
            until = datetime.fromtimestamp(suppressor.until_ms / 1000)
            cfg_info.append(f"until {until:%H:%M:%S} ({suppressor.reason})", style="yellow")
        else:
            cfg_info.append("no", style="green")
        cfg_info.append("\n  Running:    ", style="bold")
        if guard.is_locked():
            cfg_info.append("yes", style="yellow")
        else:
            cfg_info.append("no", style="green")
        console.print(Panel(cfg_info, title="[bold]Kerio Sync — Status[/bold]"))

        collections = store.list_collections()
        if not collections:
            console.print("[yellow]No collections yet — no syncs recorded.[/]")
            return
        counts = store.collection_counts()

        table = Table(title="Local collections", show_lines=False)
        table.add_column("Name", style="bold")
        table.add_column("Kind")
        table.add_column("Access")
        table.add_column("Sync", justify="center")
        table.add_column("Items", justify="right")
        table.add_column("Dirty", justify="right")
        table.add_column("Tombstones", justify="right")
        for collection in collections:
            c = counts.get(collection.local_id, {"items": 0, "dirty": 0, "tombstones": 0})
            table.add_row(
                collection.display_name,
                collection.kind.value,
                "read-only" if collection.read_only else "owner",
                "[green]✓[/]" if collection.sync_enabled else "[dim]off[/dim]",
                str(c["items"] - c["tombstones"]),
                str(c["dirty"]) if c["dirty"] else "[dim]0[/dim]",
                str(c["tombstones"]) if c["tombstones"] else "[dim]0[/dim]",
            )
        console.print(table)


@app.command()
def collections() -> None:
    """List local collections known for the account."""
    cfg = _build_config(require_credentials=False)
    with _open_state(cfg) as (store, _context):
        rows = store.list_collections()

    if not rows:
        console.print("[yellow]No collections yet.[/]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Remote ID", style="dim")
    table.add_column("Visible", justify="center")
    for collection in rows:
        table.add_row(
            str(collection.local_id),
            collection.display_name,
            collection.kind.value,
            collection.remote_id or "",
            "✓" if collection.visible else "",
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main() -> None:
    app()
