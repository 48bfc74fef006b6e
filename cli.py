"""
Protee CLI
Commands: log, entries, delete, goal, mps, sync, status, force-resync,
          sign-in, sign-out, reset-remote, server
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

app = typer.Typer(
    name="protee",
    help="Protee — local-first protein tracking",
    add_completion=False,
)
console = Console()

# Suppress noisy loggers when running CLI
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)


def _bootstrap():
    """Initialize DB before any command that needs it."""
    from protee.storage.database import init_db
    init_db()


def _coordinator():
    from protee.sync.engine import build_sync_coordinator
    return build_sync_coordinator()


def _run(action):
    """Run ``action(coordinator)`` on a fresh event loop and close it afterwards."""
    _bootstrap()

    async def main():
        coordinator = _coordinator()
        try:
            return await action(coordinator)
        finally:
            await coordinator.aclose()

    return asyncio.run(main())


def _fail(message: str):
    console.print(f"[red]Error:[/] {message}")
    raise typer.Exit(1)


def _resolve_entry(local, prefix: str):
    from protee.sync.records import EntityType

    matches = [e for e in local.list_live(EntityType.food_entry) if e.sync_id.startswith(prefix)]
    if not matches:
        _fail(f"Entry not found: {prefix}")
    if len(matches) > 1:
        _fail(f"Ambiguous id prefix {prefix!r} ({len(matches)} entries)")
    return matches[0]


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


# ── log ───────────────────────────────────────────────────────────────────────

@app.command()
def log(
    food: str = typer.Argument(..., help="What you ate"),
    protein: int = typer.Argument(..., help="Protein in grams"),
    calories: Optional[int] = typer.Option(None, "--calories", "-c"),
    at: Optional[datetime] = typer.Option(None, "--at", help="When it was eaten (ISO, UTC if no offset)"),
):
    """Log a food entry."""
    _bootstrap()
    from protee.models.tracking import Confidence, EntrySource
    from protee.storage.database import utcnow
    from protee.sync.local_store import LocalStore
    from protee.sync.records import EntityType

    consumed_at = None
    if at is not None:
        consumed_at = at if at.tzinfo else at.replace(tzinfo=timezone.utc)

    entry = LocalStore().create(
        EntityType.food_entry,
        date=(consumed_at or utcnow()).date().isoformat(),
        food_name=food,
        protein=protein,
        calories=calories,
        source=EntrySource.manual,
        confidence=Confidence.high,
        consumed_at=consumed_at,
        created_at=utcnow(),
    )
    console.print(f"[green]Logged[/] {entry.food_name} — {entry.protein}g protein  [dim]{entry.sync_id[:8]}[/]")


# ── entries ───────────────────────────────────────────────────────────────────

@app.command()
def entries(date: Optional[str] = typer.Option(None, "--date", "-d", help="YYYY-MM-DD (default: today)")):
    """List food entries for a day."""
    _bootstrap()
    from protee.sync.local_store import LocalStore
    from protee.sync.records import EntityType
    from protee.tracking.mps import effective_time, find_mps_hits

    day = date or _today()
    rows = sorted(LocalStore().list_live(EntityType.food_entry, date=day), key=effective_time)
    if not rows:
        console.print(f"[dim]No entries for {day}.[/]")
        return

    hit_ids = {e.sync_id for e in find_mps_hits(rows)}
    table = Table(title=f"Entries — {day}", box=box.ROUNDED)
    table.add_column("ID", style="cyan", no_wrap=True, max_width=10)
    table.add_column("Time", no_wrap=True)
    table.add_column("Food")
    table.add_column("Protein", justify="right")
    table.add_column("kcal", justify="right")
    table.add_column("MPS", justify="center")
    table.add_column("Sync", justify="center")

    for e in rows:
        sync_style = {"synced": "green", "pending": "yellow", "failed": "red"}.get(e.sync_status.value, "white")
        table.add_row(
            e.sync_id[:8],
            effective_time(e).strftime("%H:%M"),
            e.food_name,
            f"{e.protein}g",
            str(e.calories) if e.calories is not None else "—",
            "[green]●[/]" if e.sync_id in hit_ids else "",
            f"[{sync_style}]{e.sync_status.value}[/]",
        )

    total = sum(e.protein for e in rows)
    console.print(table)
    console.print(f"Total protein: [bold]{total}g[/]")


# ── delete ────────────────────────────────────────────────────────────────────

@app.command()
def delete(entry_id: str = typer.Argument(..., help="Entry sync id (or prefix)")):
    """Delete a food entry (syncs as a tombstone)."""
    _bootstrap()
    from protee.sync.local_store import LocalStore
    from protee.sync.records import EntityType

    local = LocalStore()
    entry = _resolve_entry(local, entry_id)
    local.soft_delete(EntityType.food_entry, entry.sync_id)
    console.print(f"[yellow]Deleted[/] {entry.food_name} [dim]{entry.sync_id[:8]}[/]")


# ── goal ──────────────────────────────────────────────────────────────────────

@app.command()
def goal(
    grams: int = typer.Argument(..., help="Protein goal in grams"),
    date: Optional[str] = typer.Option(None, "--date", "-d", help="YYYY-MM-DD (default: today)"),
):
    """Set the protein goal for a day."""
    _bootstrap()
    from protee.sync.local_store import LocalStore
    from protee.sync.records import EntityType

    day = date or _today()
    local = LocalStore()
    existing = local.list_live(EntityType.daily_goal, date=day)
    if existing:
        local.update(EntityType.daily_goal, existing[-1].sync_id, goal=grams)
    else:
        local.create(EntityType.daily_goal, date=day, goal=grams)
    console.print(f"Goal for {day}: [bold]{grams}g[/]")


# ── mps ───────────────────────────────────────────────────────────────────────

@app.command()
def mps(date: Optional[str] = typer.Option(None, "--date", "-d", help="YYYY-MM-DD (default: today)")):
    """Show MPS hits for a day."""
    _bootstrap()
    from protee.storage.database import utcnow
    from protee.sync.local_store import LocalStore
    from protee.sync.records import EntityType
    from protee.tracking.mps import analyze_mps, effective_time

    day = date or _today()
    analysis = analyze_mps(LocalStore().list_live(EntityType.food_entry, date=day), now=utcnow())

    lines = [f"Hits            : [cyan]{analysis.hit_count}[/]"]
    for hit in analysis.hits:
        lines.append(f"  {effective_time(hit).strftime('%H:%M')}  {hit.food_name} ({hit.protein}g)")
    if analysis.minutes_since_last_hit is not None:
        hours, minutes = divmod(analysis.minutes_since_last_hit, 60)
        lines.append(f"Since last hit  : {hours}h {minutes:02d}m")
    if analysis.near_miss:
        nm = analysis.near_miss
        detail = []
        if nm.protein is not None:
            detail.append(f"{nm.protein}g")
        if nm.minutes_since_last is not None:
            detail.append(f"{nm.minutes_since_last} min after last hit")
        lines.append(f"Near miss       : [yellow]{nm.kind.value}[/] ({', '.join(detail)})")

    console.print(Panel("\n".join(lines), title=f"MPS — {day}", border_style="green"))


# ── sync ──────────────────────────────────────────────────────────────────────

def _print_result(result):
    if result.skipped:
        console.print(f"[yellow]Sync skipped:[/] {result.skipped}")
        return
    if not result.success:
        console.print(f"[red]Sync failed[/] ({result.error_kind}): {result.error}")
        raise typer.Exit(1)

    table = Table(title="Sync", box=box.ROUNDED)
    for col in ("Type", "Pushed", "Failed", "Pulled", "Inserted", "Updated", "Kept local"):
        table.add_column(col, justify="right" if col != "Type" else "left")
    for name, stats in result.types.items():
        table.add_row(
            name,
            str(stats["pushed"]),
            str(stats["push_failed"]),
            str(stats["pulled"]),
            str(stats["inserted"]),
            str(stats["updated"]),
            str(stats["kept_local"]),
        )
    console.print(table)


@app.command()
def sync():
    """Run a sync pass now."""
    async def action(coordinator):
        return await coordinator.sync_data()

    _print_result(_run(action))


@app.command("force-resync")
def force_resync():
    """Forget pull cursors and re-pull everything."""
    async def action(coordinator):
        await coordinator.clear_sync_meta()
        return await coordinator.sync_data()

    _print_result(_run(action))


# ── account ───────────────────────────────────────────────────────────────────

@app.command("sign-in")
def sign_in(
    email: str = typer.Option(..., "--email", "-e", prompt=True),
    password: str = typer.Option(..., "--password", "-p", prompt=True, hide_input=True),
):
    """Sign in to the sync backend."""
    from protee.sync.errors import SyncError

    async def action(coordinator):
        return await coordinator.sign_in(email, password)

    try:
        session = _run(action)
    except SyncError as e:
        _fail(str(e))
    console.print(f"[green]Signed in[/] as {session.email} [dim]({session.user_id})[/]")


@app.command("sign-out")
def sign_out():
    """Sign out and clear sync bookkeeping."""
    from protee.sync.errors import SyncError

    async def action(coordinator):
        await coordinator.sign_out()

    try:
        _run(action)
    except SyncError as e:
        _fail(str(e))
    console.print("Signed out.")


@app.command("reset-remote")
def reset_remote(
    entity_type: Optional[str] = typer.Option(None, "--type", "-t", help="food_entry | daily_goal | chat_message"),
    all_users: bool = typer.Option(False, "--all", help="Delete every row this key can reach, not just yours"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Hard-delete remote data (account reset). Local data is kept."""
    from protee.sync.errors import SyncError
    from protee.sync.records import EntityType
    from protee.sync.remote import DeleteScope

    try:
        et = EntityType(entity_type) if entity_type else None
    except ValueError:
        _fail(f"Unknown type: {entity_type}")
    scope = DeleteScope.ALL if all_users else DeleteScope.OWN

    if not yes:
        target = "ALL users'" if all_users else "your"
        typer.confirm(f"Permanently delete {target} remote {entity_type or 'data'}?", abort=True)

    async def action(coordinator):
        return await coordinator.reset_remote(et, scope)

    try:
        deleted = _run(action)
    except SyncError as e:
        _fail(str(e))
    for name, count in deleted.items():
        console.print(f"  {name:<14} {count if count is not None else '?'} rows deleted")


# ── status ────────────────────────────────────────────────────────────────────

@app.command()
def status():
    """Show sync status and local record counts."""
    from protee.sync.records import ENTITY_ORDER

    async def action(coordinator):
        return coordinator.snapshot(), {
            et.value: coordinator.local.count(et) for et in ENTITY_ORDER
        }

    snap, counts = _run(action)
    state_style = {"idle": "green", "syncing": "yellow", "error": "red"}.get(snap.state.value, "dim")
    last = snap.last_sync_at.strftime("%Y-%m-%d %H:%M:%S") if snap.last_sync_at else "never"
    lines = [
        f"State           : [{state_style}]{snap.state.value}[/]",
        f"Signed in as    : {snap.email or snap.user_id or '[dim]nobody[/]'}",
        f"Last sync       : {last}",
        f"Pending changes : [cyan]{snap.pending_count}[/]",
    ]
    if snap.last_error:
        lines.append(f"Last error      : [red]{snap.last_error}[/]")
    lines.append("")
    lines.extend(f"{name:<16}: {count}" for name, count in counts.items())

    console.print(Panel("\n".join(lines), title="Protee Status", border_style="blue"))


# ── server ────────────────────────────────────────────────────────────────────

@app.command()
def server(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload"),
):
    """Start the Protee API server."""
    import uvicorn
    console.print(f"[green]Starting Protee API server[/] → http://{host}:{port}")
    uvicorn.run("protee.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
