"""Command line tools for inspecting and draining the offline queue.

Settings come from ``DRAFTSYNC_*`` environment variables, so the commands
operate on the same local storage the application uses.
"""

import asyncio
from datetime import datetime, timezone
from typing import Annotated

import cyclopts
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import SyncSettings, configure_logging
from .engine import SyncEngine
from .exceptions import DraftSyncError
from .models import SyncState, SyncStatus
from .queue import LocalDurableQueue
from .storage import LocalDiskStorage

app = cyclopts.App(name="draftsync", help="Inspect and manage offline draft sync")

STATE_STYLES = {
    SyncState.SAVED: "green",
    SyncState.SAVING: "cyan",
    SyncState.SYNCING: "cyan",
    SyncState.OFFLINE: "yellow",
    SyncState.ERROR: "red",
}


def _get_console() -> Console:
    return Console()


def _open_queue(settings: SyncSettings) -> LocalDurableQueue:
    storage = LocalDiskStorage(
        settings.storage_path / "storage",
        capacity_bytes=settings.storage_capacity_bytes,
    )
    return LocalDurableQueue(
        storage,
        None,
        max_queue_size=settings.max_queue_size,
        max_retry_count=settings.max_retry_count,
        expiry_hours=settings.expiry_hours,
    )


def _format_ms(value: int | None) -> str:
    if value is None:
        return "Never"
    moment = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    return moment.strftime("%Y-%m-%d %H:%M:%S UTC")


def _status_table(status: SyncStatus, settings: SyncSettings) -> Table:
    style = STATE_STYLES[status.state]
    table = Table(title="Draft Sync Status", show_header=False, box=None)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("State", f"[{style}]{escape(status.message)}[/{style}]")
    table.add_row("Queued", str(status.queue_size))
    table.add_row("Last Sync", _format_ms(status.last_sync_time))
    table.add_row("Storage", str(settings.storage_path))
    table.add_row("Remote URL", settings.remote_url or "[dim]not configured[/dim]")
    return table


@app.command
def status():
    """Show queue size, last sync time and overall state.

    Example:
        draftsync status
    """
    settings = SyncSettings()
    queue = _open_queue(settings)
    _get_console().print(_status_table(queue.get_status(), settings))


@app.command(name="queue")
def list_queue():
    """List the operations waiting in the offline queue.

    Example:
        draftsync queue
    """
    console = _get_console()
    operations = _open_queue(SyncSettings()).operations()

    if not operations:
        console.print("[green]Offline queue is empty[/green]")
        return

    table = Table(title=f"Offline Queue ({len(operations)} operations)")
    table.add_column("Type", style="cyan")
    table.add_column("Document")
    table.add_column("Queued At")
    table.add_column("Retries", justify="right")
    table.add_column("Last Error", style="red")
    for op in operations:
        table.add_row(
            op.type,
            f"{op.collection}/{op.document_id}",
            _format_ms(op.timestamp),
            str(op.retry_count),
            op.last_error or "",
        )
    console.print(table)


@app.command
def clear(
    *,
    yes: Annotated[
        bool, cyclopts.Parameter(help="Clear without asking for confirmation")
    ] = False,
):
    """Discard every queued operation.

    Example:
        draftsync clear --yes
    """
    console = _get_console()
    queue = _open_queue(SyncSettings())
    count = queue.size()

    if count == 0:
        console.print("[green]Offline queue is already empty[/green]")
        return
    if not yes:
        answer = console.input(f"Discard {count} queued operations? \\[y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            console.print("[yellow]Aborted[/yellow]")
            return

    queue.clear()
    console.print(f"[green]✓ Discarded {count} queued operations[/green]")


@app.command
def flush():
    """Deliver queued operations to the remote store now.

    Requires DRAFTSYNC_REMOTE_URL (and DRAFTSYNC_AUTH_TOKEN if the store
    needs one).

    Example:
        draftsync flush
    """
    console = _get_console()
    settings = SyncSettings()
    configure_logging(settings)

    async def run() -> SyncStatus:
        engine = SyncEngine.create(settings)
        try:
            await engine.force_retry()
            return engine.get_status()
        finally:
            await engine.close()

    try:
        result = asyncio.run(run())
    except DraftSyncError as e:
        console.print(f"[red]Flush failed: {e}[/red]")
        raise

    console.print(_status_table(result, settings))


def main():
    app()


if __name__ == "__main__":
    main()
