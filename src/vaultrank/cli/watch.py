"""vaultrank watch command - keep the index current while notes change."""

import asyncio
import contextlib
import signal
from pathlib import Path

import click
from rich.console import Console

from vaultrank.cli.utils import VAULT_ARGUMENT, open_coordinator
from vaultrank.daemon.maintenance import MaintenanceLoop
from vaultrank.daemon.watcher import VaultWatcher
from vaultrank.documents.filesystem import FilesystemDocumentSource
from vaultrank.index.ops import IndexStats


async def _run_watch(vault: Path, console: Console) -> None:
    async def report(stats: IndexStats) -> None:
        parts = [
            f"{n} {label}"
            for n, label in (
                (stats.documents_added, "added"),
                (stats.documents_updated, "updated"),
                (stats.documents_removed, "removed"),
            )
            if n
        ]
        summary = ", ".join(parts) if parts else "no changes"
        console.print(f"  [green]✓[/green] {summary} in {stats.duration_seconds:.2f}s")

    async with open_coordinator(vault) as coordinator:
        stats = await coordinator.scan()
        await report(stats)

        loop = MaintenanceLoop(coordinator, coordinator.config.indexer, on_complete=report)
        source = coordinator.source
        assert isinstance(source, FilesystemDocumentSource)
        watcher = VaultWatcher(source, on_change=loop.offer)

        stop = asyncio.Event()
        running = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                running.add_signal_handler(sig, stop.set)

        await loop.start()
        await watcher.start()
        console.print(f"[cyan]Watching[/cyan] {source.root} (Ctrl+C to stop)")
        try:
            await stop.wait()
        finally:
            await watcher.stop()
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(loop.wait_idle(), timeout=10.0)
            await loop.stop()


@click.command()
@VAULT_ARGUMENT
def watch_command(vault: Path) -> None:
    """Index VAULT, then re-index notes as they change."""
    console = Console(stderr=True)
    asyncio.run(_run_watch(vault, console))
