"""vaultrank index command - scan a vault and persist its index."""

import asyncio
from pathlib import Path

import click
from rich.console import Console

from vaultrank.cli.utils import VAULT_ARGUMENT, open_coordinator
from vaultrank.index.ops import IndexStats


async def _run_index(vault: Path, full: bool) -> tuple[IndexStats | None, str | None]:
    async with open_coordinator(vault) as coordinator:
        if full:
            await coordinator.reindex_full()
            return None, coordinator.status().model_error
        stats = await coordinator.scan()
        return stats, coordinator.status().model_error


@click.command()
@VAULT_ARGUMENT
@click.option("--full", is_flag=True, help="Discard the index and rebuild it from scratch")
def index_command(vault: Path, full: bool) -> None:
    """Index the notes of VAULT (default: current directory)."""
    console = Console(stderr=True)
    with console.status("[cyan]Indexing vault...[/cyan]", spinner="dots"):
        stats, model_error = asyncio.run(_run_index(vault, full))

    if model_error:
        console.print(f"  [yellow]![/yellow] vectors unavailable: {model_error}")
    if stats is None:
        console.print("  [green]✓[/green] full rebuild complete")
        return

    parts: list[str] = []
    if stats.documents_added:
        parts.append(f"{stats.documents_added} added")
    if stats.documents_updated:
        parts.append(f"{stats.documents_updated} updated")
    if stats.documents_removed:
        parts.append(f"{stats.documents_removed} removed")
    summary = ", ".join(parts) if parts else "no changes"
    console.print(
        f"  [green]✓[/green] {summary}, {stats.embeddings_written} embedded "
        f"in {stats.duration_seconds:.2f}s"
    )
    if stats.deferred:
        console.print(f"  [yellow]![/yellow] {len(stats.deferred)} note(s) deferred to the next run")
