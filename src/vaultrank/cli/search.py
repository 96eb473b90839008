"""vaultrank search / similar commands."""

import asyncio
import json
from dataclasses import asdict, replace
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from vaultrank.cli.utils import VAULT_ARGUMENT, open_coordinator
from vaultrank.index.store import VectorHit
from vaultrank.search.orchestrator import SearchResults


async def _run_search(vault: Path, query: str, limit: int | None) -> SearchResults:
    async with open_coordinator(vault) as coordinator:
        settings = coordinator.settings()
        if limit is not None:
            settings = replace(settings, result_limit=limit)
        return await coordinator.search(query, settings)


async def _run_similar(vault: Path, note: str, limit: int | None) -> list[VectorHit]:
    async with open_coordinator(vault) as coordinator:
        return await coordinator.similar(note, limit)


@click.command()
@VAULT_ARGUMENT
@click.argument("query")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=None, help="Maximum results")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def search_command(vault: Path, query: str, limit: int | None, as_json: bool) -> None:
    """Rank the notes of VAULT against QUERY."""
    results = asyncio.run(_run_search(vault, query, limit))

    if as_json:
        click.echo(
            json.dumps(
                {
                    "query": results.query,
                    "degraded_reason": results.degraded_reason,
                    "elapsed_ms": results.elapsed_ms,
                    "results": [asdict(r) for r in results.results],
                }
            )
        )
        return

    console = Console()
    if results.degraded_reason:
        console.print(f"[yellow]keyword and graph only:[/yellow] {results.degraded_reason}")
    if not results.results:
        console.print("[dim]No matching notes[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right")
    table.add_column("Note")
    table.add_column("Score", justify="right")
    table.add_column("Sim", justify="right")
    table.add_column("Rank", justify="right")
    table.add_column("Act", justify="right")
    for i, r in enumerate(results.results, start=1):
        table.add_row(
            str(i),
            f"[cyan]{r.doc_id}[/cyan]\n{r.title}" if r.title else f"[cyan]{r.doc_id}[/cyan]",
            f"{r.score:.3f}",
            f"{r.similarity:.3f}",
            f"{r.centrality:.4f}",
            f"{r.activation:.3f}",
        )
    console.print(table)
    console.print(f"[dim]{len(results.results)} result(s) in {results.elapsed_ms} ms[/dim]")


@click.command()
@VAULT_ARGUMENT
@click.argument("note")
@click.option("--limit", "-n", type=click.IntRange(min=1), default=None, help="Maximum results")
def similar_command(vault: Path, note: str, limit: int | None) -> None:
    """List notes of VAULT whose embedding is closest to NOTE."""
    hits = asyncio.run(_run_similar(vault, note, limit))
    console = Console()
    if not hits:
        console.print("[dim]No similar notes (is the note indexed?)[/dim]")
        return
    for hit in hits:
        console.print(f"  {hit.score:.3f}  [cyan]{hit.doc_id}[/cyan]")
