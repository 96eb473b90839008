"""vaultrank status command - show index statistics."""

import asyncio
import json
from pathlib import Path
from typing import Any

import click
from rich.console import Console

from vaultrank.cli.utils import VAULT_ARGUMENT, open_coordinator
from vaultrank.index.ops import IndexStatus


async def _run_status(vault: Path) -> IndexStatus:
    async with open_coordinator(vault) as coordinator:
        return coordinator.status()


def _status_dict(status: IndexStatus) -> dict[str, Any]:
    active = status.active_shard
    return {
        "documents": status.documents,
        "active_shard": (
            {"model": active.model_id, "dimension": active.dimension, "count": active.count}
            if active
            else None
        ),
        "inactive_shards": [
            {"model": s.model_id, "dimension": s.dimension, "count": s.count}
            for s in status.shards
            if not s.active
        ],
        "keyword_documents": status.keyword_documents,
        "graph": {"nodes": status.graph_nodes, "edges": status.graph_edges},
        "scheduler": {
            "state": status.scheduler.state.value,
            "queued": status.scheduler.queued,
            "in_flight": status.scheduler.in_flight,
        },
        "needs_rebuild": status.needs_rebuild,
        "model_error": status.model_error,
    }


@click.command()
@VAULT_ARGUMENT
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status_command(vault: Path, as_json: bool) -> None:
    """Show index status for VAULT (default: current directory)."""
    data = _status_dict(asyncio.run(_run_status(vault)))

    if as_json:
        click.echo(json.dumps(data))
        return

    console = Console()
    console.print(f"Notes: {data['documents']}")
    active = data["active_shard"]
    if active:
        console.print(
            f"Active shard: [cyan]{active['model']}[/cyan] "
            f"({active['dimension']}d, {active['count']} vectors)"
        )
    else:
        console.print("Active shard: [yellow]none[/yellow]")
    for shard in data["inactive_shards"]:
        console.print(f"  retained: {shard['model']} ({shard['dimension']}d, {shard['count']} vectors)")
    console.print(f"Keyword index: {data['keyword_documents']} notes")
    console.print(f"Link graph: {data['graph']['nodes']} nodes, {data['graph']['edges']} edges")
    if data["needs_rebuild"]:
        console.print("[yellow]Vector index needs a rebuild; run 'vaultrank index'[/yellow]")
    if data["model_error"]:
        console.print(f"[red]Embedding model unavailable:[/red] {data['model_error']}")
