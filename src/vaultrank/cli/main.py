"""VaultRank CLI - vaultrank command."""

import click

from vaultrank.cli.index import index_command
from vaultrank.cli.search import search_command, similar_command
from vaultrank.cli.status import status_command
from vaultrank.cli.watch import watch_command
from vaultrank.cli.utils import console_level
from vaultrank.core.logging import configure_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="vaultrank")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """VaultRank - hybrid search over a vault of linked notes."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    configure_logging(console_level=console_level(verbose))


cli.add_command(index_command, name="index")
cli.add_command(search_command, name="search")
cli.add_command(similar_command, name="similar")
cli.add_command(status_command, name="status")
cli.add_command(watch_command, name="watch")


if __name__ == "__main__":
    cli()
