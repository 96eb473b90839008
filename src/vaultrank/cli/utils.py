"""CLI utilities."""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator
from pathlib import Path

import click

from vaultrank.config import get_index_dir, load_config
from vaultrank.config.models import VaultRankConfig
from vaultrank.core.errors import ConfigError
from vaultrank.core.logging import configure_logging
from vaultrank.documents.filesystem import FilesystemDocumentSource
from vaultrank.index.ops import IndexCoordinator

VAULT_ARGUMENT = click.argument(
    "vault", default=".", type=click.Path(exists=True, file_okay=False, path_type=Path)
)


def console_level(verbose: bool) -> str:
    """Terminal log level; command output stays readable unless -v is given."""
    return "DEBUG" if verbose else "WARNING"


def load_vault_config(vault: Path) -> VaultRankConfig:
    """Resolve config for a vault, turning config errors into CLI errors.

    Logging is reconfigured from the vault's logging section; the -v flag
    still decides the terminal level.
    """
    try:
        config = load_config(vault)
    except ConfigError as e:
        raise click.ClickException(str(e)) from e
    ctx = click.get_current_context(silent=True)
    obj = ctx.find_root().obj if ctx is not None else None
    verbose = bool(obj and obj.get("verbose"))
    configure_logging(config.logging, console_level=console_level(verbose))
    return config


@contextlib.asynccontextmanager
async def open_coordinator(vault: Path) -> AsyncIterator[IndexCoordinator]:
    """Open the index for a vault and close it on exit."""
    vault = vault.resolve()
    config = load_vault_config(vault)
    source = FilesystemDocumentSource(vault, excluded_folders=config.indexer.excluded_folders)
    coordinator = IndexCoordinator(source, get_index_dir(vault, config), config)
    await coordinator.open()
    try:
        yield coordinator
    finally:
        await coordinator.close()
