"""Root conftest.py for test configuration.

Ensures local src/ directory takes priority over any installed packages.
"""

import contextlib
import sys
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

# Insert local src directory at the beginning of sys.path
# This ensures that the local vaultrank package is used, not any installed one
_src_dir = Path(__file__).parent.parent / "src"
if str(_src_dir) not in sys.path:
    sys.path.insert(0, str(_src_dir))

from helpers import BackendFactory, make_config  # noqa: E402

from vaultrank.config.models import VaultRankConfig  # noqa: E402
from vaultrank.documents.filesystem import FilesystemDocumentSource  # noqa: E402
from vaultrank.embedding.scheduler import InferenceScheduler  # noqa: E402
from vaultrank.embedding.worker import EmbeddingWorker  # noqa: E402
from vaultrank.index.ops import IndexCoordinator  # noqa: E402


@pytest.fixture
def backend_factory() -> BackendFactory:
    return BackendFactory()


@pytest.fixture
def vault(tmp_path: Path) -> Path:
    root = tmp_path / "vault"
    root.mkdir()
    return root


@pytest.fixture
def open_coordinator(
    tmp_path: Path, backend_factory: BackendFactory
) -> Callable[..., contextlib.AbstractAsyncContextManager[IndexCoordinator]]:
    """Async context manager factory yielding an opened IndexCoordinator.

    Every coordinator opened through it shares one index directory, so a
    second ``async with`` simulates a new session over the same vault.
    """

    @contextlib.asynccontextmanager
    async def _open(
        vault: Path, config: VaultRankConfig | None = None, **_: Any
    ) -> AsyncIterator[IndexCoordinator]:
        config = config or make_config()
        source = FilesystemDocumentSource(vault, excluded_folders=config.indexer.excluded_folders)
        scheduler = InferenceScheduler(
            EmbeddingWorker(config.embedding, backend_factory=backend_factory),
            config.scheduler,
        )
        coordinator = IndexCoordinator(source, tmp_path / "index", config, scheduler=scheduler)
        await coordinator.open()
        try:
            yield coordinator
        finally:
            await coordinator.close()

    return _open
