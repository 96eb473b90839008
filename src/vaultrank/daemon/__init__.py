"""Background maintenance: vault watching and incremental re-indexing."""

from vaultrank.daemon.maintenance import MaintenanceLoop, MaintenanceState, MaintenanceStatus
from vaultrank.daemon.watcher import VaultWatcher

__all__ = [
    "MaintenanceLoop",
    "MaintenanceState",
    "MaintenanceStatus",
    "VaultWatcher",
]
