"""Vault watcher using watchfiles for async filesystem monitoring.

Design:
- Python walks the vault tree, pruning hardcoded and excluded folders
- Builds an explicit list of directories to watch
- Passes them to awatch with recursive=False (one inotify watch per dir)
- Reacts to new directory creation by restarting awatch
- Falls back to mtime polling for cross-filesystem mounts (WSL /mnt/*)
- Sliding-window debounce batches bursts (editor autosave, sync clients)

Only note files are reported. A delete and a create of the same file name
inside one batch are reported as a rename, which is how moves arrive from
the OS.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import posixpath
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import structlog
from watchfiles import Change, awatch

from vaultrank.documents.filesystem import HARDCODED_DIRS, FilesystemDocumentSource, is_excluded
from vaultrank.documents.model import ChangeEvent, ChangeKind

log = structlog.get_logger()

# Debouncing configuration
DEBOUNCE_WINDOW_SEC = 0.5  # Sliding window for batching rapid changes
MAX_DEBOUNCE_WAIT_SEC = 2.0  # Maximum wait before forcing flush

_KIND_BY_CHANGE: dict[Change, ChangeKind] = {
    Change.added: ChangeKind.CREATED,
    Change.modified: ChangeKind.MODIFIED,
    Change.deleted: ChangeKind.DELETED,
}


def _collect_watch_dirs(source: FilesystemDocumentSource) -> list[Path]:
    """Walk the vault and collect every directory that may hold notes.

    The vault root itself is always included. Each directory gets a single
    non-recursive watch.
    """
    root = source.root
    dirs: list[Path] = [root]
    try:
        for dirpath, dirnames, _filenames in os.walk(root):
            kept = []
            for d in dirnames:
                if d in HARDCODED_DIRS:
                    continue
                rel = (Path(dirpath) / d).relative_to(root).as_posix()
                if is_excluded(rel, source.excluded_folders):
                    continue
                kept.append(d)
            dirnames[:] = kept
            dirs.extend(Path(dirpath) / d for d in dirnames)
    except OSError:
        pass
    return dirs


def _is_cross_filesystem(path: Path) -> bool:
    """Detect if path is on a cross-filesystem mount (WSL /mnt/*, network drives, etc.)."""
    path_str = str(path.resolve())
    # WSL accessing Windows filesystem: /mnt/c/, /mnt/d/, etc.
    if (
        path_str.startswith("/mnt/")
        and len(path_str) > 6
        and path_str[5].isalpha()
        and path_str[6] == "/"
    ):
        return True
    return path_str.startswith(("/run/user/", "/media/", "/net/"))


def pair_renames(pending: dict[str, ChangeKind]) -> list[ChangeEvent]:
    """Turn a per-note change map into events, folding delete+create into renames.

    A deleted and a created note with the same file name are a move. When
    exactly one delete and one create remain in the same folder, that is an
    in-place rename.
    """
    deleted = sorted(d for d, k in pending.items() if k is ChangeKind.DELETED)
    created = sorted(d for d, k in pending.items() if k is ChangeKind.CREATED)
    renames: dict[str, str] = {}

    by_name: dict[str, list[str]] = {}
    for doc_id in created:
        by_name.setdefault(posixpath.basename(doc_id), []).append(doc_id)
    for old_id in deleted:
        candidates = by_name.get(posixpath.basename(old_id))
        if candidates:
            renames[candidates.pop(0)] = old_id

    left_deleted = [d for d in deleted if d not in renames.values()]
    left_created = [d for d in created if d not in renames]
    if (
        len(left_deleted) == 1
        and len(left_created) == 1
        and posixpath.dirname(left_deleted[0]) == posixpath.dirname(left_created[0])
    ):
        renames[left_created[0]] = left_deleted[0]

    events: list[ChangeEvent] = []
    consumed = set(renames.values())
    for doc_id, kind in sorted(pending.items()):
        if doc_id in consumed:
            continue
        if doc_id in renames:
            events.append(ChangeEvent(ChangeKind.RENAMED, doc_id, old_id=renames[doc_id]))
        else:
            events.append(ChangeEvent(kind, doc_id))
    return events


@dataclass
class VaultWatcher:
    """
    Async vault watcher with sliding-window debouncing.

    Changes are buffered until ``debounce_window`` of quiet time, or at most
    ``max_debounce_wait`` after the first one, then delivered to
    ``on_change`` as one batch of ChangeEvents.
    """

    source: FilesystemDocumentSource
    on_change: Callable[[list[ChangeEvent]], None]
    poll_interval: float = 1.0  # Seconds between mtime polls (cross-filesystem)
    debounce_window: float = DEBOUNCE_WINDOW_SEC
    max_debounce_wait: float = MAX_DEBOUNCE_WAIT_SEC

    _watch_task: asyncio.Task[None] | None = field(default=None, init=False)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _is_cross_fs: bool = field(init=False)
    # Debouncing state
    _pending: dict[str, ChangeKind] = field(default_factory=dict, init=False)
    _last_change_time: float = field(default=0.0, init=False)
    _first_change_time: float = field(default=0.0, init=False)
    _debounce_task: asyncio.Task[None] | None = field(default=None, init=False)
    _watched_dirs: set[Path] = field(default_factory=set, init=False)

    def __post_init__(self) -> None:
        self._is_cross_fs = _is_cross_filesystem(self.source.root)

    @property
    def root(self) -> Path:
        return self.source.root

    async def start(self) -> None:
        """Start watching for note changes."""
        if self._watch_task is not None:
            return

        self._stop_event.clear()
        self._debounce_task = asyncio.create_task(self._debounce_flush_loop())
        if self._is_cross_fs:
            self._watch_task = asyncio.create_task(self._poll_loop())
            mode = "polling"
        else:
            self._watch_task = asyncio.create_task(self._watch_loop())
            mode = "native_nonrecursive"
        log.info(
            "watcher.started",
            vault=str(self.root),
            mode=mode,
            debounce_window=self.debounce_window,
        )

    async def stop(self) -> None:
        """Stop watching, delivering any buffered changes first."""
        self._stop_event.set()

        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._debounce_task
        self._debounce_task = None

        if self._pending:
            self._flush_pending()

        if self._watch_task is not None:
            self._watch_task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(self._watch_task, timeout=2.0)
            self._watch_task = None

        log.info("watcher.stopped")

    # --- Debounce ---

    def queue_change(self, kind: ChangeKind, doc_id: str) -> None:
        """Buffer a change; a create followed by a delete cancels out."""
        now = time.monotonic()
        if not self._pending:
            self._first_change_time = now

        prev = self._pending.get(doc_id)
        if kind is ChangeKind.DELETED and prev is ChangeKind.CREATED:
            del self._pending[doc_id]
        elif kind is ChangeKind.CREATED and prev is ChangeKind.DELETED:
            self._pending[doc_id] = ChangeKind.MODIFIED
        elif kind is ChangeKind.MODIFIED and prev is ChangeKind.CREATED:
            pass
        else:
            self._pending[doc_id] = kind
        self._last_change_time = now

    def _should_flush(self) -> bool:
        if not self._pending:
            return False
        now = time.monotonic()
        return (
            now - self._last_change_time >= self.debounce_window
            or now - self._first_change_time >= self.max_debounce_wait
        )

    def _flush_pending(self) -> None:
        if not self._pending:
            return
        events = pair_renames(self._pending)
        self._pending = {}
        self._first_change_time = 0.0
        self._last_change_time = 0.0

        log.info(
            "watcher.changes_detected",
            count=len(events),
            renamed=sum(1 for e in events if e.kind is ChangeKind.RENAMED),
        )
        self.on_change(events)

    async def _debounce_flush_loop(self) -> None:
        try:
            while not self._stop_event.is_set():
                await asyncio.sleep(0.1)
                if self._should_flush():
                    self._flush_pending()
        except asyncio.CancelledError:
            pass

    # --- Native watching ---

    async def _watch_loop(self) -> None:
        """Watch collected directories non-recursively, restarting on new folders."""
        try:
            while not self._stop_event.is_set():
                watch_dirs = _collect_watch_dirs(self.source)
                self._watched_dirs = set(watch_dirs)
                log.debug("watcher.dirs_collected", count=len(watch_dirs))

                try:
                    async for changes in awatch(
                        *watch_dirs,
                        recursive=False,
                        step=500,
                        rust_timeout=10_000,
                        stop_event=self._stop_event,
                        ignore_permission_denied=True,
                    ):
                        if self._handle_changes(changes):
                            log.info("watcher.restart_requested", reason="new_directories")
                            break
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    if self._stop_event.is_set():
                        return
                    log.error("watcher.error", error=str(e))
                    await asyncio.sleep(1.0)
        except asyncio.CancelledError:
            pass

    def _handle_changes(self, changes: set[tuple[Change, str]]) -> bool:
        """Queue note changes from one awatch batch.

        Returns True if a watcher restart is needed (new directories detected).
        """
        needs_restart = False
        for change_type, path_str in changes:
            path = Path(path_str)
            if change_type == Change.added and path.is_dir():
                if path not in self._watched_dirs and path.name not in HARDCODED_DIRS:
                    log.info("watcher.new_directory", path=str(path))
                    needs_restart = True
                continue

            doc_id = self.source.to_doc_id(path)
            if doc_id is None or not self.source.accepts(doc_id):
                continue
            self.queue_change(_KIND_BY_CHANGE[change_type], doc_id)
            log.debug("watcher.path_queued", doc_id=doc_id, change_type=change_type.name)
        return needs_restart

    # --- Polling fallback ---

    async def _poll_loop(self) -> None:
        """Poll note mtimes (for cross-filesystem mounts where inotify fails)."""
        mtimes = self._scan_mtimes()
        try:
            while not self._stop_event.is_set():
                await asyncio.sleep(self.poll_interval)
                try:
                    current = self._scan_mtimes()
                except OSError as e:
                    log.error("watcher.poll_error", error=str(e))
                    continue
                for doc_id, mtime in current.items():
                    old = mtimes.get(doc_id)
                    if old is None:
                        self.queue_change(ChangeKind.CREATED, doc_id)
                    elif mtime > old:
                        self.queue_change(ChangeKind.MODIFIED, doc_id)
                for doc_id in mtimes.keys() - current.keys():
                    self.queue_change(ChangeKind.DELETED, doc_id)
                mtimes = current
        except asyncio.CancelledError:
            pass

    def _scan_mtimes(self) -> dict[str, float]:
        mtimes: dict[str, float] = {}
        for doc_id in self.source.list_documents():
            stat = self.source.stat(doc_id)
            if stat is not None:
                mtimes[doc_id] = stat.mtime
        return mtimes
