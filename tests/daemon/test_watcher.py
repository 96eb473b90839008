"""Tests for the vault watcher.

Tests cover:
- _collect_watch_dirs() pruning
- Cross-filesystem detection
- Debounce buffering and create/delete folding
- Rename pairing
- Translation of watchfiles batches into note changes
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest
from watchfiles import Change

from vaultrank.daemon.watcher import (
    DEBOUNCE_WINDOW_SEC,
    MAX_DEBOUNCE_WAIT_SEC,
    VaultWatcher,
    _collect_watch_dirs,
    _is_cross_filesystem,
    pair_renames,
)
from vaultrank.documents.filesystem import FilesystemDocumentSource
from vaultrank.documents.model import ChangeEvent, ChangeKind


@pytest.fixture
def source(vault: Path) -> FilesystemDocumentSource:
    return FilesystemDocumentSource(vault, excluded_folders=["archive"])


@pytest.fixture
def delivered() -> list[list[ChangeEvent]]:
    return []


@pytest.fixture
def watcher(source: FilesystemDocumentSource, delivered: list[list[ChangeEvent]]) -> VaultWatcher:
    return VaultWatcher(source=source, on_change=delivered.append)


class TestCollectWatchDirs:
    """Tests for _collect_watch_dirs function."""

    def test_includes_vault_root(self, source: FilesystemDocumentSource) -> None:
        """Vault root is always included in the watch list."""
        assert _collect_watch_dirs(source) == [source.root]

    def test_prunes_hardcoded_and_excluded_dirs(self, source: FilesystemDocumentSource) -> None:
        """Tool directories and excluded folders are never watched."""
        for name in (".obsidian", ".git", ".vaultrank", "Archive", "projects/deep"):
            (source.root / name).mkdir(parents=True)

        names = {d.relative_to(source.root).as_posix() for d in _collect_watch_dirs(source)}

        assert names == {".", "projects", "projects/deep"}


class TestCrossFilesystemDetection:
    """Tests for _is_cross_filesystem function."""

    def test_wsl_mnt_path(self) -> None:
        """WSL /mnt/c/ style paths are detected as cross-filesystem."""
        assert _is_cross_filesystem(Path("/mnt/c/Users/notes")) is True

    def test_regular_path(self) -> None:
        """Regular paths and /mnt/ without a drive letter are local."""
        assert _is_cross_filesystem(Path("/home/user/vault")) is False
        assert _is_cross_filesystem(Path("/mnt/data")) is False

    def test_network_mounts(self) -> None:
        """Network mount paths are detected as cross-filesystem."""
        assert _is_cross_filesystem(Path("/media/usb")) is True
        assert _is_cross_filesystem(Path("/net/server/share")) is True


class TestPairRenames:
    """Tests for pair_renames function."""

    def test_move_across_folders(self) -> None:
        """Delete and create of the same file name become one rename."""
        events = pair_renames(
            {"inbox/Idea.md": ChangeKind.DELETED, "projects/Idea.md": ChangeKind.CREATED}
        )
        assert events == [ChangeEvent(ChangeKind.RENAMED, "projects/Idea.md", old_id="inbox/Idea.md")]

    def test_in_place_rename(self) -> None:
        """A single delete and create in one folder is a rename."""
        events = pair_renames({"notes/old.md": ChangeKind.DELETED, "notes/new.md": ChangeKind.CREATED})
        assert events == [ChangeEvent(ChangeKind.RENAMED, "notes/new.md", old_id="notes/old.md")]

    def test_ambiguous_changes_left_alone(self) -> None:
        """Two unrelated deletes and a create in different folders stay as they are."""
        pending = {
            "a/one.md": ChangeKind.DELETED,
            "b/two.md": ChangeKind.DELETED,
            "c/three.md": ChangeKind.CREATED,
            "c/edit.md": ChangeKind.MODIFIED,
        }

        events = pair_renames(pending)

        assert [(e.kind, e.doc_id) for e in events] == [
            (ChangeKind.DELETED, "a/one.md"),
            (ChangeKind.DELETED, "b/two.md"),
            (ChangeKind.MODIFIED, "c/edit.md"),
            (ChangeKind.CREATED, "c/three.md"),
        ]


class TestDebounce:
    """Tests for change buffering and flushing."""

    def test_defaults(self, watcher: VaultWatcher) -> None:
        """Debounce defaults come from the module constants."""
        assert watcher.debounce_window == DEBOUNCE_WINDOW_SEC
        assert watcher.max_debounce_wait == MAX_DEBOUNCE_WAIT_SEC

    def test_create_then_delete_cancels(self, watcher: VaultWatcher) -> None:
        """A note created and deleted within one window is never reported."""
        watcher.queue_change(ChangeKind.CREATED, "tmp.md")
        watcher.queue_change(ChangeKind.DELETED, "tmp.md")
        assert watcher._pending == {}

    def test_delete_then_create_is_modify(self, watcher: VaultWatcher) -> None:
        """Atomic-save editors delete and recreate the file."""
        watcher.queue_change(ChangeKind.DELETED, "note.md")
        watcher.queue_change(ChangeKind.CREATED, "note.md")
        assert watcher._pending == {"note.md": ChangeKind.MODIFIED}

    def test_modify_after_create_stays_create(self, watcher: VaultWatcher) -> None:
        watcher.queue_change(ChangeKind.CREATED, "note.md")
        watcher.queue_change(ChangeKind.MODIFIED, "note.md")
        assert watcher._pending == {"note.md": ChangeKind.CREATED}

    def test_should_flush_after_quiet_window(self, watcher: VaultWatcher) -> None:
        """Flush waits for the quiet window to pass."""
        assert not watcher._should_flush()
        watcher.queue_change(ChangeKind.MODIFIED, "note.md")
        assert not watcher._should_flush()

        watcher._last_change_time = time.monotonic() - DEBOUNCE_WINDOW_SEC - 0.01

        assert watcher._should_flush()

    def test_should_flush_after_max_wait(self, watcher: VaultWatcher) -> None:
        """A steady stream of changes is still flushed after the maximum wait."""
        watcher.queue_change(ChangeKind.MODIFIED, "note.md")
        watcher._first_change_time = time.monotonic() - MAX_DEBOUNCE_WAIT_SEC - 0.01
        assert watcher._should_flush()

    def test_flush_delivers_paired_batch(
        self, watcher: VaultWatcher, delivered: list[list[ChangeEvent]]
    ) -> None:
        watcher.queue_change(ChangeKind.DELETED, "a/Note.md")
        watcher.queue_change(ChangeKind.CREATED, "b/Note.md")

        watcher._flush_pending()

        assert delivered == [[ChangeEvent(ChangeKind.RENAMED, "b/Note.md", old_id="a/Note.md")]]
        assert watcher._pending == {}

    @pytest.mark.asyncio
    async def test_stop_flushes_pending(
        self, watcher: VaultWatcher, delivered: list[list[ChangeEvent]]
    ) -> None:
        """Buffered changes are delivered when the watcher stops."""
        watcher.queue_change(ChangeKind.MODIFIED, "note.md")
        await watcher.stop()
        assert delivered == [[ChangeEvent(ChangeKind.MODIFIED, "note.md")]]


class TestHandleChanges:
    """Tests for translating watchfiles batches."""

    def test_note_changes_queued(self, watcher: VaultWatcher, source: FilesystemDocumentSource) -> None:
        root = source.root
        changes = {
            (Change.added, str(root / "new.md")),
            (Change.modified, str(root / "sub" / "edit.md")),
            (Change.deleted, str(root / "gone.md")),
        }

        assert not watcher._handle_changes(changes)

        assert watcher._pending == {
            "new.md": ChangeKind.CREATED,
            "sub/edit.md": ChangeKind.MODIFIED,
            "gone.md": ChangeKind.DELETED,
        }

    def test_non_notes_ignored(self, watcher: VaultWatcher, source: FilesystemDocumentSource) -> None:
        """Attachments, tool folders and excluded folders never reach the buffer."""
        root = source.root
        changes = {
            (Change.added, str(root / "image.png")),
            (Change.modified, str(root / ".obsidian" / "workspace.md")),
            (Change.modified, str(root / "archive" / "old.md")),
            (Change.modified, "/somewhere/else/outside.md"),
        }

        watcher._handle_changes(changes)

        assert watcher._pending == {}

    def test_new_directory_requests_restart(
        self, watcher: VaultWatcher, source: FilesystemDocumentSource
    ) -> None:
        new_dir = source.root / "projects"
        new_dir.mkdir()

        assert watcher._handle_changes({(Change.added, str(new_dir))})


class TestPolling:
    def test_scan_mtimes_lists_notes(self, watcher: VaultWatcher, source: FilesystemDocumentSource) -> None:
        (source.root / "a.md").write_text("a")
        (source.root / "b.txt").write_text("b")

        assert set(watcher._scan_mtimes()) == {"a.md"}


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_native_watch_reports_new_note(
        self, watcher: VaultWatcher, source: FilesystemDocumentSource, delivered: list[list[ChangeEvent]]
    ) -> None:
        """End to end through watchfiles: a written note is delivered as a change."""
        watcher.debounce_window = 0.1
        await watcher.start()
        try:
            await asyncio.sleep(0.3)
            (source.root / "fresh.md").write_text("hello")
            loop = asyncio.get_running_loop()
            deadline = loop.time() + 5.0
            while not delivered and loop.time() < deadline:
                await asyncio.sleep(0.05)
        finally:
            await watcher.stop()

        doc_ids = {e.doc_id for batch in delivered for e in batch}
        assert "fresh.md" in doc_ids
