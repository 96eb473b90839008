"""Filesystem-backed document source for a vault of markdown notes."""

from __future__ import annotations

import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from vaultrank.config.constants import DATA_DIR_NAME
from vaultrank.documents.model import DocumentStat
from vaultrank.documents.parsing import normalize_path

log = structlog.get_logger()

# Directories that are never indexed, regardless of configuration.
HARDCODED_DIRS: frozenset[str] = frozenset(
    {DATA_DIR_NAME, ".git", ".obsidian", ".trash", ".svn", ".hg"}
)

NOTE_EXTENSIONS: frozenset[str] = frozenset({".md", ".markdown"})


def is_excluded(doc_id: str, excluded_folders: Iterable[str]) -> bool:
    """Case-insensitive folder-prefix match of a document id."""
    lowered = doc_id.lower()
    for folder in excluded_folders:
        prefix = normalize_path(folder).lower()
        if not prefix:
            continue
        if lowered == prefix or lowered.startswith(prefix + "/"):
            return True
    return False


@dataclass
class FilesystemDocumentSource:
    """Reads notes below ``root``; ids are vault-relative POSIX paths."""

    root: Path
    excluded_folders: list[str] = field(default_factory=list)
    extensions: frozenset[str] = NOTE_EXTENSIONS

    def __post_init__(self) -> None:
        self.root = self.root.resolve()

    def accepts(self, doc_id: str) -> bool:
        """True if a vault-relative id names an indexable note."""
        parts = doc_id.split("/")
        if any(p in HARDCODED_DIRS for p in parts[:-1]):
            return False
        if Path(doc_id).suffix.lower() not in self.extensions:
            return False
        return not is_excluded(doc_id, self.excluded_folders)

    def to_doc_id(self, path: Path) -> str | None:
        """Vault-relative id for an absolute path, or None if outside the vault."""
        try:
            rel = path.resolve().relative_to(self.root)
        except ValueError:
            return None
        return normalize_path(rel.as_posix())

    def list_documents(self) -> list[str]:
        return sorted(self._walk())

    def _walk(self) -> Iterator[str]:
        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [d for d in dirnames if d not in HARDCODED_DIRS]
            for filename in filenames:
                doc_id = self.to_doc_id(Path(dirpath) / filename)
                if doc_id and self.accepts(doc_id):
                    yield doc_id

    def read_content(self, doc_id: str) -> str:
        return (self.root / doc_id).read_text(encoding="utf-8", errors="replace")

    def stat(self, doc_id: str) -> DocumentStat | None:
        try:
            st = (self.root / doc_id).stat()
        except OSError:
            return None
        return DocumentStat(mtime=st.st_mtime, size=st.st_size)
