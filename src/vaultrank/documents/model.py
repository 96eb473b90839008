"""Document view, change events, and the document-source contract.

The engine never owns documents. It reads them through a DocumentSource and
reacts to ChangeEvents; everything it stores is derived data keyed by
document id.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class DocumentStat:
    """Cheap change marker used to skip unchanged documents during scans."""

    mtime: float
    size: int


@dataclass(frozen=True)
class Document:
    """Read-only view of a note plus the attributes derived from its text."""

    doc_id: str
    content: str
    fingerprint: str
    title: str
    body: str
    stat: DocumentStat | None = None
    aliases: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.body.strip()


class ChangeKind(Enum):
    """Kinds of change notification emitted by a document source."""

    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True, slots=True)
class ChangeEvent:
    """A single change notification. ``old_id`` is set only for renames."""

    kind: ChangeKind
    doc_id: str
    old_id: str | None = None


@runtime_checkable
class DocumentSource(Protocol):
    """Read-only collaborator providing note ids, content and change markers."""

    def list_documents(self) -> Iterable[str]:
        """Return ids of every indexable document."""
        ...

    def read_content(self, doc_id: str) -> str:
        """Return the raw text of a document. Raises FileNotFoundError if gone."""
        ...

    def stat(self, doc_id: str) -> DocumentStat | None:
        """Return the change marker of a document, or None if it does not exist."""
        ...
