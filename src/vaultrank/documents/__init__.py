"""Document views, parsing and sources."""

from vaultrank.documents.filesystem import FilesystemDocumentSource, is_excluded
from vaultrank.documents.model import (
    ChangeEvent,
    ChangeKind,
    Document,
    DocumentSource,
    DocumentStat,
)
from vaultrank.documents.parsing import (
    Link,
    LinkKind,
    build_embed_text,
    extract_links,
    fingerprint,
    normalize_path,
    parse_document,
    resolve_link,
)

__all__ = [
    "ChangeEvent",
    "ChangeKind",
    "Document",
    "DocumentSource",
    "DocumentStat",
    "FilesystemDocumentSource",
    "Link",
    "LinkKind",
    "build_embed_text",
    "extract_links",
    "fingerprint",
    "is_excluded",
    "normalize_path",
    "parse_document",
    "resolve_link",
]
