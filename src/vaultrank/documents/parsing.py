"""Markdown note parsing: frontmatter, links, fingerprints and embed text.

Links come from two places:

- body references: ``[[target]]``, ``[[target|alias]]``, ``[[target#heading]]``
  and ``[text](relative/target.md)``
- frontmatter relations: wikilinks inside ``related``, ``topics`` or ``up``

Code spans and fenced code blocks never produce links, nor do external URLs
(``http:``, ``mailto:``, ...) or bare ``#anchors``.
"""

from __future__ import annotations

import hashlib
import posixpath
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import unquote

import structlog
import yaml

from vaultrank.documents.model import Document, DocumentStat

log = structlog.get_logger()

# ===================================================================
# Patterns
# ===================================================================

_FRONTMATTER_RE = re.compile(r"\A---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)
_FENCED_CODE_RE = re.compile(r"^(```|~~~).*?^\1[ \t]*$", re.DOTALL | re.MULTILINE)
_INLINE_CODE_RE = re.compile(r"`[^`\n]*`")
_WIKILINK_RE = re.compile(r"\[\[([^\[\]\n]+?)\]\]")
_MDLINK_RE = re.compile(r"(?<!!)\[[^\]\n]*\]\(\s*<?([^)\s>]+)>?(?:\s+\"[^\"]*\")?\s*\)")
_SCHEME_RE = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*:")

RELATION_KEYS: tuple[str, ...] = ("related", "topics", "up")
"""Frontmatter keys whose wikilinks become metadata-declared edges."""


class LinkKind(Enum):
    """Where a reference was declared."""

    BODY = "body"
    FRONTMATTER = "frontmatter"


@dataclass(frozen=True, slots=True)
class Link:
    """An unresolved reference as written in the note."""

    target: str
    kind: LinkKind


# ===================================================================
# Paths and fingerprints
# ===================================================================


def normalize_path(path: str) -> str:
    """Canonical document id form.

    Backslashes become ``/``, repeated separators collapse, and leading
    ``./`` or ``/`` plus trailing ``/`` are stripped.
    """
    if not path:
        return ""
    p = path.replace("\\", "/")
    p = re.sub(r"/+", "/", p)
    while p.startswith("./"):
        p = p[2:]
    return p.strip("/")


def fingerprint(text: str) -> str:
    """SHA-256 hex digest of the document text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def title_from_path(doc_id: str) -> str:
    """File stem of a document id (``notes/Deep Work.md`` -> ``Deep Work``)."""
    name = posixpath.basename(doc_id)
    stem, _ext = posixpath.splitext(name)
    return stem or name


# ===================================================================
# Frontmatter
# ===================================================================


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Split a note into (frontmatter mapping, body).

    Malformed YAML is treated as body text so the note still indexes.
    """
    match = _FRONTMATTER_RE.match(content)
    if not match:
        return {}, content
    try:
        data = yaml.safe_load(match.group(1))
    except yaml.YAMLError as e:
        log.debug("parsing.frontmatter_invalid", error=str(e))
        return {}, content
    if not isinstance(data, dict):
        return {}, content[match.end() :]
    return data, content[match.end() :]


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        text = value.strip()
        # Inline list written as a plain string: "[a, b]". "[[X]]" is a wikilink.
        if text.startswith("[") and text.endswith("]") and not _WIKILINK_RE.match(text):
            return [v.strip().strip("\"'") for v in text[1:-1].split(",") if v.strip()]
        return [text] if text else []
    if isinstance(value, (list, tuple, set)):
        out: list[str] = []
        for item in value:
            out.extend(_as_str_list(item))
        return out
    return [str(value)]


def parse_aliases(frontmatter: Mapping[str, Any]) -> list[str]:
    """Aliases declared in frontmatter, deduplicated in order."""
    seen: dict[str, None] = {}
    for key in ("aliases", "alias"):
        for alias in _as_str_list(frontmatter.get(key)):
            if alias:
                seen.setdefault(alias, None)
    return list(seen)


# ===================================================================
# Links
# ===================================================================


def _strip_code(text: str) -> str:
    text = _FENCED_CODE_RE.sub("", text)
    return _INLINE_CODE_RE.sub("", text)


def _wikilink_target(inner: str) -> str:
    target = inner.split("|", 1)[0]
    target = target.split("#", 1)[0]
    return target.strip()


def extract_body_links(body: str) -> list[str]:
    """Targets of wikilinks and relative markdown links in note body text."""
    text = _strip_code(body)
    targets: list[str] = []

    for m in _WIKILINK_RE.finditer(text):
        target = _wikilink_target(m.group(1))
        if target:
            targets.append(target)

    for m in _MDLINK_RE.finditer(text):
        raw = m.group(1).strip()
        if not raw or raw.startswith("#") or _SCHEME_RE.match(raw):
            continue
        target = unquote(raw.split("#", 1)[0])
        if target:
            targets.append(target)

    return targets


def extract_frontmatter_links(frontmatter: Mapping[str, Any]) -> list[str]:
    """Targets declared in relation keys of the frontmatter."""
    targets: list[str] = []
    for key in RELATION_KEYS:
        for value in _as_str_list(frontmatter.get(key)):
            wikilinks = _WIKILINK_RE.findall(value)
            if wikilinks:
                targets.extend(t for t in (_wikilink_target(w) for w in wikilinks) if t)
            elif value and not _SCHEME_RE.match(value):
                targets.append(value)
    return targets


def extract_links(frontmatter: Mapping[str, Any], body: str) -> list[Link]:
    """All references of a note, frontmatter relations first."""
    links = [Link(t, LinkKind.FRONTMATTER) for t in extract_frontmatter_links(frontmatter)]
    links.extend(Link(t, LinkKind.BODY) for t in extract_body_links(body))
    return links


def resolve_link(target: str, source_id: str, aliases: Mapping[str, str]) -> str:
    """Resolve a written reference to a document id.

    Order: alias map (case-insensitive), relative path against the linking
    note, then ``.md`` appended when the target has no extension.
    """
    raw = target.replace("\\", "/").strip()
    if raw.startswith(("./", "../")):
        base = posixpath.dirname(source_id)
        joined = posixpath.normpath(posixpath.join(base, raw))
        # References above the vault root clamp to the root
        while joined.startswith("../"):
            joined = joined[3:]
        resolved = normalize_path(joined)
    else:
        resolved = normalize_path(raw)
        aliased = aliases.get(resolved.lower())
        if aliased:
            return aliased

    if not posixpath.splitext(resolved)[1]:
        resolved += ".md"
    return resolved


# ===================================================================
# Document construction
# ===================================================================


def build_embed_text(title: str, body: str) -> str:
    """Text handed to the embedding backend for a document."""
    return f"Title: {title}\n\n{body.strip()}"


def parse_document(doc_id: str, content: str, stat: DocumentStat | None = None) -> Document:
    """Build the read-only Document view for raw note text."""
    doc_id = normalize_path(doc_id)
    frontmatter, body = split_frontmatter(content)
    title_values = _as_str_list(frontmatter.get("title"))
    title = title_values[0] if title_values else title_from_path(doc_id)
    return Document(
        doc_id=doc_id,
        content=content,
        fingerprint=fingerprint(content),
        title=title,
        body=body,
        stat=stat,
        aliases=tuple(parse_aliases(frontmatter)),
        metadata=frontmatter,
    )
