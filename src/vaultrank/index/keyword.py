"""Keyword index for lexical scoring via Tantivy.

Tantivy's ``default`` tokenizer case-folds and splits on punctuation, and
its scorer is BM25: saturating term frequency, length normalisation and an
inverse-document-frequency penalty for ubiquitous terms.

On top of BM25 two discrete boosts are applied, since a title hit is
stronger evidence than a body hit of equal frequency:

- title match: every query term occurs in the note title
- exact phrase: a multi-term query occurs verbatim in the title or body

Storage: <index>/keyword/ (Tantivy segment files)
"""

from __future__ import annotations

import re
import shutil
import time
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import structlog
import tantivy

from vaultrank.config.constants import EXACT_PHRASE_BOOST, MIN_QUERY_CHARS, TITLE_MATCH_BOOST
from vaultrank.core.errors import IndexCorruption

log = structlog.get_logger()

KEYWORD_SUBDIR = "keyword"

_TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)


def tokenize(text: str) -> list[str]:
    """Case-folded alphanumeric tokens, matching Tantivy's default tokenizer."""
    return [t.lower() for t in _TOKEN_RE.findall(text)]


@dataclass(frozen=True)
class KeywordHit:
    """One keyword match. ``score`` is BM25 plus any discrete boosts."""

    doc_id: str
    score: float
    bm25: float
    title_match: bool
    phrase_match: bool


class KeywordIndex:
    """
    Full-text index over note titles and bodies.

    Supports staged writes so one maintenance batch commits once:
    - stage_document() / stage_remove() buffer changes in memory
    - commit_staged() applies them in a single Tantivy commit

    Usage::

        index = KeywordIndex(index_path)
        index.open()
        index.stage_document("notes/a.md", "A", "body text")
        index.commit_staged()
        hits = index.search("body", limit=10)
    """

    def __init__(self, index_path: Path | str):
        self.index_path = Path(index_path) / KEYWORD_SUBDIR
        self._index: Any = None
        self._schema: Any = None
        self._staged_adds: dict[str, tuple[str, str]] = {}
        self._staged_removes: set[str] = set()

    def _build_schema(self) -> Any:
        schema_builder = tantivy.SchemaBuilder()
        schema_builder.add_text_field("doc_id", stored=True, tokenizer_name="raw")
        schema_builder.add_text_field("title", stored=True, tokenizer_name="default")
        schema_builder.add_text_field("body", stored=False, tokenizer_name="default")
        return schema_builder.build()

    def open(self) -> None:
        """Open (or create) the on-disk index.

        Raises:
            IndexCorruption: the existing index could not be opened. It has
                been wiped and recreated empty, so callers must re-add every
                document.
        """
        if self._index is not None:
            return
        self._schema = self._build_schema()
        self.index_path.mkdir(parents=True, exist_ok=True)
        try:
            self._index = tantivy.Index(self._schema, path=str(self.index_path))
        except (OSError, ValueError) as e:
            log.warning("keyword.open_failed", path=str(self.index_path), error=str(e))
            shutil.rmtree(self.index_path, ignore_errors=True)
            self.index_path.mkdir(parents=True, exist_ok=True)
            self._index = tantivy.Index(self._schema, path=str(self.index_path))
            raise IndexCorruption.unreadable(str(self.index_path), str(e)) from e

    def _ensure_open(self) -> None:
        if self._index is None:
            self.open()

    # =========================================================================
    # Staged Operations
    # =========================================================================

    def stage_document(self, doc_id: str, title: str, body: str) -> None:
        """Stage a document (add or replace) for the next commit."""
        self._staged_removes.discard(doc_id)
        self._staged_adds[doc_id] = (title, body)

    def stage_remove(self, doc_id: str) -> None:
        """Stage a document removal for the next commit."""
        self._staged_adds.pop(doc_id, None)
        self._staged_removes.add(doc_id)

    def has_staged_changes(self) -> bool:
        return bool(self._staged_adds or self._staged_removes)

    def commit_staged(self) -> int:
        """Commit staged changes atomically. Returns documents affected."""
        if not self.has_staged_changes():
            return 0
        self._ensure_open()

        writer = self._index.writer()
        count = 0
        try:
            for doc_id in self._staged_removes:
                writer.delete_documents_by_term("doc_id", doc_id)
                count += 1
            for doc_id, (title, body) in self._staged_adds.items():
                writer.delete_documents_by_term("doc_id", doc_id)
                doc = tantivy.Document()
                doc.add_text("doc_id", doc_id)
                doc.add_text("title", title)
                doc.add_text("body", body)
                writer.add_document(doc)
                count += 1
            writer.commit()
        finally:
            self._staged_adds.clear()
            self._staged_removes.clear()

        self._index.reload()
        log.debug("keyword.committed", documents=count)
        return count

    def discard_staged(self) -> int:
        count = len(self._staged_adds) + len(self._staged_removes)
        self._staged_adds.clear()
        self._staged_removes.clear()
        return count

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: str,
        limit: int = 100,
        *,
        paths: Iterable[str] | None = None,
    ) -> list[KeywordHit]:
        """Rank documents for ``query``.

        Terms are OR-ed, so a document matching any term is a candidate.
        Results are sorted by boosted score descending, then document id.
        ``paths`` restricts results to the given document ids.
        """
        tokens = tokenize(query)
        if len(query.strip()) < MIN_QUERY_CHARS or not tokens:
            return []
        self._ensure_open()
        start = time.monotonic()

        allowed = set(paths) if paths is not None else None
        unique_terms = list(dict.fromkeys(tokens))

        searcher = self._index.searcher()
        if searcher.num_docs == 0:
            return []
        parsed = self._index.parse_query(" OR ".join(unique_terms), ["title", "body"])
        fetch = searcher.num_docs if allowed is not None else max(limit, 1)
        top_docs = searcher.search(parsed, limit=fetch).hits

        phrase_ids: set[str] = set()
        if len(tokens) > 1:
            phrase = self._index.parse_query(f'"{" ".join(tokens)}"', ["title", "body"])
            for _score, addr in searcher.search(phrase, limit=max(searcher.num_docs, 1)).hits:
                phrase_ids.add(searcher.doc(addr).get_first("doc_id"))

        term_set = set(unique_terms)
        hits: list[KeywordHit] = []
        for score, addr in top_docs:
            doc = searcher.doc(addr)
            doc_id = doc.get_first("doc_id") or ""
            if allowed is not None and doc_id not in allowed:
                continue
            title = doc.get_first("title") or ""
            title_match = term_set <= set(tokenize(title))
            phrase_match = doc_id in phrase_ids
            boosted = float(score)
            if title_match:
                boosted += TITLE_MATCH_BOOST
            if phrase_match:
                boosted += EXACT_PHRASE_BOOST
            hits.append(
                KeywordHit(
                    doc_id=doc_id,
                    score=boosted,
                    bm25=float(score),
                    title_match=title_match,
                    phrase_match=phrase_match,
                )
            )

        hits.sort(key=lambda h: (-h.score, h.doc_id))
        log.debug(
            "keyword.search",
            terms=len(unique_terms),
            hits=len(hits),
            elapsed_ms=round((time.monotonic() - start) * 1000),
        )
        return hits[:limit]

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def clear(self) -> None:
        """Remove every document from the index."""
        self._ensure_open()
        writer = self._index.writer()
        writer.delete_all_documents()
        writer.commit()
        self._index.reload()
        self.discard_staged()

    def reload(self) -> None:
        """Reload the index to see latest changes."""
        if self._index:
            self._index.reload()

    def doc_count(self) -> int:
        self._ensure_open()
        searcher = self._index.searcher()
        return int(searcher.num_docs)
