"""Full-text keyword index backed by SQLite FTS5."""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from typing import List

from notefinder.index.storage import SQLiteStore

LOGGER = logging.getLogger(__name__)

_TERM_RE = re.compile(r"\w+", re.UNICODE)


@dataclass(slots=True)
class LexicalMatch:
    document_id: str
    title: str
    file_name: str
    path: Path
    snippet: str
    rank: float


def build_prefix_query(query: str) -> str:
    """Turn free text into an FTS5 query of quoted prefix terms.

    ``"rust async"`` becomes ``"rust"* "async"*``; punctuation is dropped so
    user input can never inject FTS operators.
    """
    terms = _TERM_RE.findall(query.lower())
    return " ".join(f'"{term}"*' for term in terms)


class FTSIndex:
    """Keyword index over note titles, bodies and file names."""

    def __init__(self, store: SQLiteStore) -> None:
        self.store = store

    def index_document(self, doc_id: str, title: str, body: str, file_name: str) -> None:
        with self.store.transaction() as conn:
            conn.execute("DELETE FROM notes_fts WHERE document_id = ?", (doc_id,))
            conn.execute(
                "INSERT INTO notes_fts(document_id, title, body, file_name) VALUES (?, ?, ?, ?)",
                (doc_id, title, body, file_name),
            )
            self.store.mark_dirty()

    def remove_document(self, doc_id: str) -> None:
        with self.store.transaction() as conn:
            conn.execute("DELETE FROM notes_fts WHERE document_id = ?", (doc_id,))
            self.store.mark_dirty()

    def search(self, query: str, *, limit: int = 20) -> List[LexicalMatch]:
        """Best matches first (lowest bm25), with highlighted body snippets."""
        fts_query = build_prefix_query(query)
        if not fts_query or limit <= 0:
            return []
        try:
            with self.store.reading() as conn:
                rows = conn.execute(
                    """
                    SELECT
                        f.document_id AS document_id,
                        d.title AS title,
                        d.file_name AS file_name,
                        d.path AS path,
                        snippet(notes_fts, 2, '<b>', '</b>', '...', 32) AS snippet,
                        bm25(notes_fts) AS rank
                    FROM notes_fts f
                    JOIN documents d ON d.id = f.document_id
                    WHERE notes_fts MATCH ?
                    ORDER BY rank
                    LIMIT ?
                    """,
                    (fts_query, limit),
                ).fetchall()
        except sqlite3.OperationalError as exc:
            LOGGER.warning("Full-text query %r failed: %s", fts_query, exc)
            return []
        return [
            LexicalMatch(
                document_id=row["document_id"],
                title=row["title"],
                file_name=row["file_name"],
                path=Path(row["path"]),
                snippet=row["snippet"] or "",
                rank=float(row["rank"]),
            )
            for row in rows
        ]
