"""SQLite persistence for notes, chunk vectors, full-text rows and scan progress."""

from __future__ import annotations

import json
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List

from notefinder.models import DocumentRecord


class SQLiteStore:
    """Shared connection and schema for every persistent table.

    The connection is used from worker threads; all access goes through an
    ``RLock`` that is held for the whole of a transaction so a document's row,
    its chunks and its full-text entry always change together.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL;")
        self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._conn.execute("PRAGMA foreign_keys=ON;")
        self._lock = threading.RLock()
        self._depth = 0
        self._dirty = False
        self._generation = 0
        self._ensure_schema()

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    @property
    def generation(self) -> int:
        """Counter bumped after every committed write transaction."""
        return self._generation

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block atomically. Nested blocks join the outermost one."""
        with self._lock:
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if self._depth == 0:
                    self._conn.rollback()
                    self._dirty = False
                raise
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._conn.commit()
                except BaseException:
                    self._conn.rollback()
                    self._dirty = False
                    raise
                if self._dirty:
                    self._generation += 1
                    self._dirty = False

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            yield self._conn

    def mark_dirty(self) -> None:
        """Flag the current transaction as a write that invalidates read caches."""
        self._dirty = True

    def _ensure_schema(self) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    id TEXT PRIMARY KEY,
                    path TEXT NOT NULL UNIQUE,
                    file_name TEXT NOT NULL,
                    title TEXT NOT NULL,
                    body TEXT NOT NULL,
                    preview TEXT NOT NULL,
                    size INTEGER NOT NULL,
                    mtime REAL NOT NULL,
                    indexed_at REAL NOT NULL,
                    word_count INTEGER NOT NULL,
                    file_type TEXT NOT NULL,
                    tags TEXT NOT NULL DEFAULT '[]',
                    links TEXT NOT NULL DEFAULT '[]'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chunks (
                    id INTEGER PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    chunk_index INTEGER NOT NULL,
                    text TEXT NOT NULL,
                    embedding BLOB,
                    created_at REAL NOT NULL,
                    UNIQUE(document_id, chunk_index),
                    FOREIGN KEY(document_id) REFERENCES documents(id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """CREATE INDEX IF NOT EXISTS idx_chunks_document_id
                    ON chunks(document_id)
                """
            )
            conn.execute(
                """
                CREATE VIRTUAL TABLE IF NOT EXISTS notes_fts USING fts5(
                    document_id UNINDEXED,
                    title,
                    body,
                    file_name,
                    tokenize = 'unicode61'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS scan_progress (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    folder_path TEXT NOT NULL,
                    total_files INTEGER NOT NULL,
                    processed_files INTEGER NOT NULL,
                    last_processed_path TEXT,
                    started_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    status TEXT NOT NULL
                )
                """
            )

    def get_document(self, doc_id: str) -> DocumentRecord | None:
        with self.reading() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (doc_id,)).fetchone()
        return _row_to_document(row) if row else None

    def get_document_by_path(self, path: Path | str) -> DocumentRecord | None:
        with self.reading() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE path = ?", (str(path),)
            ).fetchone()
        return _row_to_document(row) if row else None

    def upsert_document(self, document: DocumentRecord) -> str:
        """Insert or replace a document row.

        Returns:
            'inserted' or 'updated'.
        """
        with self.transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM documents WHERE id = ?", (document.id,)
            ).fetchone()
            values = (
                str(document.path),
                document.file_name,
                document.title,
                document.body,
                document.preview,
                document.size,
                document.mtime,
                document.indexed_at,
                document.word_count,
                document.file_type,
                json.dumps(document.tags, ensure_ascii=True),
                json.dumps(document.links, ensure_ascii=True),
            )
            if existing:
                conn.execute(
                    """
                    UPDATE documents SET path = ?, file_name = ?, title = ?, body = ?,
                        preview = ?, size = ?, mtime = ?, indexed_at = ?, word_count = ?,
                        file_type = ?, tags = ?, links = ?
                    WHERE id = ?
                    """,
                    (*values, document.id),
                )
            else:
                conn.execute(
                    """
                    INSERT INTO documents(path, file_name, title, body, preview, size, mtime,
                        indexed_at, word_count, file_type, tags, links, id)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (*values, document.id),
                )
            self.mark_dirty()
        return "updated" if existing else "inserted"

    def delete_document(self, doc_id: str) -> bool:
        """Delete a document together with its chunks and full-text row."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (doc_id,))
            conn.execute("DELETE FROM notes_fts WHERE document_id = ?", (doc_id,))
            cursor = conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
            self.mark_dirty()
        return cursor.rowcount > 0

    def delete_document_by_path(self, path: Path | str) -> bool:
        with self.reading() as conn:
            row = conn.execute("SELECT id FROM documents WHERE path = ?", (str(path),)).fetchone()
        if row is None:
            return False
        return self.delete_document(row["id"])

    def clear(self) -> None:
        """Remove every document, chunk and full-text row."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM chunks")
            conn.execute("DELETE FROM notes_fts")
            conn.execute("DELETE FROM documents")
            self.mark_dirty()

    def all_paths(self) -> Dict[str, str]:
        """Map of stored path to document id."""
        with self.reading() as conn:
            rows = conn.execute("SELECT id, path FROM documents").fetchall()
        return {row["path"]: row["id"] for row in rows}

    def list_documents(self, limit: int | None = None) -> List[Dict[str, Any]]:
        """List documents, most recently modified first."""
        query = """
            SELECT d.id, d.path, d.file_name, d.title, d.preview, d.size, d.mtime,
                   d.indexed_at, d.word_count, d.file_type,
                   COUNT(c.id) AS chunk_count
            FROM documents d
            LEFT JOIN chunks c ON c.document_id = d.id
            GROUP BY d.id
            ORDER BY d.mtime DESC
        """
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        with self.reading() as conn:
            rows = conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def get_stats(self) -> Dict[str, int]:
        with self.reading() as conn:
            doc_row = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(size), 0) AS total FROM documents"
            ).fetchone()
            chunk_row = conn.execute(
                "SELECT COUNT(*) AS n, COALESCE(SUM(embedding IS NULL), 0) AS missing FROM chunks"
            ).fetchone()
        return {
            "document_count": int(doc_row["n"]),
            "chunk_count": int(chunk_row["n"]),
            "missing_embeddings": int(chunk_row["missing"]),
            "total_size_bytes": int(doc_row["total"]),
        }

    def documents_missing_embeddings(self) -> List[str]:
        with self.reading() as conn:
            rows = conn.execute(
                "SELECT DISTINCT document_id FROM chunks WHERE embedding IS NULL"
            ).fetchall()
        return [row["document_id"] for row in rows]


def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        id=row["id"],
        path=Path(row["path"]),
        file_name=row["file_name"],
        title=row["title"],
        body=row["body"],
        size=row["size"],
        mtime=row["mtime"],
        indexed_at=row["indexed_at"],
        word_count=row["word_count"],
        file_type=row["file_type"],
        tags=json.loads(row["tags"] or "[]"),
        links=json.loads(row["links"] or "[]"),
    )
