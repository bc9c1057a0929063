"""Brute-force vector similarity over stored chunk embeddings.

Stored and query vectors are unit length, so a dot product is the cosine
similarity. Every query scans all vectors, which is fine below roughly ten
thousand chunks; past that an approximate index would be needed.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence

import numpy as np

from notefinder.embedding.encoder import (
    CorruptEmbeddingError,
    deserialize_embedding,
    serialize_embedding,
)
from notefinder.index.storage import SQLiteStore
from notefinder.models import ChunkRecord, MatchType, SearchResult

LOGGER = logging.getLogger(__name__)

DEFAULT_MIN_SCORE = 0.3
MIN_SHARD_SIZE = 256


@dataclass(slots=True)
class _ChunkMeta:
    document_id: str
    chunk_index: int
    text: str
    title: str
    file_name: str
    path: str


@dataclass(slots=True)
class _Snapshot:
    generation: int
    meta: List[_ChunkMeta]
    matrix: np.ndarray


class VectorIndex:
    """Chunk vectors keyed by document id and chunk position."""

    def __init__(self, store: SQLiteStore, *, dimension: int, shards: int = 4) -> None:
        self.store = store
        self.dimension = dimension
        self.shards = max(1, shards)
        self._snapshot: _Snapshot | None = None
        self._snapshot_lock = threading.Lock()

    def upsert_chunks(self, doc_id: str, chunks: Sequence[ChunkRecord]) -> None:
        """Replace every chunk of a document.

        Chunk positions must run 0..n-1 in order.
        """
        for expected, chunk in enumerate(chunks):
            if chunk.index != expected:
                raise ValueError(
                    f"Chunk positions for {doc_id} must be contiguous from 0, got {chunk.index} at {expected}"
                )
            if chunk.document_id != doc_id:
                raise ValueError(f"Chunk belongs to {chunk.document_id}, not {doc_id}")

        with self.store.transaction() as conn:
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (doc_id,))
            conn.executemany(
                """
                INSERT INTO chunks(document_id, chunk_index, text, embedding, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        doc_id,
                        chunk.index,
                        chunk.text,
                        self._encode(chunk.embedding),
                        chunk.created_at,
                    )
                    for chunk in chunks
                ],
            )
            self.store.mark_dirty()

    def set_embeddings(self, doc_id: str, embeddings: Sequence[np.ndarray | None]) -> None:
        """Overwrite the vectors of a document's existing chunks, by position."""
        with self.store.transaction() as conn:
            conn.executemany(
                "UPDATE chunks SET embedding = ? WHERE document_id = ? AND chunk_index = ?",
                [(self._encode(vector), doc_id, index) for index, vector in enumerate(embeddings)],
            )
            self.store.mark_dirty()

    def delete_document(self, doc_id: str) -> None:
        with self.store.transaction() as conn:
            conn.execute("DELETE FROM chunks WHERE document_id = ?", (doc_id,))
            self.store.mark_dirty()

    def get_chunks(self, doc_id: str) -> List[ChunkRecord]:
        with self.store.reading() as conn:
            rows = conn.execute(
                """
                SELECT document_id, chunk_index, text, embedding, created_at
                FROM chunks WHERE document_id = ? ORDER BY chunk_index
                """,
                (doc_id,),
            ).fetchall()
        return [
            ChunkRecord(
                document_id=row["document_id"],
                index=row["chunk_index"],
                text=row["text"],
                embedding=self._decode(row["embedding"], row["document_id"], row["chunk_index"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def similarity_search(
        self,
        query: np.ndarray,
        *,
        top_k: int = 10,
        min_score: float = DEFAULT_MIN_SCORE,
    ) -> List[SearchResult]:
        """Rank documents by their best chunk's dot product with ``query``."""
        if top_k <= 0:
            return []
        snapshot = self._current_snapshot()
        if not snapshot.meta:
            return []

        query = np.asarray(query, dtype=np.float32)
        if query.shape[0] != self.dimension:
            raise ValueError(f"Query has {query.shape[0]} dimensions, expected {self.dimension}")

        hits: list[tuple[float, int]] = []
        for shard_hits in self._scan(snapshot.matrix, query, min_score):
            hits.extend(shard_hits)
        hits.sort(key=lambda hit: hit[0], reverse=True)

        results: List[SearchResult] = []
        seen: set[str] = set()
        for score, row in hits:
            meta = snapshot.meta[row]
            if meta.document_id in seen:
                continue
            seen.add(meta.document_id)
            results.append(
                SearchResult(
                    document_id=meta.document_id,
                    title=meta.title,
                    file_name=meta.file_name,
                    path=Path(meta.path),
                    text=meta.text,
                    score=score,
                    match_type=MatchType.SEMANTIC,
                )
            )
            if len(results) >= top_k:
                break
        return results

    def _scan(self, matrix: np.ndarray, query: np.ndarray, min_score: float):
        bounds = _shard_bounds(matrix.shape[0], self.shards)
        if len(bounds) == 1:
            return [_score_shard(matrix, query, min_score, 0)]
        with ThreadPoolExecutor(max_workers=len(bounds), thread_name_prefix="vector-scan") as pool:
            futures = [
                pool.submit(_score_shard, matrix[start:end], query, min_score, start)
                for start, end in bounds
            ]
            return [future.result() for future in futures]

    def _current_snapshot(self) -> _Snapshot:
        with self._snapshot_lock:
            generation = self.store.generation
            if self._snapshot is not None and self._snapshot.generation == generation:
                return self._snapshot
            self._snapshot = self._load_snapshot(generation)
            return self._snapshot

    def _load_snapshot(self, generation: int) -> _Snapshot:
        with self.store.reading() as conn:
            rows = conn.execute(
                """
                SELECT
                    c.document_id AS document_id,
                    c.chunk_index AS chunk_index,
                    c.text AS text,
                    c.embedding AS embedding,
                    d.title AS title,
                    d.file_name AS file_name,
                    d.path AS path
                FROM chunks c
                JOIN documents d ON d.id = c.document_id
                WHERE c.embedding IS NOT NULL
                """
            ).fetchall()

        meta: List[_ChunkMeta] = []
        vectors: List[np.ndarray] = []
        for row in rows:
            vector = self._decode(row["embedding"], row["document_id"], row["chunk_index"])
            if vector is None:
                continue
            vectors.append(vector)
            meta.append(
                _ChunkMeta(
                    document_id=row["document_id"],
                    chunk_index=row["chunk_index"],
                    text=row["text"],
                    title=row["title"],
                    file_name=row["file_name"],
                    path=row["path"],
                )
            )
        matrix = (
            np.vstack(vectors) if vectors else np.empty((0, self.dimension), dtype=np.float32)
        )
        LOGGER.debug("Loaded %d chunk vectors (generation %d)", len(meta), generation)
        return _Snapshot(generation=generation, meta=meta, matrix=matrix)

    def _encode(self, vector: np.ndarray | None) -> bytes | None:
        if vector is None:
            return None
        vector = np.asarray(vector, dtype=np.float32)
        if vector.shape != (self.dimension,):
            raise ValueError(f"Embedding has shape {vector.shape}, expected ({self.dimension},)")
        return serialize_embedding(vector)

    def _decode(self, blob: bytes | None, doc_id: str, chunk_index: int) -> np.ndarray | None:
        if blob is None:
            return None
        try:
            return deserialize_embedding(blob, self.dimension)
        except CorruptEmbeddingError as exc:
            LOGGER.warning("Ignoring corrupt vector for %s chunk %d: %s", doc_id, chunk_index, exc)
            return None


def _shard_bounds(total: int, shards: int) -> list[tuple[int, int]]:
    count = max(1, min(shards, total // MIN_SHARD_SIZE))
    size = -(-total // count)
    return [(start, min(start + size, total)) for start in range(0, total, size)]


def _score_shard(
    matrix: np.ndarray, query: np.ndarray, min_score: float, offset: int
) -> list[tuple[float, int]]:
    scores = matrix @ query
    keep = np.nonzero(scores >= min_score)[0]
    return [(float(scores[i]), int(i) + offset) for i in keep]
