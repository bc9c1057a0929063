"""Note indexing pipeline."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Sequence

import numpy as np

from notefinder.embedding.encoder import EmbeddingModel, EmbeddingUnavailable
from notefinder.index.lexical import FTSIndex
from notefinder.index.storage import SQLiteStore
from notefinder.index.vector_index import VectorIndex
from notefinder.ingestion.note_parser import ParseError, parse
from notefinder.models import ChunkRecord, DocumentRecord, ProcessOutcome
from notefinder.utils.files import DEFAULT_EXTENSIONS, document_id_for_path, file_type_for
from notefinder.utils.text import chunk_text

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexStats:
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    removed: int = 0
    processed_files: list[Path] = field(default_factory=list)

    def increment(self, outcome: ProcessOutcome, path: Path) -> None:
        if outcome is ProcessOutcome.PROCESSED:
            self.processed += 1
        elif outcome is ProcessOutcome.SKIPPED:
            self.skipped += 1
        elif outcome is ProcessOutcome.REMOVED:
            self.removed += 1
        else:
            self.failed += 1
        self.processed_files.append(path)


class KeyedLocks:
    """One lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class Indexer:
    """Coordinates note parsing, chunking, embedding and persistence.

    A document's row, its chunk vectors and its full-text entry are written in
    one store transaction. Work for the same document id is serialized; other
    documents proceed in parallel on a bounded worker pool.
    """

    def __init__(
        self,
        embedder: EmbeddingModel,
        store: SQLiteStore,
        vectors: VectorIndex,
        lexical: FTSIndex,
        *,
        chunk_chars: int = 500,
        overlap: int = 50,
        extensions: Sequence[str] = DEFAULT_EXTENSIONS,
        max_workers: int = 2,
    ) -> None:
        self.embedder = embedder
        self.store = store
        self.vectors = vectors
        self.lexical = lexical
        self.chunk_chars = chunk_chars
        self.overlap = overlap
        self.extensions = tuple(extensions)
        self.max_workers = max(1, max_workers)
        self._doc_locks = KeyedLocks()
        self._pool: ThreadPoolExecutor | None = None
        self._pool_lock = threading.Lock()

    @property
    def executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="indexer"
                )
            return self._pool

    def close(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=True)
                self._pool = None

    def process_file(self, path: Path | str) -> ProcessOutcome:
        """Bring the index entry of one file up to date.

        Parse failures are reported as ``FAILED``; I/O errors other than the
        file having disappeared propagate to the caller.
        """
        path = Path(path).absolute()
        doc_id = document_id_for_path(path)
        with self._doc_locks.hold(doc_id):
            try:
                stat = path.stat()
            except FileNotFoundError:
                LOGGER.info("File vanished, removing from index: %s", path)
                self.store.delete_document(doc_id)
                return ProcessOutcome.REMOVED
            if not path.is_file():
                self.store.delete_document(doc_id)
                return ProcessOutcome.REMOVED

            existing = self.store.get_document(doc_id)
            if existing is not None and existing.mtime >= stat.st_mtime:
                LOGGER.debug("Unchanged, skipping: %s", path)
                return ProcessOutcome.SKIPPED

            try:
                raw = path.read_bytes()
            except FileNotFoundError:
                self.store.delete_document(doc_id)
                return ProcessOutcome.REMOVED
            try:
                parsed = parse(raw, path.stem)
            except ParseError as exc:
                LOGGER.warning("Failed to parse %s: %s", path, exc)
                return ProcessOutcome.FAILED

            document = DocumentRecord(
                id=doc_id,
                path=path,
                file_name=path.name,
                title=parsed.title,
                body=parsed.content,
                size=stat.st_size,
                mtime=stat.st_mtime,
                indexed_at=time.time(),
                word_count=parsed.word_count,
                file_type=file_type_for(path),
                tags=parsed.tags,
                links=parsed.links,
            )
            chunks = self._build_chunks(doc_id, parsed.content)

            with self.store.transaction():
                status = self.store.upsert_document(document)
                self.vectors.upsert_chunks(doc_id, chunks)
                self.lexical.index_document(doc_id, document.title, document.body, document.file_name)

            LOGGER.info("Indexed (%s) %s: %d chunks", status, path, len(chunks))
            return ProcessOutcome.PROCESSED

    def remove_file(self, path: Path | str) -> bool:
        """Drop a file's document, chunks and full-text entry."""
        path = Path(path).absolute()
        doc_id = document_id_for_path(path)
        with self._doc_locks.hold(doc_id):
            removed = self.store.delete_document(doc_id)
        if removed:
            LOGGER.info("Removed from index: %s", path)
        return removed

    def remove_missing(self, present: Sequence[str] | None = None) -> int:
        """Remove documents whose file is gone, or not in ``present`` when given."""
        keep = set(present) if present is not None else None
        removed = 0
        for stored_path in self.store.all_paths():
            missing = stored_path not in keep if keep is not None else not Path(stored_path).exists()
            if missing and self.remove_file(stored_path):
                removed += 1
        return removed

    def clear(self) -> None:
        self.store.clear()

    def reembed_missing(self) -> int:
        """Embed chunks stored while the embedding engine was unavailable."""
        return self._reembed(self.store.documents_missing_embeddings())

    def reembed_all(self) -> int:
        """Regenerate every stored embedding, e.g. after swapping the model."""
        return self._reembed(list(self.store.all_paths().values()))

    def _reembed(self, doc_ids: Sequence[str]) -> int:
        updated = 0
        for doc_id in doc_ids:
            with self._doc_locks.hold(doc_id):
                chunks = self.vectors.get_chunks(doc_id)
                try:
                    embeddings = [self.embedder.embed(chunk.text) for chunk in chunks]
                except EmbeddingUnavailable as exc:
                    LOGGER.warning("Embedding engine unavailable, stopping re-embed: %s", exc)
                    break
                self.vectors.set_embeddings(doc_id, embeddings)
                updated += 1
        return updated

    def _build_chunks(self, doc_id: str, content: str) -> List[ChunkRecord]:
        texts = chunk_text(content, max_chars=self.chunk_chars, overlap=self.overlap)
        embeddings: List[np.ndarray | None]
        try:
            embeddings = [self.embedder.embed(text) for text in texts]
        except EmbeddingUnavailable as exc:
            LOGGER.warning("Storing %s without vectors: %s", doc_id, exc)
            embeddings = [None] * len(texts)

        now = time.time()
        return [
            ChunkRecord(document_id=doc_id, index=i, text=text, embedding=vector, created_at=now)
            for i, (text, vector) in enumerate(zip(texts, embeddings))
        ]
