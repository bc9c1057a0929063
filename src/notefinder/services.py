"""Wiring of the indexing and search components around one database."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from notefinder.config import AppConfig
from notefinder.embedding.encoder import EmbeddingModel
from notefinder.index.checkpoint import CheckpointStore
from notefinder.index.indexer import Indexer
from notefinder.index.lexical import FTSIndex
from notefinder.index.scanner import ProgressSink, ScanManager
from notefinder.index.search import Searcher
from notefinder.index.storage import SQLiteStore
from notefinder.index.vector_index import VectorIndex
from notefinder.watch.watcher import ChangeWatcher


@dataclass(slots=True)
class Services:
    config: AppConfig
    store: SQLiteStore
    embedder: EmbeddingModel
    vectors: VectorIndex
    lexical: FTSIndex
    checkpoints: CheckpointStore
    indexer: Indexer
    searcher: Searcher
    scanner: ScanManager

    def watcher_for(self, folder: Path | str) -> ChangeWatcher:
        return ChangeWatcher.for_indexer(
            folder, self.indexer, debounce=self.config.debounce_seconds
        )

    def close(self) -> None:
        self.indexer.close()
        self.embedder.close()
        self.store.close()


def build_services(
    config: AppConfig,
    *,
    db_path: Path | None = None,
    progress_sink: ProgressSink | None = None,
) -> Services:
    resolved_db = db_path or config.resolve_db_path(Path.cwd())
    store = SQLiteStore(resolved_db)
    embedder = EmbeddingModel(config.embedding_config())
    vectors = VectorIndex(store, dimension=embedder.dimension)
    lexical = FTSIndex(store)
    checkpoints = CheckpointStore(store)
    indexer = Indexer(
        embedder,
        store,
        vectors,
        lexical,
        chunk_chars=config.chunk_chars,
        overlap=config.overlap,
        extensions=config.extensions,
        max_workers=config.max_workers,
    )
    searcher = Searcher(
        embedder,
        vectors,
        lexical,
        min_score=config.min_score,
        keyword_score=config.keyword_score,
    )
    scanner = ScanManager(
        indexer,
        checkpoints,
        progress_every=config.progress_every,
        progress_interval=config.progress_interval,
        progress_sink=progress_sink,
    )
    return Services(
        config=config,
        store=store,
        embedder=embedder,
        vectors=vectors,
        lexical=lexical,
        checkpoints=checkpoints,
        indexer=indexer,
        searcher=searcher,
        scanner=scanner,
    )
