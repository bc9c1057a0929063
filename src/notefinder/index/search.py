"""Hybrid keyword and semantic search."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List

from notefinder.embedding.encoder import EmbeddingModel, EmbeddingUnavailable
from notefinder.index.lexical import FTSIndex, LexicalMatch
from notefinder.index.vector_index import DEFAULT_MIN_SCORE, VectorIndex
from notefinder.models import MatchType, SearchResult

LOGGER = logging.getLogger(__name__)

# below DEFAULT_MIN_SCORE, so a keyword hit never outranks a semantic one
DEFAULT_KEYWORD_SCORE = 0.25


class Searcher:
    """High-level API running semantic and keyword queries side by side."""

    def __init__(
        self,
        embedder: EmbeddingModel,
        vectors: VectorIndex,
        lexical: FTSIndex,
        *,
        min_score: float = DEFAULT_MIN_SCORE,
        keyword_score: float = DEFAULT_KEYWORD_SCORE,
    ) -> None:
        self.embedder = embedder
        self.vectors = vectors
        self.lexical = lexical
        self.min_score = min_score
        self.keyword_score = keyword_score

    def search(self, query: str, *, limit: int = 10) -> List[SearchResult]:
        query = query.strip()
        if not query or limit <= 0:
            return []

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="hybrid-search") as pool:
            semantic_future = pool.submit(self.search_semantic, query, limit=limit)
            keyword_future = pool.submit(self.search_keyword, query, limit=limit)
            semantic = semantic_future.result()
            keyword = keyword_future.result()

        return fuse_results(semantic, keyword, limit=limit, keyword_score=self.keyword_score)

    def search_semantic(self, query: str, *, limit: int = 10) -> List[SearchResult]:
        """Vector search; empty when the embedding engine cannot serve."""
        try:
            embedding = self.embedder.embed_query(query)
            return self.vectors.similarity_search(embedding, top_k=limit, min_score=self.min_score)
        except EmbeddingUnavailable as exc:
            LOGGER.info("Semantic search unavailable, using keywords only: %s", exc)
        except Exception:
            LOGGER.exception("Semantic search failed for %r", query)
        return []

    def search_keyword(self, query: str, *, limit: int = 10) -> List[LexicalMatch]:
        try:
            return self.lexical.search(query, limit=limit)
        except Exception:
            LOGGER.exception("Keyword search failed for %r", query)
            return []


def fuse_results(
    semantic: List[SearchResult],
    keyword: List[LexicalMatch],
    *,
    limit: int,
    keyword_score: float = DEFAULT_KEYWORD_SCORE,
) -> List[SearchResult]:
    """Semantic hits first in score order, then unseen keyword hits.

    A semantic hit that also matched by keyword keeps its score and is tagged
    ``MatchType.BOTH``.
    """
    combined: List[SearchResult] = []
    by_id: dict[str, SearchResult] = {}

    for result in sorted(semantic, key=lambda r: r.score, reverse=True):
        if result.document_id in by_id:
            continue
        by_id[result.document_id] = result
        combined.append(result)

    for match in keyword:
        existing = by_id.get(match.document_id)
        if existing is not None:
            if existing.match_type is MatchType.SEMANTIC:
                existing.match_type = MatchType.BOTH
            continue
        result = SearchResult(
            document_id=match.document_id,
            title=match.title,
            file_name=match.file_name,
            path=match.path,
            text=match.snippet,
            score=keyword_score,
            match_type=MatchType.KEYWORD,
        )
        by_id[match.document_id] = result
        combined.append(result)

    return combined[:limit]
