"""Core NoteFinder data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List

import numpy as np


class ScanStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class MatchType(str, Enum):
    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    BOTH = "both"


class ProcessOutcome(str, Enum):
    """Result of pushing a single file through the indexing pipeline."""

    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"
    REMOVED = "removed"


@dataclass(slots=True)
class ParsedNote:
    """Normalized view of a note's raw text."""

    title: str
    content: str
    word_count: int
    tags: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)


@dataclass(slots=True)
class DocumentRecord:
    """A note file as stored in the index."""

    id: str
    path: Path
    file_name: str
    title: str
    body: str
    size: int
    mtime: float
    indexed_at: float
    word_count: int
    file_type: str
    tags: List[str] = field(default_factory=list)
    links: List[str] = field(default_factory=list)

    @property
    def preview(self) -> str:
        return self.body[:200]


@dataclass(slots=True)
class ChunkRecord:
    """Chunk of document text paired with its embedding.

    ``embedding`` is ``None`` when the chunk was stored while the embedding
    engine was unavailable, or when its persisted bytes could not be decoded.
    """

    document_id: str
    index: int
    text: str
    embedding: np.ndarray | None
    created_at: float


@dataclass(slots=True)
class ScanCheckpoint:
    folder_path: str
    total_files: int
    processed_files: int
    last_processed_path: str | None
    started_at: float
    updated_at: float
    status: ScanStatus

    @property
    def is_complete(self) -> bool:
        return self.status is ScanStatus.COMPLETED

    @property
    def progress_percent(self) -> int:
        if self.total_files <= 0:
            return 0
        return (self.processed_files * 100) // self.total_files


@dataclass(slots=True)
class ProgressEvent:
    processed: int
    total: int
    last_path: str | None


@dataclass(slots=True)
class SearchResult:
    document_id: str
    title: str
    file_name: str
    path: Path
    text: str
    score: float
    match_type: MatchType
