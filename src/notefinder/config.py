"""Application configuration defaults."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Tuple

from notefinder.embedding.encoder import DEFAULT_MODEL, MODEL_FILE, VOCAB_FILE, EmbeddingConfig
from notefinder.index.search import DEFAULT_KEYWORD_SCORE
from notefinder.index.vector_index import DEFAULT_MIN_SCORE
from notefinder.utils.files import DEFAULT_EXTENSIONS


def _get_app_dir() -> Path:
    return Path.home() / "Documents" / "NoteFinder"


def _get_default_db_path() -> Path:
    """Prefer a local data/ database when running from a checkout."""
    local_db = Path("data/notefinder.db")
    if local_db.exists():
        return local_db
    return _get_app_dir() / "notefinder.db"


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    model_dir: Path | None = None
    model_file: str = MODEL_FILE
    vocab_file: str = VOCAB_FILE
    model_name: str = DEFAULT_MODEL
    backend: str = "onnx"
    chunk_chars: int = 500
    overlap: int = 50
    extensions: Tuple[str, ...] = DEFAULT_EXTENSIONS
    min_score: float = DEFAULT_MIN_SCORE
    keyword_score: float = DEFAULT_KEYWORD_SCORE
    debounce_seconds: float = 0.5
    progress_every: int = 10
    progress_interval: float = 2.0
    max_workers: int = 2
    max_attempts: int = 3
    rescan_interval: float = 900.0

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if self.model_dir is None:
            self.model_dir = _get_app_dir() / "models"
        if self.keyword_score >= self.min_score:
            raise ValueError("keyword_score must stay below min_score")

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    def embedding_config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            model_dir=Path(self.model_dir) if self.model_dir is not None else None,
            model_file=self.model_file,
            vocab_file=self.vocab_file,
            model_name=self.model_name,
            backend="torch" if self.backend == "torch" else "onnx",
        )
