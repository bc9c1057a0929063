"""Tests for application configuration."""

from __future__ import annotations

from pathlib import Path

import pytest

from notefinder.config import AppConfig


class TestAppConfig:
    """Test AppConfig dataclass."""

    def test_default_config(self) -> None:
        """Should create config with default values."""
        config = AppConfig()

        assert config.db_path is not None
        assert config.model_dir is not None
        assert config.model_name == "sentence-transformers/all-MiniLM-L6-v2"
        assert config.chunk_chars == 500
        assert config.overlap == 50
        assert config.min_score == 0.3
        assert config.keyword_score < config.min_score
        assert config.debounce_seconds == 0.5
        assert config.progress_every == 10
        assert config.progress_interval == 2.0
        assert config.max_attempts == 3

    def test_custom_config(self) -> None:
        config = AppConfig(db_path=Path("/custom/path.db"), chunk_chars=800, overlap=100)

        assert config.db_path == Path("/custom/path.db")
        assert config.chunk_chars == 800
        assert config.overlap == 100

    def test_keyword_score_must_stay_below_min_score(self) -> None:
        """Keyword hits may never outrank semantic hits."""
        with pytest.raises(ValueError):
            AppConfig(min_score=0.3, keyword_score=0.3)

    def test_resolve_db_path_absolute(self) -> None:
        config = AppConfig(db_path=Path("/absolute/path/db.db"))

        assert config.resolve_db_path(Path("/elsewhere")) == Path("/absolute/path/db.db")

    def test_resolve_db_path_relative_no_base(self) -> None:
        config = AppConfig(db_path=Path("relative/db.db"))

        assert config.resolve_db_path(base_dir=None) == Path("relative/db.db")

    def test_resolve_db_path_relative_with_base(self) -> None:
        config = AppConfig(db_path=Path("relative/db.db"))

        resolved = config.resolve_db_path(base_dir=Path("/base/directory"))

        assert resolved == Path("/base/directory/relative/db.db")

    def test_embedding_config(self, tmp_path: Path) -> None:
        """Model settings are carried over to the embedding engine."""
        config = AppConfig(model_dir=tmp_path, backend="torch")

        embedding = config.embedding_config()

        assert embedding.model_dir == tmp_path
        assert embedding.backend == "torch"
        assert embedding.model_path == tmp_path / config.model_file
        assert embedding.vocab_path == tmp_path / config.vocab_file
