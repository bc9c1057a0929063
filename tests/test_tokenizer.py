"""Tests for the WordPiece tokenizer and its cache."""

from __future__ import annotations

import threading
from pathlib import Path

import numpy as np
import pytest

from notefinder.embedding.tokenizer import LRUCache, WordPieceTokenizer

VOCAB = [
    "[PAD]",
    "[UNK]",
    "[CLS]",
    "[SEP]",
    "hello",
    "world",
    "play",
    "##ing",
    "##s",
    "un",
    "##able",
]


@pytest.fixture
def tokenizer() -> WordPieceTokenizer:
    return WordPieceTokenizer(VOCAB)


class TestLRUCache:
    """Test the bounded cache."""

    def test_get_put(self) -> None:
        cache: LRUCache[str, int] = LRUCache(2)
        cache.put("a", 1)

        assert cache.get("a") == 1
        assert cache.get("missing") is None
        assert cache.hits == 1
        assert cache.misses == 1

    def test_evicts_least_recently_used(self) -> None:
        cache: LRUCache[str, int] = LRUCache(2)
        cache.put("a", 1)
        cache.put("b", 2)
        cache.get("a")
        cache.put("c", 3)

        assert "a" in cache
        assert "b" not in cache
        assert "c" in cache
        assert len(cache) == 2

    def test_invalid_size(self) -> None:
        with pytest.raises(ValueError):
            LRUCache(0)

    def test_concurrent_puts_stay_bounded(self) -> None:
        cache: LRUCache[int, int] = LRUCache(50)

        def fill(offset: int) -> None:
            for i in range(200):
                cache.put(offset * 1000 + i, i)

        threads = [threading.Thread(target=fill, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(cache) == 50


class TestWordPieceTokenizer:
    """Test tokenization output."""

    def test_special_token_ids(self, tokenizer: WordPieceTokenizer) -> None:
        assert tokenizer.pad_token_id == 0
        assert tokenizer.unk_token_id == 1
        assert tokenizer.cls_token_id == 2
        assert tokenizer.sep_token_id == 3

    def test_default_special_ids_without_vocab_entries(self) -> None:
        plain = WordPieceTokenizer(["hello"])
        assert plain.unk_token_id == 100
        assert plain.cls_token_id == 101
        assert plain.sep_token_id == 102
        assert plain.pad_token_id == 0

    def test_tokenize_pads_to_max_length(self, tokenizer: WordPieceTokenizer) -> None:
        output = tokenizer.tokenize("Hello playing", 8)

        assert output.input_ids.tolist() == [2, 4, 6, 7, 3, 0, 0, 0]
        assert output.attention_mask.tolist() == [1, 1, 1, 1, 1, 0, 0, 0]
        assert output.token_type_ids.tolist() == [0] * 8
        assert output.input_ids.dtype == np.int64

    def test_output_length_always_max_length(self, tokenizer: WordPieceTokenizer) -> None:
        for text in ["", "hello", "hello " * 100]:
            output = tokenizer.tokenize(text, 16)
            assert output.input_ids.shape == (16,)
            assert output.attention_mask.shape == (16,)

    def test_mask_counts_real_tokens(self, tokenizer: WordPieceTokenizer) -> None:
        output = tokenizer.tokenize("hello world", 10)
        assert int(output.attention_mask.sum()) == 4

    def test_truncation_keeps_sep(self, tokenizer: WordPieceTokenizer) -> None:
        output = tokenizer.tokenize("hello world hello world", 4)

        assert output.input_ids.tolist() == [2, 4, 5, 3]
        assert int(output.attention_mask.sum()) == 4

    def test_deterministic(self, tokenizer: WordPieceTokenizer) -> None:
        first = tokenizer.tokenize("unable plays", 12)
        second = tokenizer.tokenize("unable plays", 12)
        assert np.array_equal(first.input_ids, second.input_ids)

    def test_subword_segmentation(self, tokenizer: WordPieceTokenizer) -> None:
        assert tokenizer.tokenize_word("unable") == (9, 10)
        assert tokenizer.tokenize_word("plays") == (6, 8)

    def test_unknown_characters_emit_unk_and_advance(self, tokenizer: WordPieceTokenizer) -> None:
        """A position with no vocabulary match yields [UNK] and moves on."""
        assert tokenizer.tokenize_word("xyz") == (1, 1, 1)
        assert tokenizer.tokenize_word("xplay") == (1, 1, 1, 1, 1)

    def test_max_length_too_small(self, tokenizer: WordPieceTokenizer) -> None:
        with pytest.raises(ValueError):
            tokenizer.tokenize("hello", 1)

    def test_word_cache_hits(self, tokenizer: WordPieceTokenizer) -> None:
        tokenizer.tokenize_word("playing")
        tokenizer.tokenize_word("playing")

        assert "playing" in tokenizer.cache
        assert tokenizer.cache.hits == 1

    def test_from_file(self, tmp_path: Path) -> None:
        vocab_path = tmp_path / "vocab.txt"
        vocab_path.write_text("\n".join(VOCAB) + "\n", encoding="utf-8")

        loaded = WordPieceTokenizer.from_file(vocab_path)

        assert loaded.vocab["##able"] == 10
        assert loaded.tokenize_word("hello") == (4,)
