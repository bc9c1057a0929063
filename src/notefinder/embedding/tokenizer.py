"""WordPiece tokenizer for BERT-style encoders.

Handles lower-casing, whitespace word splitting, greedy longest-match subword
segmentation with ``##`` continuation pieces, the ``[CLS]``/``[SEP]``
sentinels, truncation and right padding.
"""

from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Hashable, Iterable, Sequence, Tuple, TypeVar

import numpy as np

CONTINUATION_PREFIX = "##"

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class LRUCache(Generic[K, V]):
    """Bounded least-recently-used mapping safe for concurrent use."""

    def __init__(self, maxsize: int = 10_000) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be positive")
        self.maxsize = maxsize
        self._data: OrderedDict[K, V] = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: K) -> V | None:
        with self._lock:
            try:
                value = self._data[key]
            except KeyError:
                self.misses += 1
                return None
            self._data.move_to_end(key)
            self.hits += 1
            return value

    def put(self, key: K, value: V) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            while len(self._data) > self.maxsize:
                self._data.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data


@dataclass(slots=True)
class TokenizerOutput:
    input_ids: np.ndarray
    attention_mask: np.ndarray
    token_type_ids: np.ndarray


class WordPieceTokenizer:
    """Greedy longest-match WordPiece tokenizer over a line-oriented vocabulary."""

    def __init__(self, vocab: Sequence[str], *, cache_size: int = 10_000) -> None:
        self.vocab = {token: index for index, token in enumerate(vocab)}
        self.unk_token_id = self.vocab.get("[UNK]", 100)
        self.cls_token_id = self.vocab.get("[CLS]", 101)
        self.sep_token_id = self.vocab.get("[SEP]", 102)
        self.pad_token_id = self.vocab.get("[PAD]", 0)
        self._cache: LRUCache[str, Tuple[int, ...]] = LRUCache(cache_size)

    @classmethod
    def from_lines(cls, lines: Iterable[str], **kwargs) -> "WordPieceTokenizer":
        return cls([line.rstrip("\r\n") for line in lines], **kwargs)

    @classmethod
    def from_file(cls, path: Path, **kwargs) -> "WordPieceTokenizer":
        with Path(path).open("r", encoding="utf-8") as handle:
            return cls.from_lines(handle, **kwargs)

    @property
    def cache(self) -> LRUCache[str, Tuple[int, ...]]:
        return self._cache

    def tokenize(self, text: str, max_length: int) -> TokenizerOutput:
        """Encode ``text`` into exactly ``max_length`` ids, mask and type ids."""
        if max_length < 2:
            raise ValueError("max_length must leave room for [CLS] and [SEP]")

        tokens = [self.cls_token_id]
        limit = max_length - 1
        for word in text.lower().strip().split():
            if len(tokens) >= limit:
                break
            for token_id in self.tokenize_word(word):
                if len(tokens) >= limit:
                    break
                tokens.append(token_id)
        tokens.append(self.sep_token_id)

        real = len(tokens)
        input_ids = np.full(max_length, self.pad_token_id, dtype=np.int64)
        input_ids[:real] = tokens
        attention_mask = np.zeros(max_length, dtype=np.int64)
        attention_mask[:real] = 1
        token_type_ids = np.zeros(max_length, dtype=np.int64)
        return TokenizerOutput(input_ids, attention_mask, token_type_ids)

    def tokenize_word(self, word: str) -> Tuple[int, ...]:
        if not word:
            return ()
        cached = self._cache.get(word)
        if cached is not None:
            return cached
        pieces = self._segment(word)
        self._cache.put(word, pieces)
        return pieces

    def _segment(self, word: str) -> Tuple[int, ...]:
        whole = self.vocab.get(word)
        if whole is not None:
            return (whole,)

        pieces: list[int] = []
        position = 0
        while position < len(word):
            for end in range(len(word), position, -1):
                candidate = word[position:end]
                if pieces:
                    candidate = CONTINUATION_PREFIX + candidate
                token_id = self.vocab.get(candidate)
                if token_id is not None:
                    pieces.append(token_id)
                    position = end
                    break
            else:
                pieces.append(self.unk_token_id)
                position += 1
        return tuple(pieces)
