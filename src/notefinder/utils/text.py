"""Text helpers including sentence-aware chunking."""

from __future__ import annotations

import re
from typing import List

_WHITESPACE_RE = re.compile(r"\s+")


def chunk_text(text: str, *, max_chars: int = 500, overlap: int = 50) -> List[str]:
    """Split text into overlapping chunks that prefer to end on a sentence.

    Each window covers ``[start, start + max_chars)``. When the last period in
    the window lies past its midpoint the chunk ends right after it, otherwise
    at the hard boundary. The next window starts ``overlap`` characters before
    the cut.
    """
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if overlap < 0:
        raise ValueError("overlap must not be negative")

    if len(text) <= max_chars:
        return [text] if text.strip() else []

    chunks: List[str] = []
    start = 0
    length = len(text)
    while start < length:
        end = min(start + max_chars, length)
        window = text[start:end]
        last_period = window.rfind(".")
        cut = start + last_period + 1 if last_period > max_chars // 2 else end

        piece = text[start:cut].strip()
        if piece:
            chunks.append(piece)

        if cut >= length:
            break
        # start must strictly advance or a large overlap would loop forever
        start = max(cut - overlap, start + 1)

    return chunks


def collapse_whitespace(text: str) -> str:
    """Collapse every whitespace run to a single space."""
    return _WHITESPACE_RE.sub(" ", text).strip()


def count_words(text: str) -> int:
    return sum(1 for token in text.split() if token.strip())
