"""Utility helpers for working with files."""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Iterable, Iterator, Sequence

DEFAULT_EXTENSIONS = (".md", ".txt")


def is_note_path(path: Path | str, extensions: Sequence[str] = DEFAULT_EXTENSIONS) -> bool:
    """Return True when the path carries one of the recognized note extensions."""
    suffix = Path(path).suffix.lower()
    return suffix in {ext.lower() for ext in extensions}


def iter_note_paths(
    inputs: Iterable[Path], extensions: Sequence[str] = DEFAULT_EXTENSIONS
) -> Iterator[Path]:
    """Yield note paths from input paths, descending into directories."""
    for item in inputs:
        if item.is_dir():
            yield from iter_note_paths(
                sorted(child for child in item.rglob("*") if child.is_file()), extensions
            )
        elif item.is_file() and is_note_path(item, extensions):
            yield item


def list_note_files(folder: Path, extensions: Sequence[str] = DEFAULT_EXTENSIONS) -> list[str]:
    """Return absolute note paths under ``folder`` sorted by plain string order.

    Scans and resumes compare paths with ``<`` on these strings, so both must
    come from this function.
    """
    root = Path(folder).absolute()
    return sorted(str(path.absolute()) for path in iter_note_paths([root], extensions))


def document_id_for_path(path: Path | str) -> str:
    """Stable 128-bit identifier for a note path, hex encoded."""
    digest = hashlib.sha256(str(path).encode("utf-8")).digest()
    return digest[:16].hex()


def file_type_for(path: Path | str) -> str:
    return "markdown" if Path(path).suffix.lower() in {".md", ".markdown"} else "plain"
