"""Markdown and plain-text note parsing.

Turns the raw bytes of a note into a :class:`ParsedNote`: a title, the body
with markdown syntax stripped (what gets chunked and embedded), tags, wiki
links and a word count.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import List

from notefinder.models import ParsedNote
from notefinder.utils.text import collapse_whitespace, count_words

LOGGER = logging.getLogger(__name__)

MAX_TITLE_LINE = 100

_FENCED_CODE_RE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE_RE = re.compile(r"`[^`\n]+`")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+", re.MULTILINE)
_BOLD_STAR_RE = re.compile(r"\*\*([^*]+)\*\*")
_ITALIC_STAR_RE = re.compile(r"\*(?!\s)([^*\n]+)\*")
_BOLD_UNDERSCORE_RE = re.compile(r"(?<!\w)__([^_]+)__(?!\w)")
_ITALIC_UNDERSCORE_RE = re.compile(r"(?<!\w)_([^_\n]+)_(?!\w)")
_IMAGE_RE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_LINK_RE = re.compile(r"\[([^\]]+)\]\([^)]*\)")
_WIKI_LINK_RE = re.compile(r"\[\[([^\]]+)\]\]")
_RULE_RE = re.compile(r"^\s*[-*_]{3,}\s*$", re.MULTILINE)
_BULLET_RE = re.compile(r"^\s*[-*+]\s+", re.MULTILINE)
_ORDERED_RE = re.compile(r"^\s*\d+\.\s+", re.MULTILINE)
_QUOTE_RE = re.compile(r"^\s*>+\s*", re.MULTILINE)
_TAG_RE = re.compile(r"(?<![\w#/&])#([A-Za-z][A-Za-z0-9_-]*)")


class ParseError(ValueError):
    """Raised when a note cannot be decoded as text."""


def parse(raw: bytes | str, fallback_title: str) -> ParsedNote:
    """Parse raw note content.

    Raises:
        ParseError: if the bytes are not valid UTF-8 or look like binary data.
    """
    text = _decode(raw)
    body = clean_markdown(text)
    return ParsedNote(
        title=extract_title(text, fallback_title),
        content=body,
        word_count=count_words(body),
        tags=extract_tags(text),
        links=extract_links(text),
    )


def parse_file(path: Path) -> ParsedNote:
    """Read and parse a note file, using the file stem as fallback title."""
    return parse(path.read_bytes(), path.stem)


def _decode(raw: bytes | str) -> str:
    if isinstance(raw, str):
        text = raw
    else:
        try:
            text = raw.decode("utf-8-sig")
        except UnicodeDecodeError as exc:
            raise ParseError(f"Invalid UTF-8 at byte {exc.start}") from exc
    if "\x00" in text:
        raise ParseError("Content contains NUL bytes, not a text file")
    return text


def extract_title(text: str, fallback: str) -> str:
    lines = text.splitlines()
    for line in lines:
        stripped = line.strip()
        if stripped.startswith("# "):
            return stripped[2:].strip() or fallback

    first = next((line.strip() for line in lines if line.strip()), None)
    if first is not None and len(first) < MAX_TITLE_LINE:
        return first.lstrip("#").strip() or fallback
    return fallback


def clean_markdown(text: str) -> str:
    """Strip markdown syntax while keeping the readable text."""
    cleaned = _FENCED_CODE_RE.sub(" ", text)
    cleaned = _INLINE_CODE_RE.sub(" ", cleaned)
    cleaned = _HEADING_RE.sub("", cleaned)
    cleaned = _BOLD_STAR_RE.sub(r"\1", cleaned)
    cleaned = _ITALIC_STAR_RE.sub(r"\1", cleaned)
    cleaned = _BOLD_UNDERSCORE_RE.sub(r"\1", cleaned)
    cleaned = _ITALIC_UNDERSCORE_RE.sub(r"\1", cleaned)
    # images first, otherwise the link pattern unwraps their alt text
    cleaned = _IMAGE_RE.sub(" ", cleaned)
    cleaned = _LINK_RE.sub(r"\1", cleaned)
    cleaned = _WIKI_LINK_RE.sub(r"\1", cleaned)
    cleaned = _RULE_RE.sub(" ", cleaned)
    cleaned = _BULLET_RE.sub("", cleaned)
    cleaned = _ORDERED_RE.sub("", cleaned)
    cleaned = _QUOTE_RE.sub("", cleaned)
    return collapse_whitespace(cleaned)


def extract_tags(text: str) -> List[str]:
    text = _FENCED_CODE_RE.sub(" ", text)
    tags: List[str] = []
    for match in _TAG_RE.finditer(text):
        tag = match.group(1)
        if tag not in tags:
            tags.append(tag)
    return tags


def extract_links(text: str) -> List[str]:
    return [match.group(1) for match in _WIKI_LINK_RE.finditer(text)]
