"""Tests for markdown note parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from notefinder.ingestion.note_parser import (
    ParseError,
    clean_markdown,
    extract_links,
    extract_tags,
    extract_title,
    parse,
    parse_file,
)


class TestExtractTitle:
    """Title selection rules."""

    def test_first_h1_wins(self) -> None:
        text = "intro line\n## Section\n# Real Title\nbody"
        assert extract_title(text, "fallback") == "Real Title"

    def test_first_short_line_without_h1(self) -> None:
        assert extract_title("\n\n## Sub heading\nbody", "fallback") == "Sub heading"

    def test_long_first_line_uses_fallback(self) -> None:
        assert extract_title("x" * 150 + "\nmore", "fallback") == "fallback"

    def test_empty_text_uses_fallback(self) -> None:
        assert extract_title("", "fallback") == "fallback"


class TestCleanMarkdown:
    """Markdown syntax removal."""

    def test_strips_formatting(self) -> None:
        text = "# Title\n\nSome **bold** and *italic* and `code` text."
        assert clean_markdown(text) == "Title Some bold and italic and text."

    def test_removes_code_blocks(self) -> None:
        text = "before\n```python\nprint('hidden')\n```\nafter"
        assert clean_markdown(text) == "before after"

    def test_links_keep_label_images_dropped(self) -> None:
        text = "See [the docs](https://example.com) ![diagram](img.png) and [[Other Note]]."
        cleaned = clean_markdown(text)
        assert "the docs" in cleaned
        assert "https://example.com" not in cleaned
        assert "diagram" not in cleaned
        assert "Other Note" in cleaned
        assert "[[" not in cleaned

    def test_lists_quotes_and_rules(self) -> None:
        text = "- one\n* two\n1. three\n> quoted\n---\nend"
        assert clean_markdown(text) == "one two three quoted end"

    def test_star_list_items_with_emphasis(self) -> None:
        text = "* item with *emph*\n* plain item"
        assert clean_markdown(text) == "item with emph plain item"


class TestTagsAndLinks:
    def test_extract_tags_dedup_in_order(self) -> None:
        text = "#project notes about #rust and #project again"
        assert extract_tags(text) == ["project", "rust"]

    def test_headings_are_not_tags(self) -> None:
        assert extract_tags("# Heading\n## Another") == []

    def test_tags_in_code_ignored(self) -> None:
        assert extract_tags("```\n#include\n```\n#real") == ["real"]

    def test_extract_links(self) -> None:
        assert extract_links("link [[A]] and [[B c]]") == ["A", "B c"]


class TestParse:
    """Full parse of raw note bytes."""

    def test_parse_bytes(self) -> None:
        raw = "# My Note\n\nHello **world** #tag [[Linked]]".encode("utf-8")
        note = parse(raw, "fallback")

        assert note.title == "My Note"
        assert note.content == "My Note Hello world #tag Linked"
        assert note.word_count == 6
        assert note.tags == ["tag"]
        assert note.links == ["Linked"]

    def test_parse_strips_bom(self) -> None:
        note = parse(b"\xef\xbb\xbfplain text", "fallback")
        assert note.title == "plain text"

    def test_invalid_utf8_raises(self) -> None:
        with pytest.raises(ParseError):
            parse(b"\xff\xfe\xfa broken", "fallback")

    def test_nul_bytes_raise(self) -> None:
        with pytest.raises(ParseError):
            parse(b"text\x00binary", "fallback")

    def test_parse_file_uses_stem(self, tmp_path: Path) -> None:
        note_path = tmp_path / "meeting-notes.md"
        note_path.write_text("x" * 200, encoding="utf-8")

        note = parse_file(note_path)

        assert note.title == "meeting-notes"
