from __future__ import annotations

import pytest

from deepsearch.errors import ExtractionError
from deepsearch.tools.content_extractor import extract_main_content, normalize_text, truncate
from tests.fakes import html_page

BODY = "The committee published its annual findings on river water quality. " * 6


def test_extracts_main_text_and_title():
    result = extract_main_content("https://example.com", html_page("River Report", BODY), max_chars=10000)

    assert result.title == "River Report"
    assert "annual findings on river water quality" in result.text
    assert "var tracking" not in result.text


def test_long_pages_are_truncated():
    result = extract_main_content("https://example.com", html_page("Long", BODY), max_chars=50)

    assert len(result.text) == 53
    assert result.text.endswith("...")


def test_empty_body_raises():
    with pytest.raises(ExtractionError, match="Empty response body"):
        extract_main_content("https://example.com", "   ", max_chars=100)


def test_page_without_readable_text_raises():
    raw = "<html><head><style>p {}</style></head><body><nav>Home</nav><script>go()</script></body></html>"
    with pytest.raises(ExtractionError, match="No readable content"):
        extract_main_content("https://example.com", raw, max_chars=100)


def test_normalize_text_collapses_whitespace():
    assert normalize_text("  a\xa0 b\t\tc\r\n\n\n\nd  ") == "a b c\n\nd"


def test_truncate_leaves_short_text_alone():
    assert truncate("short", 10) == "short"
    assert truncate("anything", 0) == "anything"
