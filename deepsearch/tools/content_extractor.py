from __future__ import annotations

import re
from dataclasses import dataclass

from bs4 import BeautifulSoup
from loguru import logger

from deepsearch.errors import ExtractionError

BOILERPLATE_TAGS = (
    "script",
    "style",
    "noscript",
    "nav",
    "header",
    "footer",
    "aside",
    "form",
    "iframe",
    "svg",
)

MIN_CONTENT_CHARS = 40


@dataclass
class ExtractedContent:
    url: str
    title: str
    text: str


def normalize_text(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"\r\n?", "\n", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def truncate(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return text
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


def _extract_title(soup: BeautifulSoup) -> str:
    title = soup.title.string if soup.title and soup.title.string else ""
    return normalize_text(title)


def _extract_with_trafilatura(raw_html: str) -> str:
    import trafilatura

    extracted = trafilatura.extract(raw_html, output_format="txt", include_comments=False)
    if not isinstance(extracted, str):
        return ""
    return normalize_text(extracted)


def _extract_with_soup(soup: BeautifulSoup) -> str:
    for tag in soup(BOILERPLATE_TAGS):
        tag.decompose()
    root = soup.find("main") or soup.find("article") or soup.body or soup
    return normalize_text(root.get_text("\n"))


def extract_main_content(url: str, raw_html: str, *, max_chars: int) -> ExtractedContent:
    """Extract readable main content from an HTML page.

    Trafilatura first; if it finds nothing, strip boilerplate tags with
    BeautifulSoup and take the text of the main/article/body element.
    Raises ExtractionError when neither yields usable text.
    """
    if not raw_html or not raw_html.strip():
        raise ExtractionError(f"Empty response body from {url}")

    soup = BeautifulSoup(raw_html, "html.parser")
    title = _extract_title(soup)

    try:
        text = _extract_with_trafilatura(raw_html)
    except Exception as exc:  # trafilatura raises assorted lxml/parser errors
        logger.debug(f"trafilatura failed on {url}, using soup fallback: {exc}")
        text = ""

    if len(text) < MIN_CONTENT_CHARS:
        text = _extract_with_soup(soup)

    if len(text) < MIN_CONTENT_CHARS:
        raise ExtractionError(f"No readable content found at {url}")

    return ExtractedContent(
        url=url,
        title=title,
        text=truncate(text, max_chars),
    )
