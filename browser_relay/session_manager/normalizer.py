"""HTML to Markdown conversion with noise removal.

Two modes are supported:

- ``basic``: drop non-content elements and convert the whole document.
- ``semantic``: additionally scope to the main content region and drop
  page chrome (navigation, headers, footers, sidebars, forms).

``ContentNormalizer.normalize`` never raises. If parsing or conversion fails
the result falls back to plain text extracted with regular expressions.
"""

from __future__ import annotations

import html as _html
import logging
import re
import sys
from dataclasses import dataclass

from bs4 import BeautifulSoup, Comment
from markdownify import ATX, MarkdownConverter

logger = logging.getLogger(__name__)
if not logger.handlers:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(logging.INFO)

NOISE_TAGS = [
    "script", "style", "noscript", "iframe", "frame", "object",
    "embed", "canvas", "video", "audio", "svg", "template",
]
NOISE_SELECTORS = ["[hidden]", '[aria-hidden="true"]']
CHROME_TAGS = ["nav", "header", "footer", "aside", "form"]
MAIN_CONTENT_SELECTOR = 'main, article, [role="main"], #main, .main-content'

_DISPLAY_NONE = re.compile(r"display\s*:\s*none", re.I)
_MARKUP_HINT = re.compile(
    r"<(!doctype|html|head|body|div|p|span|a|ul|ol|li|table|section|article|main|h[1-6])\b",
    re.I,
)


@dataclass
class NormalizedContent:
    text: str
    title: str = ""
    mode: str = "semantic"
    fallback: bool = False

    @property
    def word_count(self) -> int:
        return len(self.text.split())


class _RelayMarkdownConverter(MarkdownConverter):
    """markdownify with ``_`` emphasis and ``[label]`` for buttons and inputs."""

    def convert_em(self, el, text, *args, **kwargs):
        text = (text or "").strip()
        return f"_{text}_" if text else ""

    convert_i = convert_em

    def convert_button(self, el, text, *args, **kwargs):
        label = (el.get_text(" ", strip=True) or el.get("value") or "").strip()
        return f"[{label}]" if label else ""

    def convert_input(self, el, text, *args, **kwargs):
        if (el.get("type") or "").lower() == "hidden":
            return ""
        label = (el.get("value") or el.get("placeholder") or "").strip()
        return f"[{label}]" if label else ""


def looks_like_markup(text) -> bool:
    """True when a string looks like an HTML document or fragment."""
    if not isinstance(text, str) or "<" not in text:
        return False
    return bool(_MARKUP_HINT.search(text))


def strip_tags_keep_text(raw_html: str) -> str:
    cleaned = re.sub(r"(?is)<(script|style|noscript|template)[^>]*>.*?</\1>", " ", raw_html or "")
    cleaned = re.sub(r"(?s)<!--.*?-->", " ", cleaned)
    cleaned = re.sub(r"(?i)<br\s*/?>", "\n", cleaned)
    cleaned = re.sub(r"(?i)</(p|div|section|article|h[1-6])\s*>", "\n\n", cleaned)
    cleaned = re.sub(r"(?i)</li\s*>", "\n", cleaned)
    cleaned = re.sub(r"(?s)<[^>]+>", " ", cleaned)
    cleaned = _html.unescape(cleaned)
    cleaned = re.sub(r"(?m)^[ \t]+", "", cleaned)
    return collapse_whitespace(cleaned)


def collapse_whitespace(text: str) -> str:
    """At most one blank line between blocks, no trailing spaces."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"(?<=\S)[ \t]{2,}", " ", text)
    text = re.sub(r"[ \t]+$", "", text, flags=re.M)
    text = re.sub(r"^[-*+]$", "", text, flags=re.M)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _drop(elements) -> None:
    for element in elements:
        if not getattr(element, "decomposed", False):
            element.decompose()


class ContentNormalizer:
    def __init__(self, mode: str = "semantic"):
        if mode not in ("basic", "semantic"):
            raise ValueError(f"Unknown normalizer mode: {mode}")
        self.mode = mode

    def normalize(self, html: str) -> NormalizedContent:
        if not html or not html.strip():
            return NormalizedContent(text="", mode=self.mode)
        try:
            return self._convert(html)
        except Exception as e:
            logger.warning(f"Markdown conversion failed, falling back to plain text: {e}")
            return NormalizedContent(
                text=strip_tags_keep_text(html), mode=self.mode, fallback=True
            )

    def _convert(self, html: str) -> NormalizedContent:
        soup = BeautifulSoup(html, "html.parser")
        title = soup.title.get_text(strip=True) if soup.title else ""

        for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
            comment.extract()
        _drop(soup(NOISE_TAGS))
        _drop(soup.select(", ".join(NOISE_SELECTORS)))
        _drop(soup.find_all(style=_DISPLAY_NONE))
        _drop(soup.find_all(["title", "head"]))

        root = soup.body or soup
        if self.mode == "semantic":
            root = soup.select_one(MAIN_CONTENT_SELECTOR) or root
            _drop(root.find_all(CHROME_TAGS))

        converter = _RelayMarkdownConverter(
            heading_style=ATX,
            bullets="-",
            escape_underscores=False,
        )
        text = collapse_whitespace(converter.convert_soup(root))
        return NormalizedContent(text=text, title=title, mode=self.mode)
