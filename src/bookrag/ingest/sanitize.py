"""Default chapter-text sanitizer.

Strips embedded images and markup noise and normalises whitespace. The
output defines the sanitized offset space, so the function must stay
deterministic and idempotent on its own output.
"""

from __future__ import annotations

import re
import warnings

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning

warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)

_TAG_RE = re.compile(r"</?[a-zA-Z][a-zA-Z0-9:-]*(?:\s[^<>]*)?/?>")
_MD_IMAGE_RE = re.compile(r"!\[[^\]\n]*\]\([^)\n]*\)")
_DATA_URI_RE = re.compile(r"data:[a-z]+/[a-z0-9.+-]+;base64,[A-Za-z0-9+/=]+", re.IGNORECASE)
_IMAGE_PLACEHOLDER_RE = re.compile(r"\[(?:image|img|图片|插图)[^\]\n]*\]", re.IGNORECASE)
_INLINE_SPACE_RE = re.compile(r"[ \t\f\v\u00a0\u3000]+")
_BLANK_LINES_RE = re.compile(r"\n{3,}")
_ZERO_WIDTH_RE = re.compile(r"[\u200b-\u200d\ufeff]")

_DROP_TAGS = ["script", "style", "img", "svg", "picture", "figure", "head", "nav"]


def _strip_markup(text: str) -> str:
    soup = BeautifulSoup(text, "html.parser")
    for tag in soup.find_all(_DROP_TAGS):
        tag.decompose()
    return soup.get_text("\n")


def sanitize_text(raw: str | None) -> str:
    """Return the plain-text form of *raw* chapter content."""
    if not raw:
        return ""
    text = raw.replace("\r\n", "\n").replace("\r", "\n")
    if _TAG_RE.search(text):
        text = _strip_markup(text)
    text = _MD_IMAGE_RE.sub("", text)
    text = _DATA_URI_RE.sub("", text)
    text = _IMAGE_PLACEHOLDER_RE.sub("", text)
    text = _ZERO_WIDTH_RE.sub("", text)
    text = _INLINE_SPACE_RE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    text = _BLANK_LINES_RE.sub("\n\n", text)
    return text.strip()
