"""Content extraction from a rendered page."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from bs4 import BeautifulSoup, Comment

from pagerelay.errors import ExtractionError

_STRIP_TAGS = ("script", "style", "noscript", "iframe", "template", "object", "embed")
_READABLE_TEXT_JS = "() => document.body ? document.body.innerText : ''"


@dataclass(slots=True)
class ExtractedContent:
    raw_html: str
    raw_purified_content: str
    readable_content: str
    title: str
    url: str


def purify_html(html: str) -> str:
    """Drop executable/embedded nodes, comments, and inline event handlers."""

    soup = BeautifulSoup(html, "html.parser")
    for tag in soup.find_all(_STRIP_TAGS):
        tag.decompose()
    for comment in soup.find_all(string=lambda node: isinstance(node, Comment)):
        comment.extract()
    for tag in soup.find_all(True):
        for attr in [name for name in tag.attrs if name.lower().startswith("on")]:
            del tag.attrs[attr]
    return str(soup)


async def extract_content(page: Any) -> ExtractedContent:
    try:
        raw_html = await page.content()
        readable = await page.evaluate(_READABLE_TEXT_JS)
        title = await page.title()
        url = page.url
    except Exception as exc:  # noqa: BLE001 - any page failure ends the job
        raise ExtractionError(f"Content extraction failed: {exc}") from exc

    return ExtractedContent(
        raw_html=raw_html,
        raw_purified_content=purify_html(raw_html),
        readable_content=readable or "",
        title=title or "",
        url=url,
    )
