from __future__ import annotations

import re
import urllib.parse
from typing import List, Optional

from bs4 import BeautifulSoup

from ..models import CrawledPage, CrawlResult

MAX_HEADINGS = 20
MAX_BODY_CHARS = 5000
COMBINED_BODY_CHARS = 1500

_WS_RE = re.compile(r"\s+")

# Stripped before body text is taken; they repeat on every page.
_BOILERPLATE_TAGS = ["script", "style", "nav", "header", "footer"]


def _clean(text: Optional[str]) -> Optional[str]:
    if text is None:
        return None
    out = _WS_RE.sub(" ", text).strip()
    return out or None


def _meta_description(soup: BeautifulSoup) -> Optional[str]:
    tag = soup.find("meta", attrs={"name": re.compile(r"^description$", re.I)})
    if tag is None:
        return None
    return _clean(tag.get("content"))


def extract_page(url: str, html: str) -> CrawledPage:
    """
    Build a CrawledPage from raw HTML.

    - title, meta description, first H1
    - H2 then H3 texts (capped at MAX_HEADINGS)
    - body text without script/style/nav/header/footer, whitespace collapsed,
      truncated to MAX_BODY_CHARS; word count is taken before truncation
    """
    soup = BeautifulSoup(html or "", "html.parser")

    title = _clean(soup.title.get_text()) if soup.title else None
    description = _meta_description(soup)

    h1_tag = soup.find("h1")
    h1 = _clean(h1_tag.get_text(" ")) if h1_tag else None

    headings: List[str] = []
    for name in ("h2", "h3"):
        for tag in soup.find_all(name):
            text = _clean(tag.get_text(" "))
            if text:
                headings.append(text)

    body = soup.body or soup
    for tag in body.find_all(_BOILERPLATE_TAGS):
        tag.decompose()
    body_text = _clean(body.get_text(" ")) or ""

    path = urllib.parse.urlparse(url).path or "/"

    return CrawledPage(
        url=url,
        path=path,
        title=title,
        description=description,
        h1=h1,
        headings=tuple(headings[:MAX_HEADINGS]),
        body_text=body_text[:MAX_BODY_CHARS],
        word_count=len(body_text.split()),
    )


def combine_crawled_content(result: CrawlResult) -> str:
    """Flatten a crawl into the text block the analyzer reads."""
    sections: List[str] = [
        f"Domain: {result.domain}",
        f"Pages crawled: {result.total_pages}",
        "",
    ]

    for page in result.pages:
        sections.append(f"--- Page: {page.path} ---")
        if page.title:
            sections.append(f"Title: {page.title}")
        if page.description:
            sections.append(f"Description: {page.description}")
        if page.h1:
            sections.append(f"H1: {page.h1}")
        if page.headings:
            sections.append("Headings: " + " | ".join(page.headings))
        sections.append(f"Content: {page.body_text[:COMBINED_BODY_CHARS]}")
        sections.append("")

    return "\n".join(sections)
