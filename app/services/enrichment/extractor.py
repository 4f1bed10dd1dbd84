"""Title / description / logo extraction from untrusted HTML.

Each field is produced by an ordered chain of small rule functions over the
same parsed document; the first rule returning a non-empty value wins and
its name is recorded as the value's source.  Rules never raise: broken
markup simply yields fewer values.
"""

from __future__ import annotations

import logging
import re
from typing import Callable, Optional, Sequence
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from bs4.element import Tag

from app.models.enrichment.results import ExtractedField, ExtractedMetadata

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")

Rule = Callable[["PageContext"], Optional[str]]


class PageContext:
    """A parsed page plus the URL relative links resolve against."""

    def __init__(self, soup: BeautifulSoup, page_url: str, description_max_length: int = 300) -> None:
        self.soup = soup
        self.page_url = page_url
        self.base_url = _base_url(soup, page_url)
        self.description_max_length = description_max_length


def parse_document(body: bytes | str, charset: str | None = None) -> BeautifulSoup:
    """Parse raw HTML into a BeautifulSoup tree; tolerant of any input."""
    if isinstance(body, bytes):
        return BeautifulSoup(body, "html.parser", from_encoding=charset)
    return BeautifulSoup(body, "html.parser")


def clean_text(value: str | None) -> str | None:
    """Collapse whitespace runs and trim text bs4 has already entity-decoded."""
    if value is None:
        return None
    text = _WHITESPACE_RE.sub(" ", value).strip()
    return text or None


def _base_url(soup: BeautifulSoup, page_url: str) -> str:
    base = soup.find("base", href=True)
    if isinstance(base, Tag):
        href = str(base.get("href", "")).strip()
        if href:
            return urljoin(page_url, href)
    return page_url


def _meta_content(soup: BeautifulSoup, key: str) -> str | None:
    """Content of the first non-empty ``<meta>`` whose property or name is *key*."""
    for tag in soup.find_all("meta"):
        tag_key = str(tag.get("property") or tag.get("name") or "").strip().lower()
        if tag_key == key:
            content = clean_text(tag.get("content"))
            if content:
                return content
    return None


def _link_href(soup: BeautifulSoup, rels: Sequence[str]) -> str | None:
    """Return the href of the first ``<link>`` whose rel matches one of *rels*."""
    for tag in soup.find_all("link", href=True):
        rel = tag.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        tokens = " ".join(r.lower() for r in rel)
        if tokens in rels or any(token in rels for token in tokens.split()):
            href = str(tag.get("href", "")).strip()
            if href:
                return href
    return None


def _absolute_web_url(ctx: PageContext, href: str | None) -> str | None:
    if not href:
        return None
    absolute = urljoin(ctx.base_url, href.strip())
    if urlsplit(absolute).scheme not in ("http", "https"):
        return None
    return absolute


# ---------------------------------------------------------------------------
# Title rules
# ---------------------------------------------------------------------------


def og_title(ctx: PageContext) -> str | None:
    return _meta_content(ctx.soup, "og:title")


def title_element(ctx: PageContext) -> str | None:
    tag = ctx.soup.find("title")
    return clean_text(tag.get_text()) if tag else None


def first_heading(ctx: PageContext) -> str | None:
    tag = ctx.soup.find("h1")
    return clean_text(tag.get_text(" ")) if tag else None


# ---------------------------------------------------------------------------
# Description rules
# ---------------------------------------------------------------------------


def og_description(ctx: PageContext) -> str | None:
    return _meta_content(ctx.soup, "og:description")


def meta_description(ctx: PageContext) -> str | None:
    return _meta_content(ctx.soup, "description")


def first_paragraph(ctx: PageContext) -> str | None:
    for tag in ctx.soup.find_all("p"):
        text = clean_text(tag.get_text(" "))
        if text:
            return _truncate(text, ctx.description_max_length)
    return None


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    cut = text[: max(limit - 1, 0)]
    # prefer a word boundary when one is reasonably close
    space = cut.rfind(" ")
    if space > limit // 2:
        cut = cut[:space]
    return cut.rstrip() + "…"


# ---------------------------------------------------------------------------
# Logo rules
# ---------------------------------------------------------------------------


def touch_icon(ctx: PageContext) -> str | None:
    href = _link_href(ctx.soup, ("apple-touch-icon", "apple-touch-icon-precomposed"))
    return _absolute_web_url(ctx, href)


def og_image(ctx: PageContext) -> str | None:
    return _absolute_web_url(ctx, _meta_content(ctx.soup, "og:image"))


def declared_favicon(ctx: PageContext) -> str | None:
    href = _link_href(ctx.soup, ("icon", "shortcut icon"))
    return _absolute_web_url(ctx, href)


TITLE_RULES: tuple[Rule, ...] = (og_title, title_element, first_heading)
DESCRIPTION_RULES: tuple[Rule, ...] = (og_description, meta_description, first_paragraph)
LOGO_RULES: tuple[Rule, ...] = (touch_icon, og_image, declared_favicon)


def apply_chain(rules: Sequence[Rule], ctx: PageContext) -> ExtractedField | None:
    """Evaluate *rules* in order and return the first non-empty value."""
    for rule in rules:
        try:
            value = rule(ctx)
        except (AttributeError, TypeError, ValueError) as exc:
            # Odd markup can surprise bs4 accessors; treat as "no match".
            logger.debug("Rule %s failed on %s: %r", rule.__name__, ctx.page_url, exc)
            continue
        if value:
            return ExtractedField(value=value, source=rule.__name__)
    return None


def extract_metadata(
    soup: BeautifulSoup,
    page_url: str,
    *,
    description_max_length: int = 300,
) -> ExtractedMetadata:
    """Run the title, description and logo chains over a parsed page."""
    ctx = PageContext(soup, page_url, description_max_length)
    return ExtractedMetadata(
        title=apply_chain(TITLE_RULES, ctx),
        description=apply_chain(DESCRIPTION_RULES, ctx),
        logo=apply_chain(LOGO_RULES, ctx),
    )
