"""Detect repository and documentation links for a bookmarked page.

Classification is advisory: a miss only means repository enrichment is
skipped for the link.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Sequence
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from app.models.enrichment.results import ExtractedField

REPOSITORY_HOSTS = ("github.com", "gitlab.com", "bitbucket.org", "codeberg.org")

# First path segments on github.com that are product pages, not owners.
_GITHUB_RESERVED = frozenset(
    {
        "about", "apps", "blog", "collections", "contact", "customer-stories",
        "enterprise", "events", "explore", "features", "login", "marketplace",
        "new", "notifications", "orgs", "pricing", "pulls", "issues", "search",
        "security", "settings", "site", "sponsors", "team", "topics", "trending",
        "join", "readme", "codespaces", "solutions", "resources",
    }
)
_DOCS_PATH_RE = re.compile(r"(^|/)(docs|documentation)(/|$)", re.IGNORECASE)
_DOCS_TEXT = frozenset({"docs", "documentation", "read the docs", "api docs", "api reference"})


@dataclass
class Classification:
    repository_url: ExtractedField | None = None
    documentation_url: ExtractedField | None = None


def _host(url: str) -> str:
    host = (urlsplit(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def repository_root(url: str) -> str | None:
    """Return ``https://<host>/<owner>/<name>`` if *url* lives inside a repository."""
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return None
    host = _host(url)
    if host not in REPOSITORY_HOSTS:
        return None
    segments = [s for s in parts.path.split("/") if s]
    if len(segments) < 2:
        return None
    owner, name = segments[0], segments[1]
    if host == "github.com" and owner.lower() in _GITHUB_RESERVED:
        return None
    if name.endswith(".git"):
        name = name[: -len(".git")]
    if not name:
        return None
    return urlunsplit(("https", host, f"/{owner}/{name}", "", ""))


def is_documentation_url(url: str) -> bool:
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https"):
        return False
    host = _host(url)
    return (
        host.startswith("docs.")
        or host.endswith(".readthedocs.io")
        or bool(_DOCS_PATH_RE.search(parts.path))
    )


def _anchors(soup: BeautifulSoup | None, base_url: str) -> Iterator[tuple[str, str]]:
    if soup is None:
        return
    for tag in soup.find_all("a", href=True):
        href = str(tag.get("href", "")).strip()
        if not href or href.startswith("#"):
            continue
        absolute = urljoin(base_url, href)
        if urlsplit(absolute).scheme in ("http", "https"):
            yield absolute, tag.get_text(" ", strip=True).lower()


# ---------------------------------------------------------------------------
# Ordered rules
# ---------------------------------------------------------------------------

Rule = Callable[[str, Optional[BeautifulSoup]], Optional[str]]


def page_is_repository(url: str, soup: BeautifulSoup | None) -> str | None:
    return repository_root(url)


def linked_repository(url: str, soup: BeautifulSoup | None) -> str | None:
    for href, _ in _anchors(soup, url):
        root = repository_root(href)
        if root is not None:
            return root
    return None


def page_is_documentation(url: str, soup: BeautifulSoup | None) -> str | None:
    if repository_root(url) is not None:
        return None
    return url if is_documentation_url(url) else None


def linked_documentation(url: str, soup: BeautifulSoup | None) -> str | None:
    for href, text in _anchors(soup, url):
        if repository_root(href) is not None:
            continue
        if is_documentation_url(href) or text in _DOCS_TEXT:
            return href
    return None


REPOSITORY_RULES: tuple[Rule, ...] = (page_is_repository, linked_repository)
DOCUMENTATION_RULES: tuple[Rule, ...] = (page_is_documentation, linked_documentation)


def _first(rules: Sequence[Rule], url: str, soup: BeautifulSoup | None) -> ExtractedField | None:
    for rule in rules:
        value = rule(url, soup)
        if value:
            return ExtractedField(value=value, source=rule.__name__)
    return None


def classify_link(url: str, soup: BeautifulSoup | None = None) -> Classification:
    """Pick at most one repository URL and one documentation URL for *url*.

    Repository hosts are checked before documentation heuristics, so a
    GitHub link is never reported as documentation.
    """
    return Classification(
        repository_url=_first(REPOSITORY_RULES, url, soup),
        documentation_url=_first(DOCUMENTATION_RULES, url, soup),
    )
