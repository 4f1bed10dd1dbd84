"""Async page fetcher.

Responsible solely for retrieving the raw bytes of an already resolved URL
under a size cap and a wall-clock timeout, re-validating any redirect the
server answers with.  Parsing happens elsewhere.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from urllib.parse import urljoin

import httpx
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    wait_exponential,
)

from app.core.config import settings
from app.core.errors import FetchFailed, InvalidUrl, TooManyRedirects, UnreachableHost
from app.workers.http import get_http_client
from app.workers.resolver import canonicalize_url

logger = logging.getLogger(__name__)

HTML_CONTENT_TYPES = ("text/html", "application/xhtml+xml")


@dataclass
class FetchedContent:
    url: str
    status_code: int
    content_type: str
    charset: str | None
    body: bytes
    truncated: bool = False

    @property
    def is_html(self) -> bool:
        return self.content_type in HTML_CONTENT_TYPES


def _split_content_type(header: str) -> tuple[str, str | None]:
    """``"text/html; charset=UTF-8"`` -> ``("text/html", "UTF-8")``."""
    mime, _, params = header.partition(";")
    charset = None
    for param in params.split(";"):
        key, _, value = param.strip().partition("=")
        if key.lower() == "charset" and value:
            charset = value.strip().strip("\"'")
    return mime.strip().lower(), charset


@retry(
    retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
    stop=lambda rs: rs.attempt_number >= settings.http_max_retries + 1,
    wait=wait_exponential(multiplier=0.5, min=0.5, max=10),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=False,
)
async def _fetch_with_retry(url: str) -> FetchedContent:
    """Single fetch attempt; tenacity retries on transient errors."""
    return await _do_fetch(url)


async def fetch_content(url: str) -> FetchedContent:
    """Fetch the body of *url*, reading at most ``settings.max_content_bytes``.

    Hitting the size cap is not an error: the prefix read so far is returned
    with ``truncated=True`` because titles and meta tags live near the top
    of a document.

    Redirects are followed by hand with the resolver's rules: every target
    is canonicalised and host-checked, and at most ``settings.max_redirects``
    hops are taken.  ``FetchedContent.url`` is the URL the body came from.

    Retries on transient errors (timeouts, connection failures) using
    exponential backoff via tenacity.  The ``stop`` condition uses a lambda
    so ``settings.http_max_retries`` is read per-attempt, not at import
    time.  All attempts and backoff share one ``settings.fetch_timeout``
    wall-clock budget.

    Raises:
        FetchFailed: the server answered with a non-2xx status.
        UnreachableHost: every attempt failed to connect, or the budget ran out.
        InvalidUrl: the URL or a redirect target is not an allowed web URL.
        TooManyRedirects: the redirect chain is too long.
    """
    try:
        return await asyncio.wait_for(_fetch_with_retry(url), timeout=settings.fetch_timeout)
    except asyncio.TimeoutError as exc:
        raise UnreachableHost(
            f"Fetching {url} exceeded {settings.fetch_timeout}s"
        ) from exc
    except RetryError as exc:
        raise UnreachableHost(
            f"Failed to fetch {url} after {settings.http_max_retries + 1} attempts: "
            f"{exc.last_attempt.exception()!r}"
        ) from exc


async def _do_fetch(url: str) -> FetchedContent:
    """Perform one streamed GET per hop and collect the final body up to the cap."""
    client = get_http_client()
    current = url
    hops = 0

    while True:
        try:
            async with client.stream("GET", current, follow_redirects=False) as response:
                location = response.headers.get("location") if response.is_redirect else None
                if location is None:
                    return await _read_body(response, current)
        except httpx.InvalidURL as exc:
            raise InvalidUrl(f"Invalid URL '{current}': {exc}") from exc
        except httpx.TimeoutException:
            raise  # propagate for retry logic
        except httpx.ConnectError:
            raise  # propagate for retry logic
        except httpx.HTTPError as exc:
            raise UnreachableHost(f"Request error for '{current}': {exc!r}") from exc

        if hops >= settings.max_redirects:
            raise TooManyRedirects(
                f"More than {settings.max_redirects} redirects fetching '{url}'"
            )
        hops += 1
        current = canonicalize_url(urljoin(current, location))
        logger.debug("Fetch of %s redirected to %s", url, current)


async def _read_body(response: httpx.Response, url: str) -> FetchedContent:
    if not response.is_success:
        raise FetchFailed(response.status_code, url)

    limit = settings.max_content_bytes
    content_type, charset = _split_content_type(response.headers.get("content-type", ""))
    chunks: list[bytes] = []
    received = 0
    truncated = False
    async for chunk in response.aiter_bytes():
        remaining = limit - received
        if len(chunk) > remaining:
            chunks.append(chunk[:remaining])
            truncated = True
            break
        chunks.append(chunk)
        received += len(chunk)

    if truncated:
        logger.warning("Content of %s exceeded %d bytes; truncated", url, limit)

    return FetchedContent(
        url=url,
        status_code=response.status_code,
        content_type=content_type,
        charset=charset,
        body=b"".join(chunks),
        truncated=truncated,
    )


async def probe_favicon(page_url: str) -> str | None:
    """Return ``<origin>/favicon.ico`` if the server actually serves an image there.

    Redirects are not followed; a moved favicon is simply not adopted.
    """
    candidate = urljoin(page_url, "/favicon.ico")
    try:
        response = await get_http_client().head(candidate, follow_redirects=False)
    except httpx.HTTPError as exc:
        logger.debug("Favicon probe failed for %s: %r", candidate, exc)
        return None
    content_type, _ = _split_content_type(response.headers.get("content-type", ""))
    if response.is_success and content_type.startswith("image/"):
        return candidate
    return None
