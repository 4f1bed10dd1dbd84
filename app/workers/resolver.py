"""URL validation, canonicalisation and manual redirect resolution."""

from __future__ import annotations

import ipaddress
import logging
import posixpath
from dataclasses import dataclass
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from app.core.config import settings
from app.core.errors import InvalidUrl, TooManyRedirects, UnreachableHost
from app.workers.http import get_http_client

logger = logging.getLogger(__name__)

WEB_SCHEMES = ("http", "https")
_DEFAULT_PORTS = {"http": 80, "https": 443}


@dataclass(frozen=True)
class ResolvedUrl:
    url: str
    hops: int


def _check_host(host: str) -> None:
    """Reject IP literals pointing into private or otherwise special ranges."""
    if settings.allow_private_hosts:
        return
    if host in ("localhost", "localhost.localdomain"):
        raise InvalidUrl(f"Refusing to resolve local host '{host}'")
    try:
        ip = ipaddress.ip_address(host.split("%")[0])
    except ValueError:
        return
    if (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    ):
        raise InvalidUrl(f"Refusing to resolve non-public address {ip}")


def canonicalize_url(url: str) -> str:
    """Validate *url* and return its canonical form.

    Lower-cases scheme and host, drops default ports and the fragment,
    removes dot segments and turns an empty path into ``/``.  The query
    string is kept verbatim.

    Raises:
        InvalidUrl: not an absolute http(s) URL with a host.
    """
    if not isinstance(url, str) or not url.strip():
        raise InvalidUrl("URL is empty")
    try:
        parts = urlsplit(url.strip())
        port = parts.port
    except ValueError as exc:
        raise InvalidUrl(f"Invalid URL '{url}': {exc}") from exc

    scheme = parts.scheme.lower()
    if scheme not in WEB_SCHEMES:
        raise InvalidUrl(f"Unsupported scheme '{parts.scheme}' in '{url}'")
    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidUrl(f"URL '{url}' has no host")
    _check_host(host)

    netloc = f"[{host}]" if ":" in host else host
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        netloc = f"{netloc}:{port}"
    if parts.username or parts.password:
        userinfo = parts.username or ""
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parts.path or "/"
    normalized = posixpath.normpath(path)
    # normpath keeps a leading '//' and drops a trailing slash
    if normalized.startswith("//"):
        normalized = "/" + normalized.lstrip("/")
    if path.endswith("/") and normalized != "/":
        normalized += "/"
    return urlunsplit((scheme, netloc, normalized, parts.query, ""))


async def resolve_url(url: str) -> ResolvedUrl:
    """Follow redirects from *url* and return the final canonical URL.

    Each hop is a streamed GET whose body is never read.  A chain of
    ``settings.max_redirects`` hops is accepted; one more raises
    :class:`TooManyRedirects`.  Redirect targets must themselves be valid
    http(s) URLs.

    Raises:
        InvalidUrl: the input or a redirect target is not a web URL.
        TooManyRedirects: the redirect chain is too long.
        UnreachableHost: connection failure or timeout on any hop.
    """
    current = canonicalize_url(url)
    client = get_http_client()
    hops = 0

    while True:
        try:
            async with client.stream("GET", current, follow_redirects=False) as response:
                location = response.headers.get("location") if response.is_redirect else None
        except httpx.InvalidURL as exc:
            raise InvalidUrl(f"Invalid URL '{current}': {exc}") from exc
        except (httpx.TimeoutException, httpx.NetworkError, httpx.ProxyError) as exc:
            raise UnreachableHost(f"Could not reach '{current}': {exc!r}") from exc
        except httpx.HTTPError as exc:
            raise UnreachableHost(f"Request error for '{current}': {exc!r}") from exc

        if not location:
            if hops:
                logger.debug("Resolved %s to %s in %d hop(s)", url, current, hops)
            return ResolvedUrl(url=current, hops=hops)

        if hops >= settings.max_redirects:
            raise TooManyRedirects(
                f"More than {settings.max_redirects} redirects starting at '{url}'"
            )
        hops += 1
        current = canonicalize_url(urljoin(current, location))
