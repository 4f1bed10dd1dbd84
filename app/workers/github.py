"""GitHub REST API client for repository enrichment.

A pure request/response mapper: one call per endpoint, no retries.  Rate
limiting, missing repositories and transport failures are surfaced as
distinct exceptions so the scheduler can decide what to do with them.
"""

from __future__ import annotations

import logging
import re
import time
from datetime import datetime
from typing import Any, Optional
from urllib.parse import urlsplit

import httpx

from app.core.config import settings
from app.core.errors import (
    InvalidUrl,
    NetworkError,
    RateLimited,
    RepositoryNotFound,
    UnsupportedRepositoryHost,
)
from app.models.enrichment.results import RepositorySnapshot

logger = logging.getLogger(__name__)

GITHUB_HOSTS = ("github.com", "www.github.com")

_REPO_RE = re.compile(
    r"^(?:https?://(?:www\.)?github\.com/|git@github\.com:)"
    r"([^/\s?#]+)/([^/\s?#]+?)(?:\.git)?(?:[/?#].*)?$",
    re.IGNORECASE,
)


def parse_repository(url: str) -> tuple[str, str]:
    """Return ``(owner, name)`` for a GitHub repository URL.

    Handles ``https://github.com/owner/repo``, ``.git`` suffixes, deep links
    such as ``/tree/main`` and the ``git@github.com:owner/repo.git`` form.

    Raises:
        UnsupportedRepositoryHost: the URL points at another host.
        InvalidUrl: a GitHub URL without an owner/name pair.
    """
    if not url.startswith("git@"):
        host = (urlsplit(url).hostname or "").lower()
        if host not in GITHUB_HOSTS:
            raise UnsupportedRepositoryHost(f"Repository host '{host}' is not supported")
    match = _REPO_RE.match(url.strip())
    if match is None:
        raise InvalidUrl(f"'{url}' is not a GitHub repository URL")
    return match.group(1), match.group(2)


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _retry_after(response: httpx.Response) -> float | None:
    header = response.headers.get("retry-after")
    if header:
        try:
            return max(float(header), 0.0)
        except ValueError:
            pass
    reset = response.headers.get("x-ratelimit-reset")
    if reset:
        try:
            return max(float(reset) - time.time(), 0.0)
        except ValueError:
            pass
    return None


def _license_identifier(payload: dict[str, Any]) -> str | None:
    info = payload.get("license")
    if not isinstance(info, dict):
        return None
    spdx = info.get("spdx_id")
    if spdx and spdx != "NOASSERTION":
        return spdx
    return info.get("name") or info.get("key")


class GitHubClient:
    """Fetch repository snapshots from the GitHub REST API."""

    def __init__(
        self,
        http: httpx.AsyncClient | None = None,
        *,
        token: str | None = None,
        api_url: str | None = None,
    ) -> None:
        self._http = http
        self._token = token if token is not None else settings.repo_api_token
        self._api_url = (api_url or settings.repo_api_url).rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            headers = {
                "User-Agent": settings.user_agent,
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": "2022-11-28",
            }
            if self._token:
                headers["Authorization"] = f"Bearer {self._token}"
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(settings.fetch_timeout),
                follow_redirects=True,
                headers=headers,
            )
        return self._http

    async def aclose(self) -> None:
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()

    async def fetch_snapshot(self, url: str) -> RepositorySnapshot:
        """Return the current stars/license/activity/languages of the repository at *url*.

        Raises:
            UnsupportedRepositoryHost, InvalidUrl: see :func:`parse_repository`.
            RepositoryNotFound: the repository was deleted, renamed away or hidden.
            RateLimited: the API quota is exhausted.
            NetworkError: anything else that went wrong on the wire.
        """
        owner, name = parse_repository(url)
        repo = await self._get_json(f"/repos/{owner}/{name}")
        languages = await self._get_json(f"/repos/{owner}/{name}/languages")

        snapshot = RepositorySnapshot(
            full_name=repo.get("full_name") or f"{owner}/{name}",
            stars=int(repo.get("stargazers_count") or 0),
            languages={
                str(lang): int(count)
                for lang, count in languages.items()
                if isinstance(count, int)
            },
            license=_license_identifier(repo),
            archived=bool(repo.get("archived", False)),
            last_commit_at=_parse_timestamp(repo.get("pushed_at")),
        )
        logger.info(
            "Fetched GitHub snapshot for %s: stars=%d archived=%s",
            snapshot.full_name,
            snapshot.stars,
            snapshot.archived,
        )
        return snapshot

    async def _get_json(self, path: str) -> dict[str, Any]:
        url = f"{self._api_url}{path}"
        try:
            response = await self._client().get(url)
        except httpx.HTTPError as exc:
            raise NetworkError(f"GitHub request {path} failed: {exc!r}") from exc

        status = response.status_code
        if status in (404, 410, 451):
            raise RepositoryNotFound(f"GitHub returned {status} for {path}")
        if status in (403, 429) and (
            status == 429
            or response.headers.get("x-ratelimit-remaining") == "0"
            or "retry-after" in response.headers
        ):
            retry_after = _retry_after(response)
            logger.warning("GitHub rate limit hit on %s (retry after %s)", path, retry_after)
            raise RateLimited(retry_after, f"GitHub rate limit exceeded on {path}")
        if not response.is_success:
            raise NetworkError(f"GitHub returned {status} for {path}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise NetworkError(f"GitHub returned invalid JSON for {path}") from exc
        if not isinstance(payload, dict):
            raise NetworkError(f"Unexpected GitHub payload for {path}")
        return payload


# Module-level shared client
_github_client: Optional[GitHubClient] = None


def get_github_client() -> GitHubClient:
    """Return the shared GitHubClient.  Creates one if missing."""
    global _github_client  # noqa: PLW0603
    if _github_client is None:
        _github_client = GitHubClient()
    return _github_client


async def close_github_client() -> None:
    global _github_client  # noqa: PLW0603
    if _github_client is not None:
        await _github_client.aclose()
        _github_client = None
        logger.info("GitHub client closed.")
