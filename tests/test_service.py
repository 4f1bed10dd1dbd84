"""EnrichmentService tests.

The Link and Organization stores run for real on mongomock; resolver,
fetcher, favicon probe and GitHub client are replaced per test.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest

from app.core.config import settings
from app.core.errors import (
    ErrorKind,
    FetchFailed,
    LinkNotFound,
    RateLimited,
    RepositoryNotFound,
    UnreachableHost,
)
from app.models.enrichment.results import OutcomeKind, RepositorySnapshot
from app.models.links.document import LinkRecord, LinkStatus
from app.services.enrichment.service import EnrichmentService
from app.workers.fetcher import FetchedContent
from app.workers.github import GitHubClient
from app.workers.resolver import ResolvedUrl

_PAGE = """
<html><head>
  <title>Example Domain</title>
  <meta name="description" content="An example page">
  <link rel="icon" href="/static/icon.png">
</head><body><h1>Example</h1></body></html>
"""

_REPO_URL = "https://github.com/encode/httpx"
_REPO_PAGE = """
<html><head>
  <meta property="og:title" content="encode/httpx">
  <meta property="og:description" content="A next generation HTTP client for Python.">
  <meta property="og:image" content="https://opengraph.githubassets.com/httpx.png">
</head></html>
"""
_SNAPSHOT = RepositorySnapshot(
    full_name="encode/httpx",
    stars=12000,
    languages={"Python": 900, "Shell": 100},
    license="BSD-3-Clause",
    archived=False,
    last_commit_at=datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc),
)


def _content(markup: str, url: str, content_type: str = "text/html") -> FetchedContent:
    return FetchedContent(
        url=url,
        status_code=200,
        content_type=content_type,
        charset="utf-8",
        body=markup.encode(),
    )


@pytest.fixture
def network():
    """Patch the outbound seams; by default every URL serves ``_PAGE``."""
    with (
        patch("app.services.enrichment.service.resolve_url", new_callable=AsyncMock) as resolve,
        patch("app.services.enrichment.service.fetch_content", new_callable=AsyncMock) as fetch,
        patch(
            "app.services.enrichment.service.probe_favicon",
            new_callable=AsyncMock,
            return_value=None,
        ) as favicon,
    ):
        resolve.side_effect = lambda url: ResolvedUrl(url=url, hops=0)
        fetch.side_effect = lambda url: _content(_PAGE, url)
        yield SimpleNamespace(resolve=resolve, fetch=fetch, favicon=favicon)


@pytest.fixture
def github():
    client = AsyncMock(spec=GitHubClient)
    client.fetch_snapshot.return_value = _SNAPSHOT
    return client


@pytest.fixture
def service(links, organization, github):
    return EnrichmentService(links, organization, github)


async def _stored(links, url: str = "https://example.com/", **fields) -> LinkRecord:
    return await links.insert(LinkRecord.for_url("user-1", url, **fields))


def _serve_repository(network) -> None:
    network.fetch.side_effect = lambda url: _content(_REPO_PAGE, url)


# ---------------------------------------------------------------------------
# Page metadata
# ---------------------------------------------------------------------------


class TestPageMetadata:
    async def test_first_enrichment_fills_derived_fields(self, service, links, network):
        link = await _stored(links)

        outcome = await service.enrich_one(link.id)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert set(outcome.changed_fields) == {"title", "description", "logo"}
        stored = await links.get(link.id)
        assert stored.title == "Example Domain"
        assert stored.description == "An example page"
        assert stored.logo == "https://example.com/static/icon.png"
        assert stored.last_metadata_update is not None
        assert stored.url == "https://example.com/"

    async def test_overridden_title_is_never_replaced(self, service, links, network):
        link = await _stored(links, title="My own title", title_overridden=True)

        outcome = await service.enrich_one(link.id)

        stored = await links.get(link.id)
        assert stored.title == "My own title"
        assert stored.description == "An example page"
        assert "title" not in outcome.changed_fields

    async def test_override_set_during_enrichment_wins(self, service, links, network):
        link = await _stored(links)
        plan = await service.enrich(link)

        # the user pins a title while the page is being fetched
        await links.update_fields(
            link.id, {"title": "Pinned", "title_overridden": True}, respecting_overrides=False
        )
        outcome = await service.commit(plan)

        assert (await links.get(link.id)).title == "Pinned"
        assert "title" not in outcome.changed_fields
        assert "description" in outcome.changed_fields

    async def test_missing_fields_make_a_partial_outcome(self, service, links, network):
        network.fetch.side_effect = lambda url: _content("<title>Only a title</title>", url)
        link = await _stored(links, description="kept from before")

        outcome = await service.enrich_one(link.id)

        assert outcome.kind == OutcomeKind.PARTIAL
        assert outcome.missing_fields == ["description", "logo"]
        stored = await links.get(link.id)
        assert stored.title == "Only a title"
        assert stored.description == "kept from before"

    async def test_conventional_favicon_is_adopted_when_served(self, service, links, network):
        network.fetch.side_effect = lambda url: _content(
            '<title>t</title><meta name="description" content="d">', url
        )
        network.favicon.return_value = "https://example.com/favicon.ico"
        link = await _stored(links)

        outcome = await service.enrich_one(link.id)

        assert outcome.kind == OutcomeKind.SUCCESS
        assert (await links.get(link.id)).logo == "https://example.com/favicon.ico"

    async def test_favicon_probe_can_be_disabled(self, service, links, network):
        network.fetch.side_effect = lambda url: _content("<title>t</title>", url)
        link = await _stored(links)
        with patch.object(settings, "probe_favicon", False):
            await service.enrich_one(link.id)
        network.favicon.assert_not_called()

    async def test_non_html_document(self, service, links, network):
        network.fetch.side_effect = lambda url: _content("%PDF-1.7", url, "application/pdf")
        link = await _stored(links, url="https://example.com/paper.pdf")

        outcome = await service.enrich_one(link.id)

        assert outcome.kind == OutcomeKind.PARTIAL
        assert outcome.missing_fields == ["title", "description", "logo"]
        network.favicon.assert_not_called()
        stored = await links.get(link.id)
        assert stored.consecutive_failures == 0
        assert stored.last_metadata_update is not None

    async def test_rerun_without_changes_is_idempotent(self, service, links, network):
        link = await _stored(links)
        await service.enrich_one(link.id)
        first = await links.get(link.id)

        outcome = await service.enrich_one(link.id)
        second = await links.get(link.id)

        assert outcome.changed_fields == []
        assert first.model_dump(exclude={"last_metadata_update", "updated_at"}) == second.model_dump(
            exclude={"last_metadata_update", "updated_at"}
        )

    async def test_unknown_link(self, service, network):
        with pytest.raises(LinkNotFound):
            await service.enrich_one("does-not-exist")


# ---------------------------------------------------------------------------
# Fetch failures and status transitions
# ---------------------------------------------------------------------------


class TestFetchFailures:
    async def test_failure_outcome_counts_consecutive_failures(self, service, links, network):
        network.resolve.side_effect = UnreachableHost("connection refused")
        link = await _stored(links, title="Old title")

        outcome = await service.enrich_one(link.id)

        assert outcome.kind == OutcomeKind.FAILURE
        assert outcome.error_kind == ErrorKind.UNREACHABLE_HOST
        stored = await links.get(link.id)
        assert stored.consecutive_failures == 1
        assert stored.status == LinkStatus.ACTIVE
        assert stored.title == "Old title"
        assert stored.last_metadata_update is not None

    async def test_link_becomes_inaccessible_after_threshold(self, service, links, network):
        network.fetch.side_effect = FetchFailed(500, "https://example.com/")
        link = await _stored(links)

        outcomes = [await service.enrich_one(link.id) for _ in range(settings.failure_threshold)]

        assert [o.kind for o in outcomes] == [OutcomeKind.FAILURE] * settings.failure_threshold
        assert outcomes[-1].changed_fields == ["status"]
        stored = await links.get(link.id)
        assert stored.status == LinkStatus.INACCESSIBLE
        assert stored.consecutive_failures == settings.failure_threshold

    async def test_success_restores_inaccessible_link(self, service, links, network):
        link = await _stored(links, status=LinkStatus.INACCESSIBLE, consecutive_failures=5)

        outcome = await service.enrich_one(link.id)

        assert "status" in outcome.changed_fields
        stored = await links.get(link.id)
        assert stored.status == LinkStatus.ACTIVE
        assert stored.consecutive_failures == 0

    async def test_success_resets_failure_counter(self, service, links, network):
        link = await _stored(links, consecutive_failures=2)
        await service.enrich_one(link.id)
        assert (await links.get(link.id)).consecutive_failures == 0


# ---------------------------------------------------------------------------
# Repository enrichment
# ---------------------------------------------------------------------------


class TestRepositoryEnrichment:
    async def test_repository_fields_are_populated(self, service, links, network, github):
        _serve_repository(network)
        link = await _stored(links, url=_REPO_URL)

        outcome = await service.enrich_one(link.id)

        assert outcome.kind == OutcomeKind.SUCCESS
        github.fetch_snapshot.assert_awaited_once_with(_REPO_URL)
        stored = await links.get(link.id)
        assert stored.source_code_url == _REPO_URL
        assert stored.github_stars == 12000
        assert stored.github_archived is False
        assert stored.primary_language == "Python"
        assert stored.secondary_language is None
        assert stored.license == "BSD-3-Clause"
        assert stored.last_commit_at == _SNAPSHOT.last_commit_at

    async def test_linked_repository_is_enriched(self, service, links, network, github):
        network.fetch.side_effect = lambda url: _content(
            _PAGE.replace("<h1>Example</h1>", f'<a href="{_REPO_URL}">GitHub</a>'), url
        )
        link = await _stored(links, url="https://www.python-httpx.org/")

        await service.enrich_one(link.id)

        github.fetch_snapshot.assert_awaited_once_with(_REPO_URL)
        assert (await links.get(link.id)).source_code_url == _REPO_URL

    async def test_no_repository_no_api_call(self, service, links, network, github):
        link = await _stored(links)
        await service.enrich_one(link.id)
        github.fetch_snapshot.assert_not_called()

    async def test_first_enrichment_associates_known_organization(
        self, service, links, organization, network
    ):
        _serve_repository(network)
        python = await organization.add_language("user-1", "Python")
        bsd = await organization.add_license("user-1", "BSD-3-Clause", "BSD 3-Clause License")
        link = await _stored(links, url=_REPO_URL)

        await service.enrich_one(link.id)

        stored = await links.get(link.id)
        assert stored.language_ids == [python.id]
        assert stored.license_ids == [bsd.id]
        assert stored.suggested_languages == []
        assert stored.suggested_licenses == []

    async def test_refresh_only_suggests(self, service, links, organization, network):
        _serve_repository(network)
        await organization.add_language("user-1", "Python")
        link = await _stored(
            links,
            url=_REPO_URL,
            last_metadata_update=datetime.now(timezone.utc) - timedelta(days=2),
        )

        await service.enrich_one(link.id)

        stored = await links.get(link.id)
        assert stored.language_ids == []
        assert stored.suggested_languages == ["Python"]
        assert stored.suggested_licenses == ["BSD-3-Clause"]

    async def test_user_touched_link_only_suggests(self, service, links, organization, network):
        _serve_repository(network)
        await organization.add_language("user-1", "Python")
        link = await _stored(links, url=_REPO_URL, user_touched=True)

        await service.enrich_one(link.id)

        stored = await links.get(link.id)
        assert stored.language_ids == []
        assert stored.suggested_languages == ["Python"]

    async def test_unknown_names_are_always_suggestions(self, service, links, network, github):
        _serve_repository(network)
        github.fetch_snapshot.return_value = _SNAPSHOT.model_copy(
            update={"languages": {"Zig": 550, "C": 450}}
        )
        link = await _stored(links, url=_REPO_URL)

        await service.enrich_one(link.id)

        stored = await links.get(link.id)
        assert stored.primary_language == "Zig"
        assert stored.secondary_language == "C"
        assert stored.language_ids == []
        assert stored.suggested_languages == ["Zig", "C"]

    async def test_not_found_clears_repository_fields(self, service, links, network, github):
        _serve_repository(network)
        github.fetch_snapshot.side_effect = RepositoryNotFound("gone")
        link = await _stored(
            links, url=_REPO_URL, github_stars=10, primary_language="Go", license="MIT"
        )

        outcome = await service.enrich_one(link.id)

        assert outcome.kind == OutcomeKind.PARTIAL
        assert outcome.error_kind == ErrorKind.REPOSITORY_NOT_FOUND
        stored = await links.get(link.id)
        assert stored.github_stars is None
        assert stored.primary_language is None
        assert stored.license is None
        assert stored.repo_not_found_count == 1
        assert stored.title == "encode/httpx"

    async def test_not_found_below_threshold_keeps_fields(self, service, links, network, github):
        _serve_repository(network)
        github.fetch_snapshot.side_effect = RepositoryNotFound("gone")
        link = await _stored(links, url=_REPO_URL, github_stars=10)

        with patch.object(settings, "repo_not_found_threshold", 2):
            await service.enrich_one(link.id)
            assert (await links.get(link.id)).github_stars == 10
            await service.enrich_one(link.id)

        assert (await links.get(link.id)).github_stars is None

    async def test_snapshot_resets_not_found_count(self, service, links, network):
        _serve_repository(network)
        link = await _stored(links, url=_REPO_URL, repo_not_found_count=3)
        await service.enrich_one(link.id)
        assert (await links.get(link.id)).repo_not_found_count == 0

    async def test_rate_limit_keeps_existing_repository_fields(
        self, service, links, network, github
    ):
        _serve_repository(network)
        github.fetch_snapshot.side_effect = RateLimited(60.0)
        link = await _stored(links, url=_REPO_URL, github_stars=10)

        outcome = await service.enrich_one(link.id)

        assert outcome.kind == OutcomeKind.PARTIAL
        assert outcome.error_kind == ErrorKind.RATE_LIMITED
        assert outcome.retry_after == 60.0
        assert "github_stars" in outcome.missing_fields
        stored = await links.get(link.id)
        assert stored.github_stars == 10
        assert stored.title == "encode/httpx"

    async def test_deferred_repository_call(self, service, links, network, github):
        _serve_repository(network)
        link = await _stored(links, url=_REPO_URL)

        plan = await service.enrich(link, skip_repository=True)
        outcome = await service.commit(plan)

        github.fetch_snapshot.assert_not_called()
        assert plan.repository_deferred
        assert outcome.kind == OutcomeKind.PARTIAL
        assert outcome.detail == "repository enrichment deferred to the next run"
