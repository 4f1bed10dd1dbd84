"""Integration tests.

These tests exercise the full request → service → repository → database pipeline.

What is mocked:
  - MongoDB replaced with an in-memory AsyncMongoMockClient (no Docker needed)
  - External HTTP calls mocked per-test with respx

What is NOT mocked (runs real code):
  - FastAPI routes, lifespan, dependency injection
  - EnrichmentService and EnrichmentScheduler
  - LinkRepository and OrganizationRepository
  - Resolver, fetcher, extraction and classification
"""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import httpx
import pytest
import respx
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

from app.core.config import settings
from app.main import app
from app.models.links.document import LinkRecord
from app.repositories.links.repository import LinkRepository


_HTML = """<!DOCTYPE html>
<html><head>
  <title>Example Domain</title>
  <meta name="description" content="This domain is for use in examples.">
  <link rel="icon" href="/favicon.png">
</head><body><p>Hello</p></body></html>"""
_FAKE_RESPONSE = httpx.Response(
    200,
    headers={"content-type": "text/html; charset=utf-8"},
    text=_HTML,
)


@pytest.fixture
def mongo_client():
    return AsyncMongoMockClient()


@pytest.fixture
def link_repo(mongo_client) -> LinkRepository:
    return LinkRepository(mongo_client[settings.mongo_db]["links"])


@pytest.fixture
def integration_client(mongo_client):
    """Full-stack client with in-memory MongoDB, no timer and no real HTTP traffic."""
    with (
        patch("app.core.database.AsyncIOMotorClient", return_value=mongo_client),
        patch.object(settings, "scheduler_enabled", False),
    ):
        with TestClient(app) as client:
            yield client


def _seed(repo: LinkRepository, url: str) -> LinkRecord:
    return asyncio.run(repo.insert(LinkRecord.for_url("user-1", url)))


def _load(repo: LinkRepository, link_id: str) -> LinkRecord:
    return asyncio.run(repo.get(link_id))


# ── POST /links/{id}/enrich ────────────────────────────────────────────────────

class TestIntegrationEnrich:
    @respx.mock
    def test_enrich_fetches_and_stores(self, integration_client, link_repo):
        respx.get("https://example.com/").mock(return_value=_FAKE_RESPONSE)
        link = _seed(link_repo, "https://example.com/")

        resp = integration_client.post(f"/links/{link.id}/enrich")

        assert resp.status_code == 200
        assert resp.json()["kind"] == "success"
        stored = _load(link_repo, link.id)
        assert stored.title == "Example Domain"
        assert stored.description == "This domain is for use in examples."
        assert stored.logo == "https://example.com/favicon.png"

    @respx.mock
    def test_redirected_link_keeps_its_url(self, integration_client, link_repo):
        respx.get("https://old.example/").mock(
            return_value=httpx.Response(301, headers={"location": "https://example.com/"})
        )
        respx.get("https://example.com/").mock(return_value=_FAKE_RESPONSE)
        link = _seed(link_repo, "https://old.example/")

        resp = integration_client.post(f"/links/{link.id}/enrich")

        assert resp.status_code == 200
        stored = _load(link_repo, link.id)
        assert stored.url == "https://old.example/"
        assert stored.title == "Example Domain"

    @respx.mock
    def test_unreachable_link_is_a_failure_outcome(self, integration_client, link_repo):
        respx.get("https://down.example/").mock(side_effect=httpx.ConnectError("refused"))
        link = _seed(link_repo, "https://down.example/")

        resp = integration_client.post(f"/links/{link.id}/enrich")

        assert resp.status_code == 200
        body = resp.json()
        assert body["kind"] == "failure"
        assert body["error_kind"] == "unreachable_host"
        assert _load(link_repo, link.id).consecutive_failures == 1

    def test_unknown_link_returns_404(self, integration_client):
        resp = integration_client.post("/links/does-not-exist/enrich")
        assert resp.status_code == 404


# ── Scheduler ──────────────────────────────────────────────────────────────────

class TestIntegrationScheduler:
    @respx.mock
    def test_manual_run_then_status(self, integration_client, link_repo):
        respx.get("https://example.com/").mock(return_value=_FAKE_RESPONSE)
        respx.get("https://down.example/").mock(side_effect=httpx.ConnectError("refused"))
        good = _seed(link_repo, "https://example.com/")
        bad = _seed(link_repo, "https://down.example/")

        run = integration_client.post("/scheduler/run")

        assert run.status_code == 200
        summary = run.json()
        assert summary["selected"] == 2
        assert summary["counts"] == {"success": 1, "partial": 0, "failure": 1}
        assert _load(link_repo, good.id).title == "Example Domain"
        assert _load(link_repo, bad.id).consecutive_failures == 1

        status = integration_client.get("/scheduler").json()
        assert status["state"] == "idle"
        assert status["runs_completed"] == 1
        assert status["last_summary"]["selected"] == 2

    def test_nothing_stale(self, integration_client):
        run = integration_client.post("/scheduler/run")
        assert run.status_code == 200
        assert run.json()["selected"] == 0
