from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import app.workers.github as github_module
import app.workers.http as http_module
from app.core.config import settings
from app.main import app
from app.repositories.links.repository import LinkRepository
from app.repositories.organization.repository import (
    LanguageRepository,
    LicenseRepository,
    OrganizationRepository,
)


@pytest.fixture(autouse=True)
def fresh_http_clients():
    """Drop shared clients so respx can intercept the ones created in each test."""
    http_module._http_client = None
    github_module._github_client = None
    yield
    http_module._http_client = None
    github_module._github_client = None


@pytest.fixture
def client():
    """TestClient with lifespan startup/shutdown hooks fully mocked."""
    with (
        patch(
            "app.core.database.DatabaseManager.connect",
            new_callable=AsyncMock,
        ),
        patch(
            "app.core.database.DatabaseManager.disconnect",
            new_callable=AsyncMock,
        ),
        patch(
            "app.core.database.DatabaseManager.get_collection",
            return_value=MagicMock(),
        ),
        patch(
            "app.repositories.links.repository.LinkRepository.ensure_indexes",
            new_callable=AsyncMock,
        ),
        patch(
            "app.repositories.organization.repository.OrganizationRepository.ensure_indexes",
            new_callable=AsyncMock,
        ),
        patch("app.main.close_http_client", new_callable=AsyncMock),
        patch("app.main.close_github_client", new_callable=AsyncMock),
        patch.object(settings, "scheduler_enabled", False),
    ):
        with TestClient(app) as c:
            yield c


# ---------------------------------------------------------------------------
# In-memory MongoDB
# ---------------------------------------------------------------------------


@pytest.fixture
def mongo_db():
    return AsyncMongoMockClient()["test"]


@pytest.fixture
def links(mongo_db) -> LinkRepository:
    return LinkRepository(mongo_db["links"])


@pytest.fixture
def organization(mongo_db) -> OrganizationRepository:
    return OrganizationRepository(
        LanguageRepository(mongo_db["languages"]),
        LicenseRepository(mongo_db["licenses"]),
    )
