from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from app.core.database import db
from app.core.errors import LinkNotFound, PersistenceError
from app.models.common import ErrorResponse
from app.models.enrichment.results import EnrichmentOutcome
from app.repositories.links.repository import LinkRepository
from app.repositories.organization.repository import OrganizationRepository
from app.services.enrichment.service import EnrichmentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/links", tags=["links"])


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def _get_service() -> EnrichmentService:
    """FastAPI dependency that builds an ``EnrichmentService`` for each request."""
    return EnrichmentService(
        LinkRepository.from_db(db),
        OrganizationRepository.from_db(db),
    )


# ---------------------------------------------------------------------------
# POST /links/{link_id}/enrich
# ---------------------------------------------------------------------------


@router.post(
    "/{link_id}/enrich",
    response_model=EnrichmentOutcome,
    responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Enrich a single link now",
)
async def enrich_link(
    link_id: str,
    service: EnrichmentService = Depends(_get_service),
) -> EnrichmentOutcome:
    """Run the enrichment pipeline for one link and commit the result.

    Blocks until the link has been fetched and written.  Pipeline problems
    such as an unreachable host are reported in the outcome, not as HTTP
    errors.

    - **200**: outcome of the run (``success``, ``partial`` or ``failure``)
    - **404**: no link with this id
    - **500**: database failure
    """
    try:
        return await service.enrich_one(link_id)
    except LinkNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except PersistenceError as exc:
        logger.error("POST /links/%s/enrich DB error: %s", link_id, exc)
        raise HTTPException(status_code=500, detail=str(exc))
