from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.core.config import settings
from app.core.errors import (
    FETCH_ERRORS,
    EnrichmentError,
    RateLimited,
    RepositoryNotFound,
    UnsupportedRepositoryHost,
)
from app.models.enrichment.results import (
    EnrichmentOutcome,
    ExtractedField,
    ExtractedMetadata,
    LanguageDetection,
    OutcomeKind,
    RepositorySnapshot,
)
from app.models.links.document import REPOSITORY_FIELDS, LinkRecord, LinkStatus
from app.repositories.links.repository import LinkRepository
from app.repositories.organization.repository import OrganizationRepository
from app.services.enrichment.classifier import classify_link
from app.services.enrichment.extractor import extract_metadata, parse_document
from app.services.enrichment.languages import detect_languages
from app.workers.fetcher import fetch_content, probe_favicon
from app.workers.github import GitHubClient, get_github_client
from app.workers.resolver import resolve_url

logger = logging.getLogger(__name__)

PAGE_FIELDS = ("title", "description", "logo")
#: LinkRecord field -> ExtractedMetadata field
CLASSIFIED_FIELDS = {
    "source_code_url": "repository_url",
    "documentation_url": "documentation_url",
}
_BOOKKEEPING = frozenset({"last_metadata_update", "consecutive_failures", "repo_not_found_count"})


@dataclass
class EnrichmentPlan:
    """Everything learned about one link, before anything is written."""

    link: LinkRecord
    resolved_url: str | None = None
    metadata: ExtractedMetadata = field(default_factory=ExtractedMetadata)
    is_html: bool = False
    truncated: bool = False
    snapshot: RepositorySnapshot | None = None
    languages: LanguageDetection = field(default_factory=LanguageDetection)
    fetch_error: EnrichmentError | None = None
    repository_error: EnrichmentError | None = None
    repository_deferred: bool = False

    @property
    def rate_limited(self) -> RateLimited | None:
        if isinstance(self.repository_error, RateLimited):
            return self.repository_error
        return None


class EnrichmentService:
    """Runs the resolve → fetch → extract → classify → repository chain for a link
    and merges the result into the Link Store."""

    def __init__(
        self,
        links: LinkRepository,
        organization: OrganizationRepository,
        github: GitHubClient | None = None,
    ) -> None:
        self._links = links
        self._organization = organization
        self._github = github

    @property
    def github(self) -> GitHubClient:
        if self._github is None:
            self._github = get_github_client()
        return self._github

    # ------------------------------------------------------------------
    # Exposed operation
    # ------------------------------------------------------------------

    async def enrich_one(self, link_id: str) -> EnrichmentOutcome:
        """Synchronously enrich and commit a single link.

        Raises:
            LinkNotFound: unknown ``link_id``.
            PersistenceError: the Link Store failed.
        """
        link = await self._links.get(link_id)
        plan = await self.enrich(link)
        return await self.commit(plan)

    # ------------------------------------------------------------------
    # Enrichment (network, no writes)
    # ------------------------------------------------------------------

    async def enrich(self, link: LinkRecord, *, skip_repository: bool = False) -> EnrichmentPlan:
        """Run the chain for *link*; pipeline errors end up on the plan, not raised."""
        plan = EnrichmentPlan(link=link)
        try:
            resolved = await resolve_url(link.url)
            plan.resolved_url = resolved.url
            content = await fetch_content(resolved.url)
        except FETCH_ERRORS as exc:
            logger.warning("Fetch failed for link %s (%s): %s", link.id, link.url, exc)
            plan.fetch_error = exc
            return plan

        plan.truncated = content.truncated
        soup = parse_document(content.body, content.charset) if content.is_html else None
        if soup is not None:
            plan.is_html = True
            plan.metadata = extract_metadata(
                soup, content.url, description_max_length=settings.description_max_length
            )
            if plan.metadata.logo is None and settings.probe_favicon:
                favicon = await probe_favicon(content.url)
                if favicon:
                    plan.metadata.logo = ExtractedField(value=favicon, source="conventional_favicon")
        else:
            logger.info(
                "Link %s is %s, metadata unavailable", link.id, content.content_type or "untyped"
            )

        classification = classify_link(content.url, soup)
        plan.metadata.repository_url = classification.repository_url
        plan.metadata.documentation_url = classification.documentation_url

        repository_url = plan.metadata.value("repository_url")
        if repository_url:
            if skip_repository:
                plan.repository_deferred = True
            else:
                await self._enrich_repository(plan, repository_url)
        return plan

    async def _enrich_repository(self, plan: EnrichmentPlan, repository_url: str) -> None:
        try:
            plan.snapshot = await self.github.fetch_snapshot(repository_url)
        except UnsupportedRepositoryHost as exc:
            logger.debug("Skipping repository enrichment for %s: %s", repository_url, exc)
            return
        except EnrichmentError as exc:
            logger.warning(
                "Repository enrichment failed for link %s (%s): %s", plan.link.id, repository_url, exc
            )
            plan.repository_error = exc
            return
        plan.languages = detect_languages(plan.snapshot.languages, settings.secondary_language_ratio)

    # ------------------------------------------------------------------
    # Commit (writes, no network)
    # ------------------------------------------------------------------

    async def commit(self, plan: EnrichmentPlan) -> EnrichmentOutcome:
        """Persist *plan* field by field, never touching overridden fields."""
        link = plan.link
        now = datetime.now(timezone.utc)

        if plan.fetch_error is not None:
            return await self._commit_failure(link, plan.fetch_error, now)

        fields: dict[str, Any] = {}
        missing: list[str] = []

        for name in PAGE_FIELDS:
            value = plan.metadata.value(name)
            if value is None:
                missing.append(name)
            elif not link.is_overridden(name):
                fields[name] = value
        for name, source in CLASSIFIED_FIELDS.items():
            value = plan.metadata.value(source)
            if value is not None and not link.is_overridden(name):
                fields[name] = value

        if plan.snapshot is not None:
            fields.update(self._repository_fields(plan.snapshot, plan.languages))
            fields.update(await self._organization_fields(link, plan))
        elif isinstance(plan.repository_error, RepositoryNotFound):
            not_found = link.repo_not_found_count + 1
            fields["repo_not_found_count"] = not_found
            if not_found >= settings.repo_not_found_threshold:
                fields.update({name: None for name in REPOSITORY_FIELDS})
        elif plan.repository_error is not None or plan.repository_deferred:
            missing.extend(REPOSITORY_FIELDS)

        fields["consecutive_failures"] = 0
        fields["last_metadata_update"] = now
        updated = await self._links.update_fields(link.id, fields)

        # a field pinned by the user after selection kept its value, not ours
        changed = [
            name
            for name, value in fields.items()
            if name not in _BOOKKEEPING
            and not updated.is_overridden(name)
            and getattr(updated, name) == value
            and value != getattr(link, name)
        ]
        if link.status == LinkStatus.INACCESSIBLE:
            await self._links.mark_status(link.id, LinkStatus.ACTIVE)
            changed.append("status")
            logger.info("Link %s is reachable again, restored to active", link.id)

        error = plan.repository_error
        kind = OutcomeKind.PARTIAL if missing or error is not None else OutcomeKind.SUCCESS
        if plan.repository_deferred and error is None:
            detail = "repository enrichment deferred to the next run"
        else:
            detail = str(error) if error is not None else None
        outcome = EnrichmentOutcome(
            link_id=link.id,
            kind=kind,
            changed_fields=changed,
            missing_fields=missing,
            error_kind=error.kind if error is not None else None,
            detail=detail,
            retry_after=plan.rate_limited.retry_after if plan.rate_limited else None,
        )
        logger.info(
            "Enriched link %s: %s (changed=%s missing=%s)",
            link.id,
            outcome.kind.value,
            ",".join(changed) or "-",
            ",".join(missing) or "-",
        )
        return outcome

    async def _commit_failure(
        self, link: LinkRecord, error: EnrichmentError, now: datetime
    ) -> EnrichmentOutcome:
        failed = await self._links.record_failure(link.id)
        await self._links.update_fields(link.id, {"last_metadata_update": now})
        changed: list[str] = []
        if (
            failed.consecutive_failures >= settings.failure_threshold
            and failed.status == LinkStatus.ACTIVE
        ):
            await self._links.mark_status(link.id, LinkStatus.INACCESSIBLE)
            changed.append("status")
            logger.warning(
                "Link %s marked inaccessible after %d consecutive failures",
                link.id,
                failed.consecutive_failures,
            )
        return EnrichmentOutcome(
            link_id=link.id,
            kind=OutcomeKind.FAILURE,
            changed_fields=changed,
            error_kind=error.kind,
            detail=str(error),
        )

    @staticmethod
    def _repository_fields(
        snapshot: RepositorySnapshot, languages: LanguageDetection
    ) -> dict[str, Any]:
        primary, secondary = languages.primary, languages.secondary
        return {
            "github_stars": snapshot.stars,
            "github_archived": snapshot.archived,
            "license": snapshot.license,
            "last_commit_at": snapshot.last_commit_at,
            "primary_language": primary.name if primary else None,
            "secondary_language": secondary.name if secondary else None,
            "repo_not_found_count": 0,
        }

    async def _organization_fields(self, link: LinkRecord, plan: EnrichmentPlan) -> dict[str, Any]:
        """Associate known languages/licenses on first enrichment, suggest afterwards.

        Names the user has never created are always suggestions.
        """
        auto_populate = link.last_metadata_update is None and not link.user_touched

        language_ids = list(link.language_ids)
        suggested_languages: list[str] = []
        for name in plan.languages.labels:
            ref = await self._organization.find_or_suggest_language(link.user_id, name)
            if ref.is_candidate or ref.id is None:
                suggested_languages.append(ref.name)
            elif ref.id in language_ids:
                continue
            elif auto_populate:
                language_ids.append(ref.id)
            else:
                suggested_languages.append(ref.name)

        license_ids = list(link.license_ids)
        suggested_licenses: list[str] = []
        identifier = plan.snapshot.license if plan.snapshot else None
        if identifier:
            ref = await self._organization.find_or_suggest_license(link.user_id, identifier)
            if ref.is_candidate or ref.id is None:
                suggested_licenses.append(ref.identifier)
            elif ref.id not in license_ids:
                if auto_populate:
                    license_ids.append(ref.id)
                else:
                    suggested_licenses.append(ref.identifier)

        return {
            "language_ids": language_ids,
            "license_ids": license_ids,
            "suggested_languages": suggested_languages,
            "suggested_licenses": suggested_licenses,
        }
