"""Transient values produced while enriching a link.

None of these are persisted as-is; the enrichment service merges them into a
``LinkRecord`` field by field.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field

from app.core.errors import ErrorKind


class ExtractedField(BaseModel):
    value: str
    #: Name of the fallback rule that produced ``value``.
    source: str


class ExtractedMetadata(BaseModel):
    title: ExtractedField | None = None
    description: ExtractedField | None = None
    logo: ExtractedField | None = None
    repository_url: ExtractedField | None = None
    documentation_url: ExtractedField | None = None

    def value(self, name: str) -> str | None:
        field: ExtractedField | None = getattr(self, name)
        return field.value if field is not None else None


class RepositorySnapshot(BaseModel):
    """Repository data as reported by the provider at ``fetched_at``."""

    full_name: str
    stars: int
    languages: dict[str, int] = Field(default_factory=dict)
    license: str | None = None
    archived: bool = False
    last_commit_at: datetime | None = None
    fetched_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class LanguageShare(BaseModel):
    name: str
    bytes: int
    percentage: float


class LanguageDetection(BaseModel):
    primary: LanguageShare | None = None
    secondary: LanguageShare | None = None

    @property
    def labels(self) -> list[str]:
        return [share.name for share in (self.primary, self.secondary) if share]


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


class EnrichmentOutcome(BaseModel):
    """Result of one link's pass through the pipeline."""

    link_id: str
    kind: OutcomeKind
    changed_fields: list[str] = Field(default_factory=list)
    missing_fields: list[str] = Field(default_factory=list)
    error_kind: ErrorKind | None = None
    detail: str | None = None
    retry_after: float | None = None


class BatchSummary(BaseModel):
    """What one scheduled run did, reported to callers and logs."""

    started_at: datetime
    finished_at: datetime | None = None
    selected: int = 0
    skipped: int = 0
    aborted: bool = False
    deferred_repository: bool = False
    counts: dict[OutcomeKind, int] = Field(
        default_factory=lambda: {kind: 0 for kind in OutcomeKind}
    )
    outcomes: list[EnrichmentOutcome] = Field(default_factory=list)
    error: str | None = None

    def record(self, outcome: EnrichmentOutcome) -> None:
        self.outcomes.append(outcome)
        self.counts[outcome.kind] += 1
