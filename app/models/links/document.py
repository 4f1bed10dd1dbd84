from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from urllib.parse import urlsplit
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

#: Derived fields a user can pin, mapped to the flag that protects them.
OVERRIDE_FLAGS: dict[str, str] = {
    "title": "title_overridden",
    "description": "description_overridden",
    "logo": "logo_overridden",
    "source_code_url": "source_code_url_overridden",
    "documentation_url": "documentation_url_overridden",
}

#: Fields populated from the repository provider.
REPOSITORY_FIELDS: tuple[str, ...] = (
    "github_stars",
    "github_archived",
    "primary_language",
    "secondary_language",
    "license",
    "last_commit_at",
)


class LinkStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    INACCESSIBLE = "inaccessible"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LinkRecord(BaseModel):
    """A bookmarked link as stored in the ``links`` collection.

    The pipeline only ever writes the derived, repository and bookkeeping
    fields; a derived field whose ``*_overridden`` flag is set belongs to the
    user and is left untouched.
    """

    model_config = ConfigDict(use_enum_values=True, validate_default=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    user_id: str
    url: str
    domain: str = ""

    # Derived
    title: str | None = None
    description: str | None = None
    logo: str | None = None
    status: LinkStatus = LinkStatus.ACTIVE
    source_code_url: str | None = None
    documentation_url: str | None = None

    # Repository
    github_stars: int | None = None
    github_archived: bool | None = None
    primary_language: str | None = None
    secondary_language: str | None = None
    license: str | None = None
    last_commit_at: datetime | None = None

    # Organization
    language_ids: list[str] = Field(default_factory=list)
    license_ids: list[str] = Field(default_factory=list)
    suggested_languages: list[str] = Field(default_factory=list)
    suggested_licenses: list[str] = Field(default_factory=list)

    # Manual overrides
    title_overridden: bool = False
    description_overridden: bool = False
    logo_overridden: bool = False
    source_code_url_overridden: bool = False
    documentation_url_overridden: bool = False
    user_touched: bool = False

    # Bookkeeping
    last_metadata_update: datetime | None = None
    consecutive_failures: int = 0
    repo_not_found_count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator(
        "last_commit_at", "last_metadata_update", "created_at", "updated_at"
    )
    @classmethod
    def _assume_utc(cls, value: datetime | None) -> datetime | None:
        # MongoDB hands datetimes back naive; they are always UTC.
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @classmethod
    def for_url(cls, user_id: str, url: str, **fields) -> LinkRecord:
        """Build a new, never-enriched record for *url*."""
        domain = (urlsplit(url).hostname or "").lower()
        return cls(user_id=user_id, url=url, domain=domain, **fields)

    def is_overridden(self, field: str) -> bool:
        flag = OVERRIDE_FLAGS.get(field)
        return bool(flag and getattr(self, flag))
