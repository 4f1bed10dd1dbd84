"""Per-user languages and licenses (the Organization Store).

Lookups are case-insensitive.  A name the user does not know yet comes back
as a *candidate* reference (``id=None``) instead of being created, so that
the pipeline can suggest it without silently growing the user's catalogue.
"""

from __future__ import annotations

import logging
from uuid import uuid4

from pymongo.errors import PyMongoError

from app.core.collections import CollectionNames
from app.core.database import DatabaseManager
from app.core.errors import PersistenceError
from app.models.organization.document import LanguageRef, LicenseRef
from app.repositories.base import BaseRepository

logger = logging.getLogger(__name__)


class LanguageRepository(BaseRepository):
    COLLECTION_NAME = CollectionNames.LANGUAGES

    async def ensure_indexes(self) -> None:
        await self._col.create_index([("user_id", 1), ("name_lower", 1)], unique=True)

    async def find_or_suggest(self, user_id: str, name: str) -> LanguageRef:
        try:
            raw = await self._col.find_one({"user_id": user_id, "name_lower": name.strip().lower()})
        except PyMongoError as exc:
            raise PersistenceError("Database read error") from exc
        if raw is None:
            return LanguageRef(name=name.strip(), is_candidate=True)
        return LanguageRef(id=raw["id"], name=raw["name"])

    async def add(self, user_id: str, name: str) -> LanguageRef:
        ref = LanguageRef(id=uuid4().hex, name=name.strip())
        try:
            await self._col.insert_one(
                {"id": ref.id, "user_id": user_id, "name": ref.name, "name_lower": ref.name.lower()}
            )
        except PyMongoError as exc:
            raise PersistenceError("Database write error") from exc
        return ref


class LicenseRepository(BaseRepository):
    COLLECTION_NAME = CollectionNames.LICENSES

    async def ensure_indexes(self) -> None:
        await self._col.create_index(
            [("user_id", 1), ("identifier_lower", 1)], unique=True
        )

    async def find_or_suggest(self, user_id: str, identifier: str) -> LicenseRef:
        key = identifier.strip().lower()
        try:
            raw = await self._col.find_one(
                {
                    "user_id": user_id,
                    "$or": [{"identifier_lower": key}, {"name_lower": key}],
                }
            )
        except PyMongoError as exc:
            raise PersistenceError("Database read error") from exc
        if raw is None:
            return LicenseRef(identifier=identifier.strip(), is_candidate=True)
        return LicenseRef(id=raw["id"], identifier=raw["identifier"], name=raw.get("name"))

    async def add(self, user_id: str, identifier: str, name: str | None = None) -> LicenseRef:
        ref = LicenseRef(id=uuid4().hex, identifier=identifier.strip(), name=name)
        try:
            await self._col.insert_one(
                {
                    "id": ref.id,
                    "user_id": user_id,
                    "identifier": ref.identifier,
                    "identifier_lower": ref.identifier.lower(),
                    "name": name,
                    "name_lower": name.lower() if name else None,
                }
            )
        except PyMongoError as exc:
            raise PersistenceError("Database write error") from exc
        return ref


class OrganizationRepository:
    """Facade over the language and license collections."""

    def __init__(self, languages: LanguageRepository, licenses: LicenseRepository) -> None:
        self.languages = languages
        self.licenses = licenses

    @classmethod
    def from_db(cls, db: DatabaseManager) -> OrganizationRepository:
        return cls(LanguageRepository.from_db(db), LicenseRepository.from_db(db))

    async def ensure_indexes(self) -> None:
        await self.languages.ensure_indexes()
        await self.licenses.ensure_indexes()

    async def find_or_suggest_language(self, user_id: str, name: str) -> LanguageRef:
        return await self.languages.find_or_suggest(user_id, name)

    async def find_or_suggest_license(self, user_id: str, identifier: str) -> LicenseRef:
        return await self.licenses.find_or_suggest(user_id, identifier)

    async def add_language(self, user_id: str, name: str) -> LanguageRef:
        return await self.languages.add(user_id, name)

    async def add_license(self, user_id: str, identifier: str, name: str | None = None) -> LicenseRef:
        return await self.licenses.add(user_id, identifier, name)
