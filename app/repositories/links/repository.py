from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Mapping

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from app.core.collections import CollectionNames
from app.core.errors import LinkNotFound, PersistenceError
from app.models.links.document import OVERRIDE_FLAGS, LinkRecord, LinkStatus
from app.repositories.base import BaseRepository, to_storage

logger = logging.getLogger(__name__)


def _to_record(raw: dict[str, Any]) -> LinkRecord:
    raw.pop("_id", None)
    return LinkRecord(**raw)


class LinkRepository(BaseRepository):
    """MongoDB repository for the ``links`` collection (the Link Store)."""

    COLLECTION_NAME = CollectionNames.LINKS

    async def ensure_indexes(self) -> None:
        await self._col.create_index("id", unique=True)
        await self._col.create_index("user_id")
        await self._col.create_index("last_metadata_update")

    async def insert(self, record: LinkRecord) -> LinkRecord:
        try:
            await self._col.insert_one(to_storage(record.model_dump(mode="python")))
        except DuplicateKeyError as exc:
            raise PersistenceError(f"Link id={record.id} already exists") from exc
        except PyMongoError as exc:
            logger.exception("MongoDB insert failed for link id=%s", record.id)
            raise PersistenceError("Database write error") from exc
        return record

    async def get(self, link_id: str) -> LinkRecord:
        """Return the stored link.

        Raises:
            LinkNotFound: no link has this id.
            PersistenceError: MongoDB is unreachable.
        """
        try:
            raw = await self._col.find_one({"id": link_id})
        except PyMongoError as exc:
            raise PersistenceError(f"Database read error for link id={link_id}") from exc
        if raw is None:
            raise LinkNotFound(link_id)
        return _to_record(raw)

    async def list_stale(self, older_than: datetime, limit: int) -> list[LinkRecord]:
        """Links not enriched since *older_than*, oldest first, at most *limit*.

        Never-enriched links sort first.  Archived links are never selected.
        """
        query = {
            "status": {"$ne": LinkStatus.ARCHIVED.value},
            "$or": [
                {"last_metadata_update": None},
                {"last_metadata_update": {"$lt": to_storage(older_than)}},
            ],
        }
        try:
            cursor = (
                self._col.find(query)
                .sort([("last_metadata_update", ASCENDING), ("id", ASCENDING)])
                .limit(limit)
            )
            rows = await cursor.to_list(length=limit)
        except PyMongoError as exc:
            logger.exception("MongoDB stale-link query failed")
            raise PersistenceError("Database read error") from exc
        return [_to_record(row) for row in rows]

    async def update_fields(
        self,
        link_id: str,
        fields: Mapping[str, Any],
        respecting_overrides: bool = True,
    ) -> LinkRecord:
        """Write *fields* to one link and return the stored result.

        Each overridable field is written with its own conditional update
        (``{"<field>_overridden": {"$ne": True}}``), so a flag set by the
        user at any point before the write wins.  All other fields go out
        in a single update.
        """
        now = datetime.now(timezone.utc)
        plain: dict[str, Any] = {}
        guarded: dict[str, Any] = {}
        for name, value in fields.items():
            if respecting_overrides and name in OVERRIDE_FLAGS:
                guarded[name] = value
            else:
                plain[name] = value
        plain["updated_at"] = now

        try:
            for name, value in guarded.items():
                await self._col.update_one(
                    {"id": link_id, OVERRIDE_FLAGS[name]: {"$ne": True}},
                    {"$set": {name: to_storage(value)}},
                )
            result = await self._col.find_one_and_update(
                {"id": link_id},
                {"$set": to_storage(plain)},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            logger.exception("MongoDB update failed for link id=%s", link_id)
            raise PersistenceError("Database write error") from exc
        if result is None:
            raise LinkNotFound(link_id)
        return _to_record(result)

    async def mark_status(self, link_id: str, status: LinkStatus) -> None:
        try:
            result = await self._col.update_one(
                {"id": link_id},
                {
                    "$set": {
                        "status": LinkStatus(status).value,
                        "updated_at": to_storage(datetime.now(timezone.utc)),
                    }
                },
            )
        except PyMongoError as exc:
            raise PersistenceError("Database write error") from exc
        if result.matched_count == 0:
            raise LinkNotFound(link_id)

    async def record_failure(self, link_id: str) -> LinkRecord:
        """Atomically bump the link's consecutive fetch-failure counter."""
        try:
            result = await self._col.find_one_and_update(
                {"id": link_id},
                {"$inc": {"consecutive_failures": 1}},
                return_document=ReturnDocument.AFTER,
            )
        except PyMongoError as exc:
            raise PersistenceError("Database write error") from exc
        if result is None:
            raise LinkNotFound(link_id)
        return _to_record(result)
