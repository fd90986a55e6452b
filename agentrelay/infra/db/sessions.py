"""Session repository - MongoDB persistence for sessions and their messages."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import pymongo
from bson import ObjectId
from bson.errors import InvalidId

from agentrelay.models.session import MessageRecord, SessionKey, SessionRecord

logger = logging.getLogger(__name__)


class SessionRepo:
    """``SessionStore`` backed by the ``sessions`` and ``messages`` collections."""

    COLLECTION = "sessions"
    MESSAGES = "messages"

    def __init__(self, db) -> None:
        self._col = db[self.COLLECTION]
        self._messages = db[self.MESSAGES]

    async def get_active_session(self, key: SessionKey) -> SessionRecord | None:
        """Most recently updated active record for the key."""
        doc = await self._col.find_one(
            {"origin_id": key.origin_id, "actor_id": key.actor_id, "is_active": True},
            sort=[("updated_at", pymongo.DESCENDING)],
        )
        return SessionRecord.from_doc(doc) if doc else None

    async def create_session(
        self, key: SessionKey, workdir: str | None = None, identity: str | None = None
    ) -> str:
        """Insert a new active record. Returns the assigned id."""
        record = SessionRecord(
            origin_id=key.origin_id,
            actor_id=key.actor_id,
            identity=identity,
            workdir=workdir,
        )
        doc = record.to_doc()
        doc.pop("_id", None)
        result = await self._col.insert_one(doc)
        return str(result.inserted_id)

    async def update_identity(self, session_id: str, identity: str) -> None:
        await self._update(session_id, {"identity": identity})

    async def touch(self, session_id: str) -> None:
        await self._update(session_id, {})

    async def deactivate(self, session_id: str) -> None:
        await self._update(session_id, {"is_active": False})

    async def list_recent(self, actor_id: str, limit: int = 20) -> list[SessionRecord]:
        """Records for an actor, newest activity first."""
        cursor = (
            self._col.find({"actor_id": actor_id})
            .sort("updated_at", pymongo.DESCENDING)
            .limit(limit)
        )
        return [SessionRecord.from_doc(doc) async for doc in cursor]

    async def append_message(self, session_id: str, role: str, content: str) -> None:
        doc = MessageRecord(session_id=session_id, role=role, content=content).to_doc()
        doc.pop("_id", None)
        await self._messages.insert_one(doc)

    async def _update(self, session_id: str, updates: dict) -> bool:
        try:
            oid = ObjectId(session_id)
        except InvalidId:
            logger.debug("Invalid ObjectId: %s", session_id)
            return False
        updates = {**updates, "updated_at": datetime.now(timezone.utc)}
        result = await self._col.update_one({"_id": oid}, {"$set": updates})
        return result.matched_count > 0
