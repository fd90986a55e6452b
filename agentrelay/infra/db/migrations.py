"""MongoDB index creation."""

from __future__ import annotations

import logging

import pymongo

logger = logging.getLogger(__name__)


async def run_migrations(db) -> None:
    """Create indexes on startup. Safe to run repeatedly."""
    logger.info("Running MongoDB migrations...")

    sessions = db["sessions"]
    await sessions.create_index(
        [
            ("origin_id", pymongo.ASCENDING),
            ("actor_id", pymongo.ASCENDING),
            ("is_active", pymongo.ASCENDING),
        ]
    )
    await sessions.create_index(
        [("actor_id", pymongo.ASCENDING), ("updated_at", pymongo.DESCENDING)]
    )

    messages = db["messages"]
    await messages.create_index(
        [("session_id", pymongo.ASCENDING), ("created_at", pymongo.ASCENDING)]
    )

    logger.info("MongoDB migrations complete")
