"""AppContext: wires DB, config, and services together."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from agentrelay.config import AppConfig, load_config
from agentrelay.infra.db.client import MongoClient

if TYPE_CHECKING:
    from pathlib import Path

    from agentrelay.infra.db.sessions import SessionRepo
    from agentrelay.services.registry import SessionRegistry
    from agentrelay.services.relay_service import RelayService

logger = logging.getLogger(__name__)


class AppContext:
    """Central wiring for all application dependencies.

    Lazily initializes services on first access. Call `initialize()` to
    set up the database connection and run migrations; pass
    ``use_store=False`` to run without persistence.
    """

    def __init__(self, config: AppConfig | None = None, config_path: Path | None = None) -> None:
        self.config = config or load_config(config_path)
        self._mongo: MongoClient | None = None
        self._session_repo: SessionRepo | None = None
        self._registry: SessionRegistry | None = None
        self._relay_service: RelayService | None = None
        self._use_store = True

    async def initialize(self, use_store: bool = True) -> None:
        """Initialize the database connection and run migrations."""
        self._use_store = use_store
        if use_store:
            from agentrelay.infra.db.migrations import run_migrations

            self._mongo = MongoClient(
                uri=self.config.mongodb.uri,
                database=self.config.mongodb.database,
            )
            await run_migrations(self._mongo.db)
        logger.info("AppContext initialized (store=%s)", use_store)

    async def close(self) -> None:
        """Close all sessions and connections."""
        if self._relay_service is not None:
            await self._relay_service.close()
        elif self._registry is not None:
            await self._registry.close_all()
        if self._mongo:
            self._mongo.close()
        logger.info("AppContext closed")

    @property
    def mongo(self) -> MongoClient:
        if self._mongo is None:
            raise RuntimeError("AppContext not initialized. Call initialize() first.")
        return self._mongo

    @property
    def session_repo(self) -> SessionRepo:
        if self._session_repo is None:
            from agentrelay.infra.db.sessions import SessionRepo

            self._session_repo = SessionRepo(self.mongo.db)
        return self._session_repo

    @property
    def registry(self) -> SessionRegistry:
        if self._registry is None:
            from agentrelay.services.registry import SessionRegistry

            self._registry = SessionRegistry(self.config)
        return self._registry

    @property
    def relay_service(self) -> RelayService:
        if self._relay_service is None:
            from agentrelay.services.relay_service import RelayService

            store = self.session_repo if self._use_store else None
            self._relay_service = RelayService(self.config, self.registry, store=store)
        return self._relay_service
