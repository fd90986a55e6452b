"""Relay service - front-end facade joining the registry and persistence."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable

from agentrelay.config import AppConfig
from agentrelay.errors import AlreadyProcessing, TurnError
from agentrelay.infra.db.base import SessionStore
from agentrelay.models.agent import RunMode
from agentrelay.models.session import SessionKey, SessionOptions, SessionRecord, SessionStatus
from agentrelay.models.turn import ContentPart, TurnResult, normalize_parts, parts_text
from agentrelay.services.emitter import DeliverFn
from agentrelay.services.registry import SessionRegistry
from agentrelay.services.session import Session, SessionListener

logger = logging.getLogger(__name__)


class _IdentityRecorder(SessionListener):
    """Persists the identity token as soon as the child reports it."""

    def __init__(self, relay: RelayService, key: SessionKey) -> None:
        self._relay = relay
        self._key = key

    def on_identity(self, token: str) -> None:
        self._relay._record_identity(self._key, token)


class RelayService:
    """Platform-neutral chat operations over live sessions.

    Persistence is optional and strictly best-effort: reads happen before a
    Turn starts, writes run as background tasks whose failures are only
    logged.
    """

    def __init__(
        self,
        config: AppConfig,
        registry: SessionRegistry,
        store: SessionStore | None = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._store = store
        self._record_ids: dict[SessionKey, str] = {}
        self._pending: set[asyncio.Task] = set()

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    # --- Operations ---

    async def start_session(
        self,
        key: SessionKey,
        workdir: str | None = None,
        resume: str | None = None,
    ) -> Session:
        """Replace any session for ``key`` with a fresh one."""
        old_id = self._record_ids.pop(key, None)
        if old_id is None:
            record = await self._load_record(key)
            old_id = record.id if record else None
        if old_id is not None:
            self._write(self._store.deactivate(old_id), "deactivate")

        workdir = workdir or self._config.claude.resolved_workdir
        session = await self._registry.get_or_create(
            key, SessionOptions(identity=resume, workdir=workdir, new_session=True)
        )
        await self._create_record(key, workdir, resume)
        if self._config.claude.mode == RunMode.INTERACTIVE:
            await session.wait_ready()
        logger.info("Started session %s in %s", key, workdir)
        return session

    async def send(
        self,
        key: SessionKey,
        message: str | ContentPart | list[ContentPart],
        listener: SessionListener | None = None,
        on_progress: DeliverFn | None = None,
    ) -> TurnResult:
        """Run one Turn for ``key``, resuming the stored identity if needed.

        ``AlreadyProcessing`` propagates unchanged so the caller can tell
        the user to wait.
        """
        parts = normalize_parts(message)
        session = self._registry.get(key)
        if session is None:
            session = await self._resume(key)

        unsubscribe = session.subscribe(_IdentityRecorder(self, key))
        try:
            result = await session.send(parts, listener=listener, on_progress=on_progress)
        except AlreadyProcessing:
            raise
        except TurnError as e:
            self._record_message(key, "user", parts_text(parts))
            if e.partial_output:
                self._record_message(key, "assistant", e.partial_output)
            raise
        finally:
            unsubscribe()

        self._record_message(key, "user", parts_text(parts))
        self._record_message(key, "assistant", result.output)
        record_id = self._record_ids.get(key)
        if record_id is not None:
            self._write(self._store.touch(record_id), "touch")
        return result

    async def stop_session(self, key: SessionKey) -> bool:
        """Close the live session and deactivate its stored record."""
        removed = await self._registry.remove(key)
        record_id = self._record_ids.pop(key, None)
        if record_id is None:
            record = await self._load_record(key)
            record_id = record.id if record else None
        if record_id is not None:
            self._write(self._store.deactivate(record_id), "deactivate")
        return removed or record_id is not None

    def status(self, key: SessionKey) -> SessionStatus | None:
        session = self._registry.get(key)
        return session.status() if session else None

    async def list_sessions(self, actor_id: str, limit: int = 20) -> list[SessionRecord]:
        if self._store is None:
            return []
        return await self._store.list_recent(actor_id, limit=limit)

    async def close(self) -> None:
        """Close every session and wait for outstanding writes."""
        await self._registry.close_all()
        if self._pending:
            await asyncio.wait(list(self._pending))

    # --- Internals ---

    async def _resume(self, key: SessionKey) -> Session:
        record = await self._load_record(key)
        if record is None:
            workdir = self._config.claude.resolved_workdir
            session = await self._registry.get_or_create(key, SessionOptions(workdir=workdir))
            await self._create_record(key, workdir, None)
            return session
        self._record_ids[key] = record.id
        if record.identity:
            logger.info("Resuming session %s (%s)", key, record.short_identity)
        return await self._registry.get_or_create(
            key, SessionOptions(identity=record.identity, workdir=record.workdir)
        )

    async def _load_record(self, key: SessionKey) -> SessionRecord | None:
        if self._store is None:
            return None
        try:
            return await self._store.get_active_session(key)
        except Exception:
            logger.warning("Could not load stored session for %s", key, exc_info=True)
            return None

    async def _create_record(self, key: SessionKey, workdir: str | None, identity: str | None) -> None:
        if self._store is None:
            return
        try:
            self._record_ids[key] = await self._store.create_session(key, workdir, identity)
        except Exception:
            logger.warning("Could not store session for %s", key, exc_info=True)

    def _record_identity(self, key: SessionKey, token: str) -> None:
        record_id = self._record_ids.get(key)
        if record_id is not None:
            self._write(self._store.update_identity(record_id, token), "update_identity")

    def _record_message(self, key: SessionKey, role: str, content: str) -> None:
        record_id = self._record_ids.get(key)
        if record_id is not None and content:
            self._write(self._store.append_message(record_id, role, content), "append_message")

    def _write(self, coro: Awaitable[None], what: str) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(lambda t: self._write_done(t, what))

    def _write_done(self, task: asyncio.Task, what: str) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Persistence write %s failed", what, exc_info=exc)
