"""Session registry: the sole owner of live sessions."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

from agentrelay.config import AppConfig
from agentrelay.errors import SpawnError
from agentrelay.infra.process import ProcessLauncher
from agentrelay.models.session import SessionKey, SessionOptions
from agentrelay.services.session import Session

logger = logging.getLogger(__name__)


@dataclass
class _KeyLock:
    """A per-key lock and the number of callers holding or awaiting it."""

    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionRegistry:
    """Maps ``SessionKey`` to at most one live ``Session``.

    Create, remove and sweep are serialized per key by a lock owned by that
    key, so callers on distinct keys never wait on each other and no key can
    end up with two sessions at once. Turn-level exclusion is left to the
    session itself.
    """

    def __init__(
        self,
        config: AppConfig,
        launcher: ProcessLauncher | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._launcher = launcher or ProcessLauncher()
        self._clock = clock
        self._sessions: dict[SessionKey, Session] = {}
        self._locks: dict[SessionKey, _KeyLock] = {}
        self._sweeper_task: asyncio.Task | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, key: SessionKey) -> bool:
        return key in self._sessions

    def keys(self) -> list[SessionKey]:
        return list(self._sessions)

    def get(self, key: SessionKey) -> Session | None:
        """Lookup without creation. Closed sessions are never returned."""
        session = self._sessions.get(key)
        if session is None or session.is_closed:
            return None
        return session

    async def get_or_create(
        self, key: SessionKey, options: SessionOptions | None = None
    ) -> Session:
        """Return the live session for ``key``, creating and starting one if needed.

        With ``options.new_session`` any existing session is closed first.
        Identity and workdir seeds only apply to a freshly created session.
        """
        options = options or SessionOptions()
        async with self._locked(key):
            existing = self._sessions.get(key)
            if existing is not None:
                if options.new_session or existing.is_closed:
                    await self._evict(key, existing, "replaced")
                else:
                    if options.identity and existing.identity and options.identity != existing.identity:
                        logger.debug(
                            "Session %s keeps identity %s (requested %s)",
                            key, existing.identity, options.identity,
                        )
                    return existing

            session = Session(
                key,
                self._config,
                launcher=self._launcher,
                identity=options.identity,
                workdir=options.workdir,
                clock=self._clock,
            )
            self._sessions[key] = session
            try:
                await session.start()
            except SpawnError:
                self._sessions.pop(key, None)
                raise
            logger.info("Created session %s", key)
            return session

    async def remove(self, key: SessionKey) -> bool:
        """Close and evict the session for ``key``."""
        async with self._locked(key):
            session = self._sessions.get(key)
            if session is None:
                return False
            await self._evict(key, session, "removed")
        return True

    async def sweep_idle(
        self, max_idle: float | None = None, now: float | None = None
    ) -> list[SessionKey]:
        """Close and evict sessions idle longer than ``max_idle`` seconds.

        Sessions that already closed on their own are purged as well.
        Returns the evicted keys.
        """
        max_idle = max_idle if max_idle is not None else self._config.supervisor.idle_timeout
        now = now if now is not None else self._clock()
        candidates = [
            key for key, session in self._sessions.items()
            if session.is_closed or session.idle_for(now) > max_idle
        ]

        evicted: list[SessionKey] = []
        for key in candidates:
            async with self._locked(key):
                session = self._sessions.get(key)
                # Re-check: the session may have been replaced or used meanwhile
                if session is None:
                    continue
                if not session.is_closed and session.idle_for(now) <= max_idle:
                    continue
                logger.info("Evicting idle session %s (idle %.0fs)", key, session.idle_for(now))
                await self._evict(key, session, "idle")
            evicted.append(key)
        return evicted

    async def close_all(self) -> None:
        self.stop_sweeper()
        for key in list(self._sessions):
            await self.remove(key)

    # --- Sweeper ---

    def start_sweeper(self, interval: float | None = None) -> None:
        """Start the background idle sweep."""
        if self._sweeper_task is not None:
            return
        interval = interval if interval is not None else self._config.supervisor.sweep_interval
        self._sweeper_task = asyncio.ensure_future(self._sweep_loop(interval))
        logger.info(
            "Idle sweeper started (interval=%ss, idle_timeout=%ss)",
            interval, self._config.supervisor.idle_timeout,
        )

    def stop_sweeper(self) -> None:
        if self._sweeper_task is not None:
            self._sweeper_task.cancel()
            self._sweeper_task = None
            logger.info("Idle sweeper stopped")

    async def _sweep_loop(self, interval: float) -> None:
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.sweep_idle()
                except Exception:
                    logger.warning("Idle sweep failed", exc_info=True)
        except asyncio.CancelledError:
            pass

    # --- Internals ---

    @asynccontextmanager
    async def _locked(self, key: SessionKey) -> AsyncIterator[None]:
        """Hold the lock for ``key``; it is dropped once nobody holds or awaits it."""
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def _evict(self, key: SessionKey, session: Session, reason: str) -> None:
        if self._sessions.get(key) is session:
            del self._sessions[key]
        try:
            await session.close()
        except Exception:
            logger.warning("Error closing session %s (%s)", key, reason, exc_info=True)
