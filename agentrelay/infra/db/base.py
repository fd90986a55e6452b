"""Session persistence protocol definition."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from agentrelay.models.session import SessionKey, SessionRecord


@runtime_checkable
class SessionStore(Protocol):
    """Durable record of which identity token belongs to which key.

    The relay calls these at Turn boundaries only and never lets their
    latency or failures hold up a Turn.
    """

    async def get_active_session(self, key: SessionKey) -> SessionRecord | None:
        """Return the active record for ``key``, if any."""
        ...

    async def create_session(
        self, key: SessionKey, workdir: str | None = None, identity: str | None = None
    ) -> str:
        """Create an active record and return its id."""
        ...

    async def update_identity(self, session_id: str, identity: str) -> None:
        ...

    async def touch(self, session_id: str) -> None:
        ...

    async def deactivate(self, session_id: str) -> None:
        ...

    async def list_recent(self, actor_id: str, limit: int = 20) -> list[SessionRecord]:
        ...

    async def append_message(self, session_id: str, role: str, content: str) -> None:
        ...
