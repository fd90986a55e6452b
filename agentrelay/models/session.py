"""Session domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


@dataclass(frozen=True)
class SessionKey:
    """Composite (origin, actor) key.

    Compared structurally, so ids containing separator characters can never
    collide the way joined strings would.
    """

    origin_id: str
    actor_id: str

    def __post_init__(self) -> None:
        if not self.origin_id or not self.actor_id:
            raise ValueError("SessionKey needs both origin_id and actor_id")

    def __str__(self) -> str:
        return f"{self.origin_id}/{self.actor_id}"


class SessionState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    AWAITING_INPUT = "awaiting_input"
    PROCESSING = "processing"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        return self is SessionState.CLOSED


@dataclass(frozen=True)
class SessionOptions:
    """Creation options for ``SessionRegistry.get_or_create``.

    ``new_session`` tears down any live session for the key first, which is
    the only way a different identity may replace a latched one.
    """

    identity: str | None = None
    workdir: str | None = None
    new_session: bool = False


@dataclass(frozen=True)
class SessionStatus:
    """Point-in-time view of a live session for status displays."""

    key: SessionKey
    state: SessionState
    identity: str | None = None
    workdir: str = ""
    idle_seconds: float = 0.0
    processing: bool = False


@dataclass(frozen=True)
class SessionRecord:
    """Persisted session row, keyed by (origin, actor)."""

    origin_id: str
    actor_id: str
    identity: str | None = None
    workdir: str | None = None
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str | None = None

    @property
    def key(self) -> SessionKey:
        return SessionKey(self.origin_id, self.actor_id)

    @property
    def short_identity(self) -> str:
        return self.identity[:8] if self.identity else "pending"

    def to_doc(self) -> dict:
        doc: dict = {
            "origin_id": self.origin_id,
            "actor_id": self.actor_id,
            "identity": self.identity,
            "workdir": self.workdir,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        if self.id:
            doc["_id"] = self.id
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> SessionRecord:
        return cls(
            id=str(doc["_id"]),
            origin_id=doc["origin_id"],
            actor_id=doc["actor_id"],
            identity=doc.get("identity"),
            workdir=doc.get("workdir"),
            is_active=doc.get("is_active", True),
            created_at=doc.get("created_at", datetime.now(timezone.utc)),
            updated_at=doc.get("updated_at", datetime.now(timezone.utc)),
        )


@dataclass(frozen=True)
class MessageRecord:
    """One persisted conversation message."""

    session_id: str
    role: str
    content: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str | None = None

    def to_doc(self) -> dict:
        doc: dict = {
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at,
        }
        if self.id:
            doc["_id"] = self.id
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> MessageRecord:
        return cls(
            id=str(doc["_id"]),
            session_id=doc["session_id"],
            role=doc["role"],
            content=doc.get("content", ""),
            created_at=doc.get("created_at", datetime.now(timezone.utc)),
        )
