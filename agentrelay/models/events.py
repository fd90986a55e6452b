"""Decoded event domain models.

Decoders turn raw child output into these. Sessions forward them to
listeners and fold them into the current Turn.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar


class EventKind(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"
    STATUS = "status"
    IDENTITY = "identity"
    RESULT = "result"
    READY = "ready"
    PARSE_ERROR = "parse_error"


@dataclass(frozen=True)
class DecodedEvent:
    """Base class for every decoded event."""

    kind: ClassVar[EventKind]

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True)
class TextEvent(DecodedEvent):
    text: str = ""

    kind = EventKind.TEXT


@dataclass(frozen=True)
class ThinkingEvent(DecodedEvent):
    text: str = ""

    kind = EventKind.THINKING


@dataclass(frozen=True)
class ToolUseEvent(DecodedEvent):
    name: str = ""
    status: str = ""
    input: dict[str, Any] = field(default_factory=dict, compare=False)

    kind = EventKind.TOOL_USE


@dataclass(frozen=True)
class StatusEvent(DecodedEvent):
    text: str = ""

    kind = EventKind.STATUS


@dataclass(frozen=True)
class IdentityEvent(DecodedEvent):
    token: str = ""

    kind = EventKind.IDENTITY


@dataclass(frozen=True)
class ResultEvent(DecodedEvent):
    """Terminal record. ``final_output`` supersedes accumulated text when set."""

    final_output: str | None = None
    is_error: bool = False
    raw: dict[str, Any] = field(default_factory=dict, compare=False)

    kind = EventKind.RESULT

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class ReadyEvent(DecodedEvent):
    """The child appears to be waiting for input (interactive mode)."""

    output: str = ""

    kind = EventKind.READY

    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True)
class ParseErrorEvent(DecodedEvent):
    raw: str = ""
    error: str = ""

    kind = EventKind.PARSE_ERROR
