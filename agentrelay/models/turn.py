"""Turn input/output domain models."""

from __future__ import annotations

import asyncio
import base64
import time
from dataclasses import dataclass, field

from agentrelay.models.events import DecodedEvent, IdentityEvent, ResultEvent, TextEvent


@dataclass(frozen=True)
class TextPart:
    text: str

    def to_wire(self) -> dict:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ImagePart:
    """Binary attachment tagged with its media type."""

    data: bytes
    media_type: str = "image/png"

    def __post_init__(self) -> None:
        if not self.media_type.startswith("image/"):
            raise ValueError(f"Unsupported attachment media type: {self.media_type}")

    def to_wire(self) -> dict:
        return {
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": self.media_type,
                "data": base64.b64encode(self.data).decode("ascii"),
            },
        }


ContentPart = TextPart | ImagePart


def normalize_parts(message: str | ContentPart | list[ContentPart]) -> tuple[ContentPart, ...]:
    """Accept a bare string, one part, or a list of parts."""
    if isinstance(message, str):
        parts: tuple[ContentPart, ...] = (TextPart(message),)
    elif isinstance(message, (TextPart, ImagePart)):
        parts = (message,)
    else:
        parts = tuple(message)
    if not parts:
        raise ValueError("Turn input must contain at least one content part")
    return parts


def parts_text(parts: tuple[ContentPart, ...]) -> str:
    """Plain text view of the input, attachments omitted."""
    return "\n".join(p.text for p in parts if isinstance(p, TextPart))


@dataclass(frozen=True)
class TurnResult:
    output: str
    identity: str | None = None
    events: tuple[DecodedEvent, ...] = ()
    duration: float = 0.0


@dataclass
class Turn:
    """One in-flight request/response cycle.

    Mutated only by the owning session's coordinator. ``future`` resolves
    exactly once.
    """

    parts: tuple[ContentPart, ...]
    future: asyncio.Future
    timeout: float = 300.0
    started_at: float = field(default_factory=time.monotonic)
    events: list[DecodedEvent] = field(default_factory=list)
    text: str = ""
    final_output: str | None = None
    identity: str | None = None

    @property
    def output(self) -> str:
        if self.final_output is not None:
            return self.final_output
        return self.text

    @property
    def done(self) -> bool:
        return self.future.done()

    def record(self, event: DecodedEvent) -> None:
        self.events.append(event)
        if isinstance(event, TextEvent):
            self.text += event.text
        elif isinstance(event, ResultEvent) and event.final_output:
            self.final_output = event.final_output
        elif isinstance(event, IdentityEvent):
            self.identity = event.token

    def to_result(self) -> TurnResult:
        return TurnResult(
            output=self.output,
            identity=self.identity,
            events=tuple(self.events),
            duration=time.monotonic() - self.started_at,
        )
