"""Rate-limited delivery of accumulated Turn progress."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable

from agentrelay.models.events import (
    DecodedEvent,
    ParseErrorEvent,
    ResultEvent,
    StatusEvent,
    TextEvent,
    ThinkingEvent,
    ToolUseEvent,
)

logger = logging.getLogger(__name__)

THINKING_PREVIEW = 150


@dataclass(frozen=True)
class EmitterSnapshot:
    """Everything accumulated so far in the Turn, not a diff."""

    text: str = ""
    thinking: str = ""
    status: str = ""
    tools: tuple[str, ...] = ()
    parse_errors: int = 0
    event_count: int = 0
    final: bool = False

    def render(self) -> str:
        """Plain-text view: tool and thinking lines, then the reply text."""
        lines: list[str] = []
        for tool in self.tools:
            lines.append(f"[tool] {tool}")
        if self.thinking:
            preview = self.thinking.strip().replace("\n", " ")
            if len(preview) > THINKING_PREVIEW:
                preview = preview[:THINKING_PREVIEW] + "..."
            lines.append(f"[thinking] {preview}")
        if self.text:
            if lines:
                lines.append("")
            lines.append(self.text)
        if not lines:
            return self.status or "Processing..."
        return "\n".join(lines)


DeliverFn = Callable[[EmitterSnapshot], "Awaitable[None] | None"]


class ThrottledEmitter:
    """Coalesces high-frequency events into at most one delivery per interval.

    Intermediate deliveries are spaced at least ``interval`` seconds apart,
    counting from ``arm()``. ``finish()`` always performs one final delivery
    with the full content, whether or not the interval has elapsed. A failing
    callback is logged and never interrupts the Turn.
    """

    def __init__(
        self,
        deliver: DeliverFn,
        interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._deliver_fn = deliver
        self.interval = interval
        self._clock = clock
        self._timer: asyncio.TimerHandle | None = None
        self._inflight: asyncio.Future | None = None
        self._armed = False
        self._finishing = False
        self._reset()

    def _reset(self) -> None:
        self._text = ""
        self._final_text: str | None = None
        self._thinking = ""
        self._status = ""
        self._tools: list[str] = []
        self._parse_errors = 0
        self._event_count = 0
        self._dirty = False
        self._last_delivery = self._clock()
        self.deliveries = 0

    @property
    def armed(self) -> bool:
        return self._armed

    def arm(self) -> None:
        """Reset state for a new Turn."""
        self._cancel_timer()
        self._reset()
        self._finishing = False
        self._armed = True

    def snapshot(self, final: bool = False) -> EmitterSnapshot:
        return EmitterSnapshot(
            text=self._final_text if self._final_text is not None else self._text,
            thinking=self._thinking,
            status=self._status,
            tools=tuple(self._tools),
            parse_errors=self._parse_errors,
            event_count=self._event_count,
            final=final,
        )

    def push(self, event: DecodedEvent) -> None:
        if not self._armed:
            return
        self._event_count += 1
        if isinstance(event, TextEvent):
            self._text += event.text
        elif isinstance(event, ThinkingEvent):
            self._thinking += event.text
        elif isinstance(event, ToolUseEvent):
            self._tools.append(event.status)
            self._status = event.status
        elif isinstance(event, StatusEvent):
            self._status = event.text
        elif isinstance(event, ResultEvent) and event.final_output:
            self._final_text = event.final_output
        elif isinstance(event, ParseErrorEvent):
            self._parse_errors += 1
        self._dirty = True
        self._schedule()

    async def finish(self) -> EmitterSnapshot:
        """Deliver the final snapshot unconditionally and disarm."""
        self._finishing = True
        self._cancel_timer()
        if self._inflight is not None:
            await asyncio.wait([self._inflight])
        snapshot = self.snapshot(final=True)
        was_armed = self._armed
        self._armed = False
        if was_armed:
            await self._deliver(snapshot)
        return snapshot

    def _schedule(self) -> None:
        if self._finishing or self._timer is not None or self._inflight is not None:
            return
        wait = self.interval - (self._clock() - self._last_delivery)
        if wait <= 0:
            self._start_delivery()
        else:
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(wait, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        if self._armed and not self._finishing and self._dirty and self._inflight is None:
            self._start_delivery()

    def _start_delivery(self) -> None:
        snapshot = self.snapshot()
        self._dirty = False
        self._last_delivery = self._clock()
        self.deliveries += 1
        self._inflight = asyncio.ensure_future(self._deliver(snapshot))
        self._inflight.add_done_callback(self._after_delivery)

    def _after_delivery(self, _future: asyncio.Future) -> None:
        self._inflight = None
        if self._armed and not self._finishing and self._dirty:
            self._schedule()

    async def _deliver(self, snapshot: EmitterSnapshot) -> None:
        try:
            result = self._deliver_fn(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("Progress delivery failed")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
