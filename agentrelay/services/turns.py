"""Single-flight Turn bookkeeping for one session."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from agentrelay.errors import AlreadyProcessing, TurnError, TurnTimeout
from agentrelay.models.events import DecodedEvent
from agentrelay.models.turn import ContentPart, Turn, TurnResult

logger = logging.getLogger(__name__)


class TurnCoordinator:
    """Owns the in-flight Turn of a session.

    ``begin`` is synchronous, so of several concurrent ``send`` calls exactly
    one claims the slot and the rest are rejected with ``AlreadyProcessing``
    before anything is awaited. Each Turn resolves exactly once: success,
    failure, or timeout, whichever comes first.
    """

    def __init__(
        self,
        timeout: float = 300.0,
        on_timeout: Callable[[Turn], None] | None = None,
    ) -> None:
        self.timeout = timeout
        self._on_timeout = on_timeout
        self._turn: Turn | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def current(self) -> Turn | None:
        return self._turn

    @property
    def busy(self) -> bool:
        return self._turn is not None and not self._turn.done

    def begin(self, parts: tuple[ContentPart, ...], timeout: float | None = None) -> Turn:
        if self.busy:
            raise AlreadyProcessing()
        loop = asyncio.get_running_loop()
        turn = Turn(parts=parts, future=loop.create_future(), timeout=timeout or self.timeout)
        turn.future.add_done_callback(self._on_done)
        self._turn = turn
        self._timer = loop.call_later(turn.timeout, self._expire, turn)
        logger.debug("Turn started (timeout=%ss)", turn.timeout)
        return turn

    def record(self, event: DecodedEvent) -> None:
        if self.busy:
            self._turn.record(event)

    def resolve(self, identity: str | None = None) -> TurnResult | None:
        """Complete the current Turn with its accumulated output."""
        turn = self._turn
        if turn is None or turn.done:
            return None
        if identity:
            turn.identity = identity
        result = turn.to_result()
        turn.future.set_result(result)
        logger.debug("Turn finished in %.1fs (%d events)", result.duration, len(result.events))
        return result

    def fail(self, error: TurnError) -> bool:
        """Fail the current Turn, keeping any partial output on the error."""
        turn = self._turn
        if turn is None or turn.done:
            return False
        if not error.partial_output:
            error.partial_output = turn.output
        turn.future.set_exception(error)
        logger.debug("Turn failed: %s", error)
        return True

    def _expire(self, turn: Turn) -> None:
        if turn is not self._turn or turn.done:
            return
        logger.warning("Turn timed out after %ss", turn.timeout)
        self.fail(TurnTimeout(f"Response timeout after {turn.timeout:g}s"))
        if self._on_timeout is not None:
            self._on_timeout(turn)

    def _on_done(self, future: asyncio.Future) -> None:
        if self._turn is not None and self._turn.future is future:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._turn = None
