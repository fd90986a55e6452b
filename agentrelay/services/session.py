"""Session: one conversation backed by zero or one live child process.

State machine::

    IDLE -> STARTING -> AWAITING_INPUT <-> PROCESSING -> CLOSED
               \\-> CLOSED (spawn failure)

Stream mode spawns one child per Turn and keeps continuity through the
latched identity token (``--resume``). Interactive mode keeps a single
pseudo-terminal child alive across Turns. A CLOSED session is never reused;
only ``SessionRegistry`` creates sessions.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Callable

from agentrelay.config import AppConfig
from agentrelay.errors import (
    ChildIOError,
    ProcessExit,
    SessionClosedError,
    SpawnError,
    TurnCancelled,
    TurnError,
)
from agentrelay.infra.agents.claude_code import ClaudeCodeBackend
from agentrelay.infra.decoder.stream_json import StreamJsonDecoder
from agentrelay.infra.decoder.terminal import TerminalDecoder
from agentrelay.infra.process import ChildProcess, ProcessLauncher
from agentrelay.models.agent import RunMode, StartParams
from agentrelay.models.events import (
    DecodedEvent,
    IdentityEvent,
    ParseErrorEvent,
    ReadyEvent,
    StatusEvent,
    TextEvent,
    ThinkingEvent,
    ToolUseEvent,
)
from agentrelay.models.session import SessionKey, SessionState, SessionStatus
from agentrelay.models.turn import (
    ContentPart,
    ImagePart,
    TextPart,
    Turn,
    TurnResult,
    normalize_parts,
    parts_text,
)
from agentrelay.services.emitter import DeliverFn, ThrottledEmitter
from agentrelay.services.turns import TurnCoordinator

logger = logging.getLogger(__name__)

EXIT_DIRECTIVE = b"/exit\r"


class SessionListener:
    """Observer for session events; override the hooks you need."""

    def on_text(self, text: str) -> None: ...

    def on_thinking(self, text: str) -> None: ...

    def on_tool_use(self, name: str, status: str) -> None: ...

    def on_status(self, text: str) -> None: ...

    def on_ready(self) -> None: ...

    def on_identity(self, token: str) -> None: ...

    def on_parse_error(self, raw: str, error: str) -> None: ...

    def on_close(self, reason: str) -> None: ...


class Session:
    """A resumable conversation bound to one ``SessionKey``."""

    def __init__(
        self,
        key: SessionKey,
        config: AppConfig,
        launcher: ProcessLauncher | None = None,
        identity: str | None = None,
        workdir: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self._config = config
        self._launcher = launcher or ProcessLauncher()
        self._backend = ClaudeCodeBackend(config.claude.executable)
        self.mode = config.claude.mode
        self._identity = identity or None
        self.workdir = workdir or config.claude.resolved_workdir
        self._clock = clock
        self._state = SessionState.IDLE
        self.last_activity = clock()

        self._turns = TurnCoordinator(
            timeout=config.supervisor.turn_timeout,
            on_timeout=self._on_turn_timeout,
        )
        self._listeners: list[SessionListener] = []
        self._emitter: ThrottledEmitter | None = None
        self._child: ChildProcess | None = None
        self._decoder: StreamJsonDecoder | TerminalDecoder | None = None
        self._pump_task: asyncio.Task | None = None
        self._ready = asyncio.Event()
        self._close_reason = ""

    # --- Properties ---

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def identity(self) -> str | None:
        return self._identity

    @property
    def is_closed(self) -> bool:
        return self._state is SessionState.CLOSED

    @property
    def is_processing(self) -> bool:
        return self._turns.busy

    @property
    def current_turn(self) -> Turn | None:
        turn = self._turns.current
        return turn if turn is not None and not turn.done else None

    @property
    def pid(self) -> int | None:
        return self._child.pid if self._child else None

    def idle_for(self, now: float | None = None) -> float:
        return (self._clock() if now is None else now) - self.last_activity

    def status(self) -> SessionStatus:
        return SessionStatus(
            key=self.key,
            state=self._state,
            identity=self._identity,
            workdir=self.workdir,
            idle_seconds=self.idle_for(),
            processing=self.is_processing,
        )

    # --- Subscriptions ---

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # --- Lifecycle ---

    async def start(self) -> None:
        """Bring the session to life. No-op unless IDLE."""
        if self.is_closed:
            raise SessionClosedError(f"Session {self.key} is closed")
        if self._state is not SessionState.IDLE:
            return

        self._set_state(SessionState.STARTING)
        try:
            if self.mode == RunMode.INTERACTIVE:
                await self._spawn(TerminalDecoder())
            else:
                self._launcher.locate(self._config.claude.executable)
        except SpawnError as e:
            logger.error("Failed to start session %s: %s", self.key, e)
            self._mark_closed(f"spawn failed: {e}")
            raise

        if self.mode == RunMode.STREAM:
            self._set_ready()
        logger.info("Session %s started (%s mode)", self.key, self.mode.value)

    async def wait_ready(self, timeout: float | None = None) -> None:
        """Wait until the child first signals readiness."""
        timeout = timeout if timeout is not None else self._config.supervisor.startup_timeout
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Session %s not ready after %ss, killing child", self.key, timeout)
            await self._terminate("startup timeout", graceful=False)
            raise SpawnError(f"Startup timeout after {timeout:g}s") from None
        if self.is_closed:
            raise SpawnError(f"Session closed before becoming ready: {self._close_reason}")

    async def send(
        self,
        message: str | ContentPart | list[ContentPart],
        listener: SessionListener | None = None,
        on_progress: DeliverFn | None = None,
        timeout: float | None = None,
    ) -> TurnResult:
        """Run one Turn and return its result.

        Raises ``AlreadyProcessing`` immediately when a Turn is in flight.
        ``listener`` is subscribed for this Turn only. ``on_progress`` receives
        throttled snapshots plus one final snapshot.
        """
        if self.is_closed:
            raise SessionClosedError(f"Session {self.key} is closed")
        parts = normalize_parts(message)
        turn = self._turns.begin(parts, timeout)

        unsubscribe = self.subscribe(listener) if listener is not None else None
        emitter = None
        if on_progress is not None:
            emitter = ThrottledEmitter(on_progress, interval=self._config.supervisor.emit_interval)
            emitter.arm()
        self._emitter = emitter
        self.touch()

        try:
            try:
                await self._dispatch(turn)
            except TurnError as e:
                self._turns.fail(e)
                await self._terminate(f"turn failed: {e}")
            return await turn.future
        except asyncio.CancelledError:
            self._abort_child()
            raise
        finally:
            if emitter is not None:
                await emitter.finish()
            if self._emitter is emitter:
                self._emitter = None
            if unsubscribe is not None:
                unsubscribe()
            self.touch()

    async def cancel(self) -> bool:
        """Force-terminate the current Turn. The session ends up CLOSED."""
        if not self._turns.busy:
            return False
        self._turns.fail(TurnCancelled("Turn cancelled"))
        await self._terminate("cancelled", graceful=False)
        return True

    async def close(self) -> None:
        """Terminate the child (gracefully if possible) and mark CLOSED."""
        if self.is_closed:
            return
        self._turns.fail(TurnCancelled("Session closed"))
        await self._terminate("closed", graceful=True)

    def touch(self) -> None:
        self.last_activity = self._clock()

    # --- Turn dispatch ---

    async def _dispatch(self, turn: Turn) -> None:
        if self._state is SessionState.IDLE:
            await self.start()
        if self.mode == RunMode.INTERACTIVE:
            await self._dispatch_interactive(turn)
        else:
            await self._dispatch_stream(turn)

    async def _dispatch_stream(self, turn: Turn) -> None:
        self._set_state(SessionState.PROCESSING)
        await self._spawn(StreamJsonDecoder())
        payload = {
            "type": "user",
            "message": {"role": "user", "content": self._wire_content(turn.parts)},
        }
        data = (json.dumps(payload) + "\n").encode()
        try:
            await self._child.write(data)
            await self._child.close_input()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            raise ChildIOError(f"Failed to write to child: {e}") from e

    async def _dispatch_interactive(self, turn: Turn) -> None:
        if not self._ready.is_set():
            await self.wait_ready()
        if self._child is None or self.is_closed:
            raise ProcessExit("Interactive child is not running")
        if any(isinstance(p, ImagePart) for p in turn.parts):
            logger.warning("Interactive mode cannot forward attachments; sending text only")

        text = parts_text(turn.parts)
        self._set_state(SessionState.PROCESSING)
        self._decoder.begin_turn(text)
        try:
            await self._child.write(text.encode() + b"\r")
        except OSError as e:
            raise ChildIOError(f"Failed to write to terminal: {e}") from e

    @staticmethod
    def _wire_content(parts: tuple[ContentPart, ...]) -> str | list[dict]:
        if len(parts) == 1 and isinstance(parts[0], TextPart):
            return parts[0].text
        return [p.to_wire() for p in parts]

    # --- Child process ---

    async def _spawn(self, decoder: StreamJsonDecoder | TerminalDecoder) -> None:
        params = StartParams(
            mode=self.mode,
            model=self._config.claude.model,
            workdir=self.workdir,
            resume=self._identity or "",
            permission_mode=self._config.claude.permission_mode,
            extra_args=tuple(self._config.claude.extra_args),
        )
        command = self._backend.command(params)
        child = await self._launcher.spawn(command)
        self._child = child
        self._decoder = decoder
        self._pump_task = asyncio.create_task(self._pump(child, decoder))

    async def _pump(self, child: ChildProcess, decoder: StreamJsonDecoder | TerminalDecoder) -> None:
        """Decode child output as it arrives, then handle the exit."""
        io_error: OSError | None = None
        try:
            while True:
                chunk = await child.read()
                if not chunk:
                    break
                for event in decoder.feed(chunk):
                    self._handle_event(event)
            for event in decoder.flush():
                self._handle_event(event)
        except OSError as e:
            io_error = e
            logger.warning("Read from child %s failed: %s", child.pid, e)
        code = await child.wait()
        self._on_child_exit(child, code, io_error)

    def _on_child_exit(self, child: ChildProcess, code: int, io_error: OSError | None) -> None:
        if child is not self._child:
            return
        self._child = None
        child.release()

        if io_error is not None:
            self._turns.fail(ChildIOError(f"Child channel failed: {io_error}", returncode=code))
            self._mark_closed("i/o error")
            return

        if self.mode == RunMode.STREAM and self._turns.busy:
            if code == 0:
                self._turns.resolve(self._identity)
                self._set_state(SessionState.AWAITING_INPUT)
                self._notify("on_ready")
                return
            self._turns.fail(
                ProcessExit(
                    f"Child exited with code {code}",
                    returncode=code,
                    stderr=child.stderr_tail,
                )
            )
            self._mark_closed(f"exit code {code}")
            return

        if self.mode == RunMode.STREAM:
            logger.debug("Stream child for %s exited (%s) with no pending turn", self.key, code)
            return

        if self._turns.busy:
            self._turns.fail(
                ProcessExit(f"Child exited with code {code}", returncode=code, stderr=child.stderr_tail)
            )
        elif code == 0:
            logger.info("Interactive child for %s exited normally", self.key)
        self._mark_closed(f"exit code {code}")

    async def _terminate(self, reason: str, graceful: bool = True) -> None:
        child, self._child = self._child, None
        pump, self._pump_task = self._pump_task, None
        if not self.is_closed:
            self._mark_closed(reason)
        if child is not None:
            if graceful and child.uses_pty and child.is_running:
                try:
                    await child.write(EXIT_DIRECTIVE)
                except OSError:
                    logger.debug("Could not send exit directive to %s", child.pid)
            if graceful:
                await child.stop(grace=self._config.supervisor.close_grace)
            else:
                child.kill()
                await child.stop(grace=0)
        if pump is not None and pump is not asyncio.current_task():
            await asyncio.wait([pump])

    def _abort_child(self) -> None:
        child = self._child
        if child is not None:
            logger.warning("Caller went away; killing child %s", child.pid)
            child.kill()
        self._turns.fail(TurnCancelled("Caller cancelled"))
        self._mark_closed("caller cancelled")

    def _on_turn_timeout(self, turn: Turn) -> None:
        asyncio.ensure_future(self._terminate("turn timeout", graceful=False))

    # --- Events ---

    def _handle_event(self, event: DecodedEvent) -> None:
        self.touch()

        if isinstance(event, IdentityEvent):
            if self._identity is None:
                self._identity = event.token
                logger.info("Session %s identity latched: %s", self.key, event.token)
                self._notify("on_identity", event.token)
            elif event.token != self._identity:
                logger.debug("Session %s keeps identity %s", self.key, self._identity)

        self._turns.record(event)
        if self._emitter is not None:
            self._emitter.push(event)

        if isinstance(event, TextEvent):
            self._notify("on_text", event.text)
        elif isinstance(event, ThinkingEvent):
            self._notify("on_thinking", event.text)
        elif isinstance(event, ToolUseEvent):
            self._notify("on_tool_use", event.name, event.status)
        elif isinstance(event, StatusEvent):
            self._notify("on_status", event.text)
        elif isinstance(event, ParseErrorEvent):
            self._notify("on_parse_error", event.raw, event.error)
        elif isinstance(event, ReadyEvent):
            self._on_ready_signal()

    def _on_ready_signal(self) -> None:
        if self._state is SessionState.STARTING:
            self._set_ready()
        elif self._state is SessionState.PROCESSING and self.mode == RunMode.INTERACTIVE:
            self._turns.resolve(self._identity)
            self._set_state(SessionState.AWAITING_INPUT)
            self._notify("on_ready")

    def _set_ready(self) -> None:
        self._set_state(SessionState.AWAITING_INPUT)
        self._ready.set()
        self._notify("on_ready")

    def _notify(self, hook: str, *args) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, hook)(*args)
            except Exception:
                logger.exception("Listener %s.%s failed", type(listener).__name__, hook)

    def _set_state(self, state: SessionState) -> None:
        if self._state is SessionState.CLOSED:
            return
        if state is not self._state:
            logger.debug("Session %s: %s -> %s", self.key, self._state.value, state.value)
            self._state = state

    def _mark_closed(self, reason: str) -> None:
        if self.is_closed:
            return
        self._set_state(SessionState.CLOSED)
        self._close_reason = reason
        self._ready.set()
        logger.info("Session %s closed (%s)", self.key, reason)
        self._notify("on_close", reason)
