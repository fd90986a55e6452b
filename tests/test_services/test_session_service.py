"""Tests for Session, driven by an in-memory fake child process."""

import asyncio
import json

import pytest

from agentrelay.config import AppConfig, ClaudeConfig, SupervisorConfig
from agentrelay.errors import (
    AlreadyProcessing,
    ProcessExit,
    SessionClosedError,
    SpawnError,
    TurnCancelled,
    TurnTimeout,
)
from agentrelay.models.agent import RunMode
from agentrelay.models.session import SessionKey, SessionState
from agentrelay.models.turn import ImagePart, TextPart
from agentrelay.services.session import Session, SessionListener

KEY = SessionKey("chan", "user")


def record(obj: dict) -> bytes:
    return (json.dumps(obj) + "\n").encode()


INIT = record({"type": "system", "subtype": "init", "session_id": "sess-1"})


def text(t: str) -> bytes:
    return record({"type": "assistant", "message": {"content": [{"type": "text", "text": t}]}})


def result(t: str) -> bytes:
    return record({"type": "result", "result": t, "session_id": "sess-1"})


class FakeChild:
    """Stands in for ChildProcess.

    In pipe mode the scripted output is emitted once stdin is closed. In
    pty mode ``startup`` is emitted at spawn and ``on_write`` may answer
    each write.
    """

    def __init__(self, output=(), exit_code=0, hang=False, pty=False, startup=b"", on_write=None, stderr=""):
        self._output = list(output)
        self._exit_code = exit_code
        self._hang = hang
        self._queue: asyncio.Queue = asyncio.Queue()
        self._exited = asyncio.Event()
        self.uses_pty = pty
        self.startup = startup
        self.on_write = on_write
        self.stderr_tail = stderr
        self.pid = 4242
        self.returncode = None
        self.written = b""
        self.input_closed = False
        self.killed = False
        self.released = False

    @property
    def is_running(self):
        return self.returncode is None

    def emit(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def exit(self, code: int) -> None:
        if self.returncode is None:
            self.returncode = code
            self._queue.put_nowait(b"")
            self._exited.set()

    async def read(self) -> bytes:
        data = await self._queue.get()
        if not data:
            self._queue.put_nowait(b"")
        return data

    async def write(self, data: bytes) -> None:
        self.written += data
        if self.on_write is not None:
            self.on_write(self, data)

    async def close_input(self) -> None:
        self.input_closed = True
        if self._hang:
            return
        for chunk in self._output:
            self.emit(chunk)
        self.exit(self._exit_code)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    def terminate(self) -> None:
        self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def stop(self, grace: float = 5.0) -> int:
        self.terminate()
        code = await self.wait()
        self.release()
        return code

    def release(self) -> None:
        self.released = True


class FakeLauncher:
    def __init__(self, *children, missing=False):
        self._children = list(children)
        self._missing = missing
        self.commands = []
        self.spawned = []

    def locate(self, program: str) -> str:
        if self._missing:
            raise SpawnError(f"Executable not found: {program}")
        return f"/usr/bin/{program}"

    async def spawn(self, command):
        if self._missing:
            raise SpawnError(f"Failed to launch {command.program}")
        self.commands.append(command)
        child = self._children.pop(0)
        self.spawned.append(child)
        if child.startup:
            child.emit(child.startup)
        return child


class Collector(SessionListener):
    def __init__(self):
        self.calls = []

    def on_text(self, text):
        self.calls.append(("text", text))

    def on_identity(self, token):
        self.calls.append(("identity", token))

    def on_tool_use(self, name, status):
        self.calls.append(("tool", status))

    def on_parse_error(self, raw, error):
        self.calls.append(("parse_error", raw))

    def on_ready(self):
        self.calls.append(("ready",))

    def on_close(self, reason):
        self.calls.append(("close", reason))


def make_config(mode=RunMode.STREAM, turn_timeout=5.0, emit_interval=0.01):
    return AppConfig(
        claude=ClaudeConfig(mode=mode, default_workdir="/tmp"),
        supervisor=SupervisorConfig(
            turn_timeout=turn_timeout, startup_timeout=1.0, close_grace=0.1, emit_interval=emit_interval,
        ),
    )


def make_session(*children, mode=RunMode.STREAM, identity=None, **config_kwargs):
    launcher = FakeLauncher(*children)
    session = Session(KEY, make_config(mode, **config_kwargs), launcher=launcher, identity=identity)
    return session, launcher


class TestStreamSession:
    @pytest.mark.asyncio
    async def test_hello_output_is_concatenated_text(self):
        session, launcher = make_session(FakeChild([INIT, text("Hel"), text("lo!")]))
        collector = Collector()
        res = await session.send("hello", listener=collector)

        assert res.output == "Hello!"
        assert res.identity == "sess-1"
        kinds = [type(e).__name__ for e in res.events]
        assert kinds.index("IdentityEvent") == 0
        calls = [c for c in collector.calls if c[0] != "ready"]
        assert calls[0] == ("identity", "sess-1")
        assert calls[1:] == [("text", "Hel"), ("text", "lo!")]
        assert session.identity == "sess-1"
        assert session.state == SessionState.AWAITING_INPUT

    @pytest.mark.asyncio
    async def test_result_record_overrides_text(self):
        session, _ = make_session(FakeChild([INIT, text("draft"), result("Final answer")]))
        res = await session.send("hello")
        assert res.output == "Final answer"
        kinds = [type(e).__name__ for e in res.events]
        assert kinds.index("IdentityEvent") < kinds.index("ResultEvent")

    @pytest.mark.asyncio
    async def test_stdin_payload(self):
        child = FakeChild([text("ok")])
        session, launcher = make_session(child)
        await session.send([TextPart("look at this"), ImagePart(b"img", "image/png")])

        payload = json.loads(child.written.decode())
        assert payload["type"] == "user"
        assert payload["message"]["role"] == "user"
        content = payload["message"]["content"]
        assert content[0] == {"type": "text", "text": "look at this"}
        assert content[1]["type"] == "image"
        assert child.input_closed
        assert launcher.commands[0].cwd == "/tmp"

    @pytest.mark.asyncio
    async def test_plain_text_sent_as_string(self):
        child = FakeChild([text("ok")])
        session, _ = make_session(child)
        await session.send("hi")
        assert json.loads(child.written)["message"]["content"] == "hi"

    @pytest.mark.asyncio
    async def test_second_turn_resumes_latched_identity(self):
        session, launcher = make_session(
            FakeChild([INIT, text("one")]),
            FakeChild([record({"type": "system", "subtype": "init", "session_id": "sess-2"}), text("two")]),
        )
        await session.send("first")
        res = await session.send("second")
        assert res.output == "two"
        second_args = launcher.commands[1].args
        assert second_args[second_args.index("--resume") + 1] == "sess-1"
        assert session.identity == "sess-1"

    @pytest.mark.asyncio
    async def test_seeded_identity_passed_on_first_spawn(self):
        session, launcher = make_session(FakeChild([text("ok")]), identity="seeded-123")
        await session.send("hi")
        assert "seeded-123" in launcher.commands[0].args

    @pytest.mark.asyncio
    async def test_concurrent_sends_reject_all_but_one(self):
        child = FakeChild([INIT, text("done")], hang=True)
        session, _ = make_session(child)
        tasks = [asyncio.ensure_future(session.send(f"msg {i}")) for i in range(5)]
        await asyncio.sleep(0.01)

        rejected = [t for t in tasks if t.done() and isinstance(t.exception(), AlreadyProcessing)]
        pending = [t for t in tasks if not t.done()]
        assert len(rejected) == 4
        assert len(pending) == 1
        assert session.is_processing

        for chunk in (INIT, text("done")):
            child.emit(chunk)
        child.exit(0)
        res = await pending[0]
        assert res.output == "done"
        assert not session.is_processing

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_turn_and_closes(self):
        child = FakeChild([INIT, text("partial")], exit_code=2, stderr="fatal: bad flag")
        session, _ = make_session(child)
        collector = Collector()
        session.subscribe(collector)
        with pytest.raises(ProcessExit) as exc_info:
            await session.send("hello")
        assert exc_info.value.returncode == 2
        assert exc_info.value.partial_output == "partial"
        assert "bad flag" in exc_info.value.stderr
        assert session.state == SessionState.CLOSED
        assert ("close", "exit code 2") in collector.calls

    @pytest.mark.asyncio
    async def test_send_on_closed_session(self):
        session, _ = make_session(FakeChild([], exit_code=1))
        with pytest.raises(ProcessExit):
            await session.send("hello")
        with pytest.raises(SessionClosedError):
            await session.send("again")

    @pytest.mark.asyncio
    async def test_timeout_kills_child_and_closes(self):
        child = FakeChild(hang=True)
        session, _ = make_session(child, turn_timeout=0.05)
        child.emit(text("slow start"))
        with pytest.raises(TurnTimeout) as exc_info:
            await session.send("hello")
        assert exc_info.value.partial_output == "slow start"
        for _ in range(10):
            if child.returncode is not None:
                break
            await asyncio.sleep(0.01)
        assert child.killed
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_cancel(self):
        child = FakeChild(hang=True)
        session, _ = make_session(child)
        task = asyncio.ensure_future(session.send("hello"))
        await asyncio.sleep(0.01)
        assert await session.cancel() is True
        with pytest.raises(TurnCancelled):
            await task
        assert child.killed
        assert session.state == SessionState.CLOSED
        assert await session.cancel() is False

    @pytest.mark.asyncio
    async def test_close_resolves_pending_turn(self):
        child = FakeChild(hang=True)
        session, _ = make_session(child)
        collector = Collector()
        session.subscribe(collector)
        task = asyncio.ensure_future(session.send("hello"))
        await asyncio.sleep(0.01)
        await session.close()
        with pytest.raises(TurnCancelled):
            await task
        assert session.state == SessionState.CLOSED
        assert child.released
        await session.close()
        assert [c for c in collector.calls if c[0] == "close"] == [("close", "closed")]

    @pytest.mark.asyncio
    async def test_parse_error_forwarded_and_decoding_continues(self):
        session, _ = make_session(FakeChild([INIT, b"{not json\n", text("fine")]))
        collector = Collector()
        res = await session.send("hello", listener=collector)
        assert res.output == "fine"
        assert ("parse_error", "{not json") in collector.calls

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_turn(self):
        class Broken(SessionListener):
            def on_text(self, text):
                raise RuntimeError("boom")

        session, _ = make_session(FakeChild([text("still works")]))
        res = await session.send("hello", listener=Broken())
        assert res.output == "still works"

    @pytest.mark.asyncio
    async def test_turn_listener_unsubscribed_after_turn(self):
        session, _ = make_session(FakeChild([text("one")]), FakeChild([text("two")]))
        collector = Collector()
        await session.send("first", listener=collector)
        await session.send("second")
        assert ("text", "two") not in collector.calls

    @pytest.mark.asyncio
    async def test_progress_final_snapshot(self):
        snapshots = []
        session, _ = make_session(FakeChild([INIT, text("a"), text("b"), result("ab!")]))
        await session.send("hello", on_progress=snapshots.append)
        finals = [s for s in snapshots if s.final]
        assert len(finals) == 1
        assert finals[0].text == "ab!"

    @pytest.mark.asyncio
    async def test_missing_executable(self):
        session = Session(KEY, make_config(), launcher=FakeLauncher(missing=True))
        with pytest.raises(SpawnError):
            await session.start()
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_status(self):
        session, _ = make_session(FakeChild([INIT, text("ok")]))
        await session.start()
        assert session.state == SessionState.AWAITING_INPUT
        await session.send("hi")
        status = session.status()
        assert status.key == KEY
        assert status.identity == "sess-1"
        assert status.workdir == "/tmp"
        assert status.processing is False


def answer(reply: bytes):
    def respond(child, data):
        if data.endswith(b"\r") and data != b"/exit\r":
            child.emit(data[:-1] + b"\r\n" + reply + b"\r\n> ")
    return respond


class TestInteractiveSession:
    @pytest.mark.asyncio
    async def test_ready_then_turn(self):
        child = FakeChild(pty=True, startup=b"Welcome\r\n> ", on_write=answer(b"Hi there"))
        session, launcher = make_session(child, mode=RunMode.INTERACTIVE)
        await session.start()
        await session.wait_ready()
        assert session.state == SessionState.AWAITING_INPUT
        assert launcher.commands[0].use_pty

        res = await session.send("hello")
        assert res.output == "Hi there"
        assert child.written == b"hello\r"
        assert session.state == SessionState.AWAITING_INPUT

        res = await session.send("again")
        assert res.output == "Hi there"
        assert len(launcher.spawned) == 1

    @pytest.mark.asyncio
    async def test_close_sends_exit_directive(self):
        child = FakeChild(pty=True, startup=b"> ")
        session, _ = make_session(child, mode=RunMode.INTERACTIVE)
        await session.start()
        await session.wait_ready()
        await session.close()
        assert child.written.endswith(b"/exit\r")
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_exit_during_startup(self):
        child = FakeChild(pty=True)
        session, _ = make_session(child, mode=RunMode.INTERACTIVE)
        await session.start()
        child.exit(1)
        with pytest.raises(SpawnError):
            await session.wait_ready()
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_exit_mid_turn_keeps_partial_output(self):
        def die(child, data):
            child.emit(b"Working on it\r\npartial")
            child.exit(137)

        child = FakeChild(pty=True, startup=b"> ", on_write=die)
        session, _ = make_session(child, mode=RunMode.INTERACTIVE)
        await session.start()
        await session.wait_ready()
        with pytest.raises(ProcessExit) as exc_info:
            await session.send("do it")
        assert exc_info.value.returncode == 137
        assert "partial" in exc_info.value.partial_output
        assert session.state == SessionState.CLOSED

    @pytest.mark.asyncio
    async def test_blank_echo_does_not_end_turn_early(self):
        replies = iter([b"One", b"Two"])

        def respond(child, data):
            if data.endswith(b"\r") and data != b"/exit\r":
                child.emit(b"\r\n")
                child.emit(b"\x1b[2K")
                child.emit(next(replies) + b"\r\n> ")

        child = FakeChild(pty=True, startup=b"Welcome\r\n> ", on_write=respond)
        session, _ = make_session(child, mode=RunMode.INTERACTIVE)
        await session.start()
        await session.wait_ready()

        first = await session.send("first")
        second = await session.send("second")
        assert first.output == "One"
        assert second.output == "Two"
        assert session.state == SessionState.AWAITING_INPUT
