"""Tests for ThrottledEmitter."""

import asyncio
import math
import time

import pytest

from agentrelay.models.events import (
    ParseErrorEvent,
    ResultEvent,
    StatusEvent,
    TextEvent,
    ThinkingEvent,
    ToolUseEvent,
)
from agentrelay.services.emitter import EmitterSnapshot, ThrottledEmitter


class Recorder:
    def __init__(self):
        self.snapshots: list[EmitterSnapshot] = []

    def __call__(self, snapshot: EmitterSnapshot) -> None:
        self.snapshots.append(snapshot)

    @property
    def finals(self):
        return [s for s in self.snapshots if s.final]

    @property
    def intermediates(self):
        return [s for s in self.snapshots if not s.final]


class TestEmitterSnapshot:
    def test_render_empty_uses_status(self):
        assert EmitterSnapshot().render() == "Processing..."
        assert EmitterSnapshot(status="Reading a.py").render() == "Reading a.py"

    def test_render_tools_thinking_and_text(self):
        rendered = EmitterSnapshot(
            text="Answer", thinking="x" * 200, tools=("Reading a.py",)
        ).render()
        lines = rendered.split("\n")
        assert lines[0] == "[tool] Reading a.py"
        assert lines[1] == "[thinking] " + "x" * 150 + "..."
        assert lines[-1] == "Answer"


class TestThrottledEmitter:
    @pytest.mark.asyncio
    async def test_final_delivery_before_interval(self):
        recorder = Recorder()
        emitter = ThrottledEmitter(recorder, interval=10.0)
        emitter.arm()
        emitter.push(TextEvent(text="Hello"))
        emitter.push(TextEvent(text=" world"))
        final = await emitter.finish()
        assert recorder.intermediates == []
        assert len(recorder.finals) == 1
        assert final.text == "Hello world"
        assert recorder.finals[0].event_count == 2

    @pytest.mark.asyncio
    async def test_intermediate_deliveries_bounded(self):
        recorder = Recorder()
        interval = 0.05
        emitter = ThrottledEmitter(recorder, interval=interval)
        started = time.monotonic()
        emitter.arm()
        for i in range(30):
            emitter.push(TextEvent(text=f"{i},"))
            await asyncio.sleep(0.01)
        await emitter.finish()
        elapsed = time.monotonic() - started

        assert 1 <= len(recorder.intermediates) <= math.ceil(elapsed / interval)
        assert emitter.deliveries == len(recorder.intermediates)
        assert len(recorder.finals) == 1
        assert recorder.finals[0].text == "".join(f"{i}," for i in range(30))

    @pytest.mark.asyncio
    async def test_trailing_delivery_after_burst(self):
        recorder = Recorder()
        emitter = ThrottledEmitter(recorder, interval=0.05)
        emitter.arm()
        emitter.push(StatusEvent(text="Thinking..."))
        await asyncio.sleep(0.1)
        assert len(recorder.intermediates) == 1
        assert recorder.intermediates[0].status == "Thinking..."
        await emitter.finish()

    @pytest.mark.asyncio
    async def test_result_supersedes_text(self):
        recorder = Recorder()
        emitter = ThrottledEmitter(recorder, interval=10.0)
        emitter.arm()
        emitter.push(TextEvent(text="draft"))
        emitter.push(ResultEvent(final_output="final"))
        await emitter.finish()
        assert recorder.finals[0].text == "final"

    @pytest.mark.asyncio
    async def test_accumulates_all_kinds(self):
        emitter = ThrottledEmitter(Recorder(), interval=10.0)
        emitter.arm()
        emitter.push(ThinkingEvent(text="hmm"))
        emitter.push(ToolUseEvent(name="Grep", status="Searching..."))
        emitter.push(ParseErrorEvent(raw="{bad"))
        snap = emitter.snapshot()
        assert snap.thinking == "hmm"
        assert snap.tools == ("Searching...",)
        assert snap.status == "Searching..."
        assert snap.parse_errors == 1
        await emitter.finish()

    @pytest.mark.asyncio
    async def test_failing_callback_is_isolated(self):
        def broken(snapshot):
            raise RuntimeError("consumer went away")

        emitter = ThrottledEmitter(broken, interval=0.01)
        emitter.arm()
        emitter.push(TextEvent(text="a"))
        await asyncio.sleep(0.05)
        emitter.push(TextEvent(text="b"))
        final = await emitter.finish()
        assert final.text == "ab"

    @pytest.mark.asyncio
    async def test_async_callback(self):
        seen = []

        async def deliver(snapshot):
            await asyncio.sleep(0)
            seen.append(snapshot.text)

        emitter = ThrottledEmitter(deliver, interval=10.0)
        emitter.arm()
        emitter.push(TextEvent(text="x"))
        await emitter.finish()
        assert seen == ["x"]

    @pytest.mark.asyncio
    async def test_rearm_resets_state(self):
        recorder = Recorder()
        emitter = ThrottledEmitter(recorder, interval=10.0)
        emitter.arm()
        emitter.push(TextEvent(text="first turn"))
        await emitter.finish()
        emitter.arm()
        emitter.push(TextEvent(text="second"))
        await emitter.finish()
        assert [s.text for s in recorder.finals] == ["first turn", "second"]

    @pytest.mark.asyncio
    async def test_unarmed_ignores_events(self):
        recorder = Recorder()
        emitter = ThrottledEmitter(recorder, interval=0.0)
        emitter.push(TextEvent(text="stray"))
        await emitter.finish()
        assert recorder.snapshots == []

    @pytest.mark.asyncio
    async def test_no_intermediate_delivery_once_finishing(self):
        calls = []
        gate = asyncio.Event()

        async def deliver(snapshot):
            if not calls:
                await gate.wait()
            calls.append(("final" if snapshot.final else "inter", snapshot.text))

        emitter = ThrottledEmitter(deliver, interval=0.0)
        emitter.arm()
        emitter.push(TextEvent(text="a"))
        emitter.push(TextEvent(text="b"))
        finishing = asyncio.ensure_future(emitter.finish())
        await asyncio.sleep(0)
        gate.set()
        final = await finishing

        assert final.text == "ab"
        assert calls == [("inter", "a"), ("final", "ab")]
