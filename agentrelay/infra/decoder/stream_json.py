"""Decoder for line-delimited JSON records from the non-interactive streaming mode.

Wire format: one JSON object per line on stdout. Recognized kinds are
``system`` (subtype ``init`` carries ``session_id``), ``assistant`` (content
parts: text, thinking, tool_use), the incremental ``content_block_start`` /
``content_block_delta`` records, and ``result`` (final text + identity).
"""

from __future__ import annotations

import json
import logging
from typing import Any

from agentrelay.infra.decoder.tool_status import describe_tool_use
from agentrelay.models.events import (
    DecodedEvent,
    IdentityEvent,
    ParseErrorEvent,
    ResultEvent,
    StatusEvent,
    TextEvent,
    ThinkingEvent,
    ToolUseEvent,
)

logger = logging.getLogger(__name__)


class StreamJsonDecoder:
    """Incremental decoder; create one per child process.

    Bytes are buffered until a newline arrives, so a record split across
    reads decodes exactly as if it had arrived whole. Malformed lines turn
    into ``ParseErrorEvent`` and decoding carries on.
    """

    def __init__(self) -> None:
        self._buffer = b""
        self._identity: str | None = None

    @property
    def identity(self) -> str | None:
        return self._identity

    def feed(self, data: bytes) -> list[DecodedEvent]:
        self._buffer += data
        *lines, self._buffer = self._buffer.split(b"\n")
        events: list[DecodedEvent] = []
        for raw in lines:
            events.extend(self._decode_raw(raw))
        return events

    def flush(self) -> list[DecodedEvent]:
        """Decode a trailing record that never got its newline."""
        raw, self._buffer = self._buffer, b""
        return self._decode_raw(raw)

    def _decode_raw(self, raw: bytes) -> list[DecodedEvent]:
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            return []
        return self.decode_line(line)

    def decode_line(self, line: str) -> list[DecodedEvent]:
        try:
            record = json.loads(line)
        except json.JSONDecodeError as e:
            logger.debug("Unparsable record: %s", line[:200])
            return [ParseErrorEvent(raw=line, error=str(e))]
        if not isinstance(record, dict):
            return [ParseErrorEvent(raw=line, error="record is not a JSON object")]

        kind = record.get("type")
        if kind == "system":
            if record.get("subtype") == "init":
                return self._latch(record.get("session_id"))
            return []
        if kind == "assistant":
            return self._assistant(record)
        if kind == "content_block_start":
            return self._block_start(record.get("content_block") or {})
        if kind == "content_block_delta":
            return self._block_delta(record.get("delta") or {})
        if kind == "result":
            events = self._latch(record.get("session_id"))
            final = record.get("result")
            events.append(
                ResultEvent(
                    final_output=final if isinstance(final, str) and final else None,
                    is_error=bool(record.get("is_error", False)),
                    raw=record,
                )
            )
            return events

        logger.debug("Ignoring record kind %r", kind)
        return []

    def _latch(self, token: Any) -> list[DecodedEvent]:
        if not token or not isinstance(token, str):
            return []
        if self._identity is None:
            self._identity = token
            return [IdentityEvent(token=token)]
        if token != self._identity:
            logger.debug("Ignoring identity %s, already latched %s", token, self._identity)
        return []

    def _assistant(self, record: dict) -> list[DecodedEvent]:
        events = self._latch(record.get("session_id"))
        message = record.get("message") or {}
        content = message.get("content") or []
        if isinstance(content, str):
            content = [{"type": "text", "text": content}]

        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text"):
                events.append(TextEvent(text=block["text"]))
            elif block_type == "thinking" and block.get("thinking"):
                events.append(ThinkingEvent(text=block["thinking"]))
            elif block_type == "tool_use":
                name = block.get("name") or "Tool"
                tool_input = block.get("input") or {}
                status = describe_tool_use(name, tool_input)
                events.append(ToolUseEvent(name=name, status=status, input=tool_input))
                events.append(StatusEvent(text=status))

        return events

    def _block_start(self, block: dict) -> list[DecodedEvent]:
        if block.get("type") == "tool_use":
            return [StatusEvent(text=f"Using {block.get('name') or 'tool'}...")]
        if block.get("type") == "thinking":
            return [StatusEvent(text="Thinking...")]
        return []

    def _block_delta(self, delta: dict) -> list[DecodedEvent]:
        if delta.get("type") == "text_delta" and delta.get("text"):
            return [TextEvent(text=delta["text"])]
        if delta.get("type") == "thinking_delta" and delta.get("thinking"):
            return [ThinkingEvent(text=delta["thinking"])]
        return []
