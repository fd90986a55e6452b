"""Heuristic decoder for raw pseudo-terminal output.

The interactive child gives no structured signal, so state is inferred by
pattern matching on cleaned text. Readiness detection is approximate and
can drift from the child's real state (a reply that happens to end with a
question mark looks like a prompt). Prefer the structured stream decoder
whenever the child supports it.
"""

from __future__ import annotations

import logging
import re

from agentrelay.models.events import (
    DecodedEvent,
    IdentityEvent,
    ReadyEvent,
    StatusEvent,
    TextEvent,
    ThinkingEvent,
)

logger = logging.getLogger(__name__)

# CSI, OSC (BEL or ST terminated), and two-byte escapes
ANSI_RE = re.compile(
    r"\x1b\[[0-?]*[ -/]*[@-~]"
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"
    r"|\x1b[@-Z\\-_]"
)
CONTROL_RE = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# An escape sequence cut off at the end of a read
PARTIAL_ESCAPE_RE = re.compile(r"\x1b(?:\[[0-?]*[ -/]*|\][^\x07\x1b]*)?$")
BLANK_RUN_RE = re.compile(r"\n{3,}")

PROMPT_MARKERS = (">", "❯", "$")
BOX_CHARS = "│╭╮╰╯─ "
READY_PHRASES = (
    "? for shortcuts",
    "press enter to continue",
    "do you want to proceed",
    "(y/n)",
    "[y/n]",
    "waiting for input",
)
PROCESSING_MARKERS = ("Thinking…", "Thinking...", "Processing…", "Processing...", "esc to interrupt")
SPINNER_GLYPHS = frozenset("✻✽✶✳✢⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏")

IDENTITY_PATTERNS = (
    re.compile(r"session[:\s]+([a-f0-9][a-f0-9-]{7,})", re.IGNORECASE),
    re.compile(r"resuming[:\s]+([a-f0-9][a-f0-9-]{7,})", re.IGNORECASE),
    re.compile(r"--resume[=\s]+([a-f0-9][a-f0-9-]{7,})", re.IGNORECASE),
)

TAIL_LIMIT = 4000


def normalize_terminal_text(text: str) -> str:
    """Strip escape sequences, collapse carriage returns and blank runs."""
    text = ANSI_RE.sub("", text)
    text = text.replace("\r\n", "\n")
    # A lone carriage return rewinds the line; keep what was drawn last
    lines = [line.rsplit("\r", 1)[-1] for line in text.split("\n")]
    text = CONTROL_RE.sub("", "\n".join(lines))
    return BLANK_RUN_RE.sub("\n\n", text)


def is_prompt_line(line: str) -> bool:
    core = line.strip().strip(BOX_CHARS)
    return core in PROMPT_MARKERS or core.endswith(("$", "❯"))


def is_ready_line(line: str) -> bool:
    stripped = line.strip()
    if not stripped:
        return False
    if is_prompt_line(stripped):
        return True
    if stripped.endswith("?"):
        return True
    lowered = stripped.lower()
    return any(phrase in lowered for phrase in READY_PHRASES)


def is_processing_text(text: str) -> bool:
    if any(marker in text for marker in PROCESSING_MARKERS):
        return True
    if text.rstrip().endswith(("…", "...")):
        return True
    return any(glyph in SPINNER_GLYPHS for glyph in text)


def _last_line(text: str) -> str:
    for line in reversed(text.split("\n")):
        if line.strip():
            return line
    return ""


class TerminalDecoder:
    """Incremental decoder for interactive-mode output; one per process.

    Output is buffered until a readiness indicator appears, then flushed as a
    ``TextEvent`` followed by ``ReadyEvent``. Processing indicators only emit
    an advisory ``ThinkingEvent`` and never gate progress.
    """

    def __init__(self) -> None:
        self._carry = ""
        self._pending = ""
        self._tail = ""
        self._echo = ""
        self._busy = False
        self._last_status = ""
        self._identity: str | None = None

    @property
    def identity(self) -> str | None:
        return self._identity

    @property
    def tail(self) -> str:
        return self._tail

    def begin_turn(self, input_text: str) -> None:
        """Reset the output buffer; the echoed input is dropped from the flush.

        Readiness is only judged on output received after this call, so the
        prompt that preceded the input cannot end the new Turn.
        """
        self._pending = ""
        self._tail = ""
        self._echo = input_text.strip()
        self._busy = False
        self._last_status = ""

    def feed(self, data: bytes | str) -> list[DecodedEvent]:
        raw = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data
        raw = self._carry + raw
        match = PARTIAL_ESCAPE_RE.search(raw)
        if match:
            raw, self._carry = raw[: match.start()], raw[match.start():]
        else:
            self._carry = ""
        if raw.endswith("\r"):
            raw, self._carry = raw[:-1], "\r" + self._carry

        text = normalize_terminal_text(raw)
        if not text:
            return []

        self._pending += text
        self._tail = (self._tail + text)[-TAIL_LIMIT:]
        self._tail = BLANK_RUN_RE.sub("\n\n", self._tail)

        events: list[DecodedEvent] = self._scan_identity(text)
        last = _last_line(self._tail)

        if is_ready_line(last) and not self._is_echo(last):
            events.extend(self._flush())
            return events

        if is_processing_text(text):
            if not self._busy:
                self._busy = True
                events.append(ThinkingEvent(text=last.strip()))
        elif last.strip() and last.strip() != self._last_status:
            self._last_status = last.strip()
            events.append(StatusEvent(text=self._last_status))
        return events

    def flush(self) -> list[DecodedEvent]:
        """Emit buffered output at end of stream, without signalling readiness."""
        output = self._clean_output(self._pending + normalize_terminal_text(self._carry))
        self._pending = ""
        self._carry = ""
        return [TextEvent(text=output)] if output else []

    def _flush(self) -> list[DecodedEvent]:
        output = self._clean_output(self._pending)
        self._pending = ""
        self._echo = ""
        self._busy = False
        self._last_status = ""
        events: list[DecodedEvent] = []
        if output:
            events.append(TextEvent(text=output))
        events.append(ReadyEvent(output=output))
        return events

    def _is_echo(self, line: str) -> bool:
        """True for the input line redrawn by the terminal, bare or after a prompt."""
        stripped = line.strip()
        if not self._echo or not stripped.endswith(self._echo):
            return False
        prefix = stripped[: -len(self._echo)]
        return not prefix.strip() or is_prompt_line(prefix)

    def _clean_output(self, text: str) -> str:
        lines = text.split("\n")
        # Drop the prompt line that triggered readiness
        while lines and (not lines[-1].strip() or is_prompt_line(lines[-1])):
            lines.pop()
        while lines and (not lines[0].strip() or self._is_echo(lines[0])):
            lines.pop(0)
        cleaned = "\n".join(lines).strip()
        if self._echo and cleaned.startswith(self._echo):
            cleaned = cleaned[len(self._echo):].lstrip()
        return cleaned

    def _scan_identity(self, text: str) -> list[DecodedEvent]:
        if self._identity is not None:
            return []
        for pattern in IDENTITY_PATTERNS:
            match = pattern.search(text)
            if match:
                self._identity = match.group(1)
                return [IdentityEvent(token=self._identity)]
        return []
