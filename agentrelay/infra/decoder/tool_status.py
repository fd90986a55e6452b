"""Human-readable status strings for tool invocations."""

from __future__ import annotations

from typing import Any

COMMAND_PREVIEW_LIMIT = 30


def shorten_path(path: str) -> str:
    """Keep only the last two components of a long path."""
    if not path:
        return ""
    parts = path.replace("\\", "/").split("/")
    if len(parts) > 2:
        return ".../" + "/".join(parts[-2:])
    return path


def describe_tool_use(name: str, tool_input: dict[str, Any] | None) -> str:
    """Status line for a tool call, keyed on tool name and its salient argument."""
    tool_input = tool_input or {}
    file_path = tool_input.get("file_path")

    if name == "Read" and file_path:
        return f"Reading {shorten_path(file_path)}"
    if name == "Write" and file_path:
        return f"Writing {shorten_path(file_path)}"
    if name == "Edit" and file_path:
        return f"Editing {shorten_path(file_path)}"
    if name == "Bash" and tool_input.get("command"):
        command = str(tool_input["command"])
        preview = command[:COMMAND_PREVIEW_LIMIT]
        suffix = "..." if len(command) > COMMAND_PREVIEW_LIMIT else ""
        return f"Running: {preview}{suffix}"
    if name in ("Grep", "Glob"):
        return "Searching..."
    if name == "WebFetch":
        return "Fetching web content"
    if name == "Task":
        return "Spawning agent..."
    return name or "Tool"
