"""Claude Code command-line construction."""

from __future__ import annotations

import logging
import sys

from agentrelay.models.agent import CommandSpec, RunMode, StartParams

logger = logging.getLogger(__name__)

DEFAULT_EXECUTABLE = "claude.cmd" if sys.platform == "win32" else "claude"


class ClaudeCodeBackend:
    """Backend for the Claude Code CLI.

    Generates commands like:
        claude -p --input-format stream-json --output-format stream-json --verbose [--resume ID]
        claude [--resume ID]
    """

    def __init__(self, executable: str = "") -> None:
        self.executable = executable or DEFAULT_EXECUTABLE

    def command(self, params: StartParams) -> CommandSpec:
        if params.mode == RunMode.INTERACTIVE:
            return self.interactive_command(params)
        return self.stream_command(params)

    def stream_command(self, params: StartParams) -> CommandSpec:
        """One-shot structured streaming invocation; input arrives on stdin."""
        args: list[str] = [
            "-p",
            "--input-format", "stream-json",
            "--output-format", "stream-json",
            "--verbose",
        ]
        args.extend(self._common_args(params))

        return CommandSpec(
            program=self.executable,
            args=tuple(args),
            env={"FORCE_COLOR": "0", "NO_COLOR": "1"},
            cwd=params.workdir or None,
        )

    def interactive_command(self, params: StartParams) -> CommandSpec:
        """Long-lived terminal session driven through a pseudo-terminal."""
        return CommandSpec(
            program=self.executable,
            args=tuple(self._common_args(params)),
            env={"TERM": "xterm-256color"},
            cwd=params.workdir or None,
            use_pty=True,
        )

    def _common_args(self, params: StartParams) -> list[str]:
        args: list[str] = []
        if params.permission_mode:
            args.extend(["--permission-mode", params.permission_mode])
        if params.model:
            args.extend(["--model", params.model])
        if params.resume:
            args.extend(["--resume", params.resume])
        args.extend(params.extra_args)
        return args

