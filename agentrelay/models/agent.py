"""Child process launch models."""

from __future__ import annotations

import shlex
from dataclasses import dataclass
from enum import Enum


class RunMode(str, Enum):
    STREAM = "stream"
    INTERACTIVE = "interactive"


@dataclass(frozen=True)
class CommandSpec:
    """Specification for launching a child process."""

    program: str
    args: tuple[str, ...] = ()
    env: dict[str, str] | None = None
    cwd: str | None = None
    use_pty: bool = False

    @property
    def full_command(self) -> str:
        """Return the full command string for shell execution."""
        parts = [self.program, *self.args]
        return " ".join(shlex.quote(p) for p in parts)


@dataclass(frozen=True)
class StartParams:
    """Parameters for starting or resuming a child session."""

    mode: RunMode = RunMode.STREAM
    model: str = ""
    workdir: str = ""
    resume: str = ""
    permission_mode: str = ""
    extra_args: tuple[str, ...] = ()
