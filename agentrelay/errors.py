"""Exception types raised by the session supervisor."""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for agentrelay."""


class ConfigurationError(RelayError):
    """Raised when the configuration file holds an unusable value."""


class SessionClosedError(RelayError):
    """Raised when an operation targets a session that is already closed."""


class TurnError(RelayError):
    """Base for every failed Turn outcome.

    ``partial_output`` holds whatever text the child produced before the
    failure so callers can still show it.
    """

    def __init__(self, message: str = "", partial_output: str = "") -> None:
        super().__init__(message)
        self.partial_output = partial_output


class SpawnError(TurnError):
    """The child executable could not be launched."""


class AlreadyProcessing(TurnError):
    """A Turn is already in flight for this session."""

    def __init__(self, message: str = "Already processing a message. Please wait.") -> None:
        super().__init__(message)


class TurnTimeout(TurnError):
    """The Turn deadline expired and the child was terminated."""


class TurnCancelled(TurnError):
    """The Turn was cancelled or its session was closed."""


class ProcessExit(TurnError):
    """The child exited while a Turn was pending."""

    def __init__(
        self,
        message: str = "",
        partial_output: str = "",
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, partial_output)
        self.returncode = returncode
        self.stderr = stderr


class ChildIOError(ProcessExit):
    """Reading from or writing to the child channel failed."""
