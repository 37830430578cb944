"""runcmd exception classes.

All exceptions raised by the package derive from RuncmdError. Failures
coming from the operating system when a child is spawned (missing
executable, permission denied, ...) are not wrapped and propagate as the
usual OSError subclasses.
"""

from __future__ import annotations

import signal

__all__ = [
    "RuncmdError",
    "OptionTypeError",
    "CreateError",
    "CreateCommandError",
    "CommandStateError",
    "ExitError",
    "ContextError",
    "ContextCancelled",
    "DeadlineExceeded",
]


class RuncmdError(Exception):
    """Base exception for runcmd."""
    pass


class OptionTypeError(RuncmdError, TypeError):
    """An option was present on the context with an unexpected type.

    Attributes:
        option: Display name of the option (e.g. "Stdout")
        expected: Description of the accepted type
        actual: Name of the type that was found
    """

    def __init__(self, option: str, expected: str, actual: str) -> None:
        self.option = option
        self.expected = expected
        self.actual = actual
        super().__init__(f"expected {expected} for {option}, got {actual}")


class CreateError(RuncmdError):
    """Resolving an option into a command failed.

    Attributes:
        option: Display name of the option that failed
    """

    def __init__(self, option: str, cause: Exception) -> None:
        self.option = option
        super().__init__(f"failed to assign {option}: {cause}")


class CreateCommandError(RuncmdError):
    """run() could not build the command it was asked to execute."""

    def __init__(self, cause: Exception) -> None:
        super().__init__(f"failed to create command: {cause}")


class CommandStateError(RuncmdError, RuntimeError):
    """A command handle was used out of order (double start, early wait)."""
    pass


class ExitError(RuncmdError):
    """The child process exited unsuccessfully.

    Attributes:
        returncode: Exit status; negative values are terminating signals
        argv: Command line of the child
    """

    def __init__(self, returncode: int, argv: list[str]) -> None:
        self.returncode = returncode
        self.argv = argv
        super().__init__(self._describe(returncode))

    @staticmethod
    def _describe(returncode: int) -> str:
        if returncode >= 0:
            return f"exit status {returncode}"
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = str(-returncode)
        return f"signal: {name}"


class ContextError(RuncmdError):
    """Base class for the reasons a context is done."""
    pass


class ContextCancelled(ContextError):
    """The context was cancelled explicitly."""

    def __init__(self, message: str = "context canceled") -> None:
        super().__init__(message)


class DeadlineExceeded(ContextError):
    """The context's deadline passed."""

    def __init__(self, message: str = "context deadline exceeded") -> None:
        super().__init__(message)
