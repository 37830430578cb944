"""Configuration context: chainable execution options on top of a context.

Each ``with_*`` call returns a new ConfigContext carrying one more overlay
node; the receiver is left untouched, so earlier references keep seeing the
options they were built with.

Example:
    ctx = (
        runcmd.context()
        .with_dir("/tmp")
        .with_env("LANG=C")
        .with_stdout(buffer)
    )
    cmd = runcmd.create(ctx, "ls", "-l")
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import IO, Any, BinaryIO, TextIO

from .cancellation import Context, DoneCallback, background, with_value
from .errors import ContextError

__all__ = [
    "ConfigContext",
    "OptionKey",
    "context",
    "STDOUT",
    "STDERR",
    "STDIN",
    "DIR",
    "ENV",
    "EXTRA_FILES",
]


@dataclass(frozen=True, eq=False)
class OptionKey:
    """Identity-compared key for one execution option.

    Attributes:
        name: Display name used in error messages
    """

    name: str

    def __repr__(self) -> str:
        return f"OptionKey({self.name})"


STDOUT = OptionKey("Stdout")
STDERR = OptionKey("Stderr")
STDIN = OptionKey("Stdin")
DIR = OptionKey("Dir")
ENV = OptionKey("Env")
EXTRA_FILES = OptionKey("ExtraFiles")

Sink = BinaryIO | TextIO | IO[Any]
Source = BinaryIO | TextIO | IO[Any]


class ConfigContext(Context):
    """A context that also carries options for an external command.

    It stays a regular context: deadline, cancellation and value lookups are
    answered by the wrapped chain.
    """

    def __init__(self, base: Context) -> None:
        super().__init__(None)
        self._ctx = base

    @property
    def parent(self) -> Context | None:
        return self._ctx

    @property
    def deadline(self) -> float | None:
        return self._ctx.deadline

    def error(self) -> ContextError | None:
        return self._ctx.error()

    def value(self, key: Any) -> Any:
        return self._ctx.value(key)

    def add_done_callback(self, callback: DoneCallback) -> None:
        self._ctx.add_done_callback(callback)

    def remove_done_callback(self, callback: DoneCallback) -> None:
        self._ctx.remove_done_callback(callback)

    def _with(self, key: OptionKey, value: Any) -> ConfigContext:
        return ConfigContext(with_value(self._ctx, key, value))

    def with_stdout(self, sink: Sink) -> ConfigContext:
        """Redirect the command's standard output to ``sink``."""
        return self._with(STDOUT, sink)

    def with_stderr(self, sink: Sink) -> ConfigContext:
        """Redirect the command's standard error to ``sink``."""
        return self._with(STDERR, sink)

    def with_stdin(self, source: Source) -> ConfigContext:
        """Feed the command's standard input from ``source``."""
        return self._with(STDIN, source)

    def with_dir(self, path: str | os.PathLike[str]) -> ConfigContext:
        """Set the working directory. An empty string means no override."""
        return self._with(DIR, path)

    def with_env(self, *environ: str) -> ConfigContext:
        """Replace the command's environment with ``KEY=VALUE`` entries.

        Calling it without arguments gives the command an empty environment.
        """
        return self._with(ENV, environ)

    def with_extra_files(self, *files: IO[Any]) -> ConfigContext:
        """Open files the command should inherit, in order."""
        return self._with(EXTRA_FILES, files)

    def __repr__(self) -> str:
        return f"ConfigContext({self._ctx!r})"


def context(base: Context | None = None) -> ConfigContext:
    """Wrap ``base`` (background() when omitted) in a ConfigContext."""
    if base is None:
        base = background()
    if isinstance(base, ConfigContext):
        return ConfigContext(base._ctx)
    return ConfigContext(base)
