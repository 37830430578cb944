"""Turn a context plus a program invocation into a Command.

Every option is looked up on the context and checked against the capability
it needs. Absent options keep their defaults (the caller's standard streams,
inherited working directory and environment); options of the wrong type
stop construction with a CreateError naming the option.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable
from typing import Any

from .cancellation import Context
from .command import Command
from .errors import CreateError, OptionTypeError
from .options import DIR, ENV, EXTRA_FILES, STDERR, STDIN, STDOUT, OptionKey

__all__ = ["create"]

logger = logging.getLogger(__name__)


def _type_name(value: Any) -> str:
    cls = type(value)
    if cls.__module__ == "builtins":
        return cls.__qualname__
    return f"{cls.__module__}.{cls.__qualname__}"


def _lookup(
    ctx: Context,
    key: OptionKey,
    expected: str,
    check: Callable[[Any], bool],
) -> Any:
    """Fetch ``key`` from ctx and verify it with ``check``.

    Returns:
        The stored value, or None when the option is absent

    Raises:
        CreateError: The value is present but fails ``check``
    """
    value = ctx.value(key)
    if value is None:
        return None
    if not check(value):
        cause = OptionTypeError(key.name, expected, _type_name(value))
        raise CreateError(key.name, cause) from cause
    return value


def _is_writer(value: Any) -> bool:
    return callable(getattr(value, "write", None))


def _is_reader(value: Any) -> bool:
    return callable(getattr(value, "read", None))


def _is_path(value: Any) -> bool:
    if isinstance(value, str):
        return True
    return isinstance(value, os.PathLike) and isinstance(os.fspath(value), str)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and all(isinstance(v, str) for v in value)


def _is_file_list(value: Any) -> bool:
    return isinstance(value, (list, tuple)) and all(
        callable(getattr(v, "fileno", None)) for v in value
    )


def create(ctx: Context, path: str, *args: str) -> Command:
    """Build a configured, unstarted Command from ``ctx``.

    Any context is accepted; options that are not set fall back to:
    - stdin/stdout/stderr: this process's sys.stdin/sys.stdout/sys.stderr
    - dir: unset, the child inherits the current directory
    - env: unset, the child inherits os.environ
    - extra files: none

    An empty ``dir`` counts as unset. An empty environment list is kept and
    gives the child no environment variables at all.

    Args:
        ctx: Context carrying options, cancellation and deadline
        path: Program to run
        *args: Arguments, passed through verbatim

    Returns:
        A Command bound to ``ctx``; it has not been started

    Raises:
        CreateError: An option on ``ctx`` has the wrong type
        ValueError: ``path`` is empty
        TypeError: ``path`` or an argument is not a string
    """
    if not isinstance(path, str):
        raise TypeError(f"path must be str, got {_type_name(path)}")
    if not path:
        raise ValueError("path must not be empty")
    for arg in args:
        if not isinstance(arg, str):
            raise TypeError(f"arguments must be str, got {_type_name(arg)}")

    stdout = _lookup(ctx, STDOUT, "writable stream", _is_writer)
    stderr = _lookup(ctx, STDERR, "writable stream", _is_writer)
    stdin = _lookup(ctx, STDIN, "readable stream", _is_reader)
    directory = _lookup(ctx, DIR, "str or path-like", _is_path)
    environ = _lookup(ctx, ENV, "list of str", _is_string_list)
    extra_files = _lookup(ctx, EXTRA_FILES, "list of files", _is_file_list)

    dir_: str | None = None
    if directory is not None:
        dir_ = os.fspath(directory) or None

    cmd = Command(
        path,
        list(args),
        context=ctx,
        stdin=stdin if stdin is not None else sys.stdin,
        stdout=stdout if stdout is not None else sys.stdout,
        stderr=stderr if stderr is not None else sys.stderr,
        dir=dir_,
        env=list(environ) if environ is not None else None,
        extra_files=list(extra_files) if extra_files is not None else [],
    )

    logger.debug(
        f"Created command argv={cmd.argv} dir={cmd.dir} "
        f"env={'inherit' if cmd.env is None else len(cmd.env)} "
        f"extra_files={len(cmd.extra_files)}"
    )
    return cmd
