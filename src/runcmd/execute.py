"""Script-style helpers: build a command and run it in one call."""

from __future__ import annotations

import asyncio

from .cancellation import Context
from .errors import CreateCommandError, CreateError
from .resolver import create

__all__ = ["run", "run_sync"]


async def run(ctx: Context, path: str, *args: str) -> None:
    """Run ``path`` with ``args`` and wait for it, like a line in a shell script.

    Output goes to this process's stdout/stderr and input comes from its
    stdin, unless ``ctx`` is a ConfigContext that says otherwise.

    Raises:
        CreateCommandError: The command could not be built from ``ctx``
        ExitError: The command exited with a non-zero status
        ContextError: ``ctx`` was cancelled or its deadline passed
        OSError: The command could not be started
    """
    try:
        cmd = create(ctx, path, *args)
    except CreateError as e:
        raise CreateCommandError(e) from e
    await cmd.run()


def run_sync(ctx: Context, path: str, *args: str) -> None:
    """Blocking variant of run() for code without an event loop."""
    asyncio.run(run(ctx, path, *args))
