"""runcmd - run external commands the way a shell script would.

Options for a command (streams, working directory, environment, inherited
files) are chained onto a cancellable context, then resolved into a
Command that is bound to the context's cancellation and deadline.

Usage:
    ctx = runcmd.context().with_dir("/srv/app").with_stdout(log)
    await runcmd.run(ctx, "git", "pull", "--ff-only")
"""

__version__ = "0.1.0"

from .cancellation import (
    Context,
    background,
    with_cancel,
    with_deadline,
    with_timeout,
    with_value,
)
from .command import Command
from .errors import (
    CommandStateError,
    ContextCancelled,
    ContextError,
    CreateCommandError,
    CreateError,
    DeadlineExceeded,
    ExitError,
    OptionTypeError,
    RuncmdError,
)
from .execute import run, run_sync
from .options import ConfigContext, context
from .resolver import create

__all__ = [
    "__version__",
    "Command",
    "CommandStateError",
    "ConfigContext",
    "Context",
    "ContextCancelled",
    "ContextError",
    "CreateCommandError",
    "CreateError",
    "DeadlineExceeded",
    "ExitError",
    "OptionTypeError",
    "RuncmdError",
    "background",
    "context",
    "create",
    "run",
    "run_sync",
    "with_cancel",
    "with_deadline",
    "with_timeout",
    "with_value",
]
