"""External command handle with context-bound cancellation.

This module provides:
- Command: a configured, not yet started external command
- Stream wiring: real files go straight to the child, anything else is pumped
- Context binding: from start on, cancellation or deadline expiry terminates
  the child, whether or not anyone is waiting on it
- Reliable termination (SIGTERM -> timeout -> SIGKILL) of the process group

Key design points:
- POSIX: start_new_session=True so the whole process group can be signalled
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Extra files are renumbered onto descriptors 3, 4, ... in the child
- Blocking stdin sources are read in a worker thread
- Cleanup is shielded from task cancellation
"""

from __future__ import annotations

import asyncio
import codecs
import errno
import io
import logging
import math
import os
import shutil
import signal
import subprocess
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import anyio
import anyio.to_thread

from .cancellation import Context, background
from .errors import CommandStateError, ContextError, DeadlineExceeded, ExitError

__all__ = [
    "Command",
    "IS_WINDOWS",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

if not IS_WINDOWS:
    import fcntl

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

CHUNK_SIZE = 4096

# First descriptor number given to extra files in the child
FIRST_EXTRA_FD = 3


def _fileno(stream: Any) -> int | None:
    """Return the OS-level descriptor behind ``stream``, if it has one."""
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        # io.UnsupportedOperation is both an OSError and a ValueError
        return None


def _renumber_fds(fds: list[int]) -> Callable[[], None]:
    """Build a pre-exec hook that places ``fds[i]`` at ``FIRST_EXTRA_FD + i``.

    The hook runs in the forked child. Sources that already sit inside the
    target range are first moved above it, so no dup2 clobbers a descriptor
    that is still to be copied. Copies made by dup2 are inheritable; every
    other descriptor Python opened is close-on-exec.
    """
    above = FIRST_EXTRA_FD + len(fds)

    def renumber() -> None:
        sources = []
        for fd in fds:
            if fd < above:
                fd = fcntl.fcntl(fd, fcntl.F_DUPFD, above)
                os.set_inheritable(fd, False)
            sources.append(fd)
        for target, fd in enumerate(sources, start=FIRST_EXTRA_FD):
            os.dup2(fd, target)

    return renumber


@dataclass
class Command:
    """An external command, configured but not started.

    Streams set to None are inherited from the calling process at the OS
    level. Streams backed by a real descriptor are handed to the child as-is;
    any other object is connected through a pipe and pumped while the
    command runs (text streams are encoded/decoded).

    A Command is single-use: it can be started once and waited on once.

    Example:
        cmd = Command("ls", ["-l"], stdout=buffer, dir="/tmp")
        await cmd.run()

    Attributes:
        path: Program to run; bare names are looked up on the caller's PATH
        args: Arguments, passed verbatim
        context: Cancelling this context terminates the running child
        stdin: Source for the child's standard input
        stdout: Sink for the child's standard output
        stderr: Sink for the child's standard error
        dir: Working directory (None = inherit)
        env: ``KEY=VALUE`` entries (None = inherit the caller's environment)
        extra_files: Open files the child sees at descriptors 3, 4, ... (POSIX)
        term_timeout: Seconds to wait after SIGTERM before SIGKILL
        kill_timeout: Seconds to wait after SIGKILL
        isolate: Run the child in its own session/process group
    """

    path: str
    args: list[str] = field(default_factory=list)
    context: Context = field(default_factory=background)
    stdin: Any = None
    stdout: Any = None
    stderr: Any = None
    dir: str | None = None
    env: list[str] | None = None
    extra_files: list[Any] = field(default_factory=list)
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    isolate: bool = True

    _process: asyncio.subprocess.Process | None = field(
        default=None, init=False, repr=False, compare=False
    )
    _input_pump: asyncio.Task[None] | None = field(
        default=None, init=False, repr=False, compare=False
    )
    _output_pumps: list[asyncio.Task[None]] = field(
        default_factory=list, init=False, repr=False, compare=False
    )
    _watcher: asyncio.Task[None] | None = field(
        default=None, init=False, repr=False, compare=False
    )
    _interrupted: ContextError | None = field(
        default=None, init=False, repr=False, compare=False
    )
    _started: bool = field(default=False, init=False, repr=False, compare=False)
    _waited: bool = field(default=False, init=False, repr=False, compare=False)

    @property
    def argv(self) -> list[str]:
        return [self.path, *self.args]

    @property
    def started(self) -> bool:
        return self._started

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process is not None else None

    def __str__(self) -> str:
        return " ".join(self.argv)

    async def run(self) -> None:
        """Start the command and wait for it to finish.

        Raises:
            ExitError: The command exited with a non-zero status
            ContextCancelled: The context was cancelled
            DeadlineExceeded: The context's deadline passed
            OSError: The command could not be started
        """
        await self.start()
        await self.wait()

    async def start(self) -> None:
        """Spawn the child process without waiting for it.

        From here on the child is bound to the context: cancelling it, or
        reaching its deadline, terminates the child even if wait() is never
        called.

        Raises:
            CommandStateError: The command was already started
            ContextError: The context is already done
            FileNotFoundError: The program could not be found
            ValueError: An environment entry is not ``KEY=VALUE``, or extra
                files were requested on Windows
        """
        if self._started:
            raise CommandStateError("command already started")
        self._started = True

        error = self.context.error()
        if error is not None:
            raise type(error)(str(error))

        executable = self._lookup_path()
        kwargs = self._build_subprocess_kwargs()

        stdin = self._stream_target(self.stdin)
        stdout = self._stream_target(self.stdout)
        stderr = self._stream_target(self.stderr)

        process = await asyncio.create_subprocess_exec(
            self.path,
            *self.args,
            executable=executable,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            cwd=self.dir,
            **kwargs,
        )
        self._process = process

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={self.path} cwd={self.dir or os.getcwd()}"
        )

        if process.stdin is not None:
            self._input_pump = asyncio.create_task(
                self._pump_input(process.stdin, self.stdin)
            )
        if process.stdout is not None:
            self._output_pumps.append(
                asyncio.create_task(self._pump_output(process.stdout, self.stdout))
            )
        if process.stderr is not None:
            self._output_pumps.append(
                asyncio.create_task(self._pump_output(process.stderr, self.stderr))
            )

        self._watcher = asyncio.create_task(self._watch_context(process))

    async def wait(self) -> None:
        """Wait for the started command to exit.

        Raises:
            CommandStateError: Not started, or already waited on
            ExitError: The command exited with a non-zero status
            ContextError: The context ended the command
        """
        if self._process is None:
            raise CommandStateError("command not started")
        if self._waited:
            raise CommandStateError("wait was already called")
        self._waited = True

        process = self._process
        try:
            await process.wait()
            # Input left unread is of no use to an exited child
            await self._stop_input_pump()
            pumps = list(self._output_pumps)
            if self._input_pump is not None and not self._input_pump.cancelled():
                pumps.append(self._input_pump)
            if pumps:
                await asyncio.gather(*pumps)
        finally:
            await self._safe_cleanup(process)

        exit_error: ExitError | None = None
        if process.returncode != 0:
            exit_error = ExitError(process.returncode, self.argv)

        logger.debug(
            f"Subprocess completed pid={process.pid} "
            f"returncode={process.returncode}"
        )

        if self._interrupted is not None:
            error = self._interrupted
            raise type(error)(str(error)) from exit_error
        if exit_error is not None:
            raise exit_error

    async def _watch_context(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the child once the context is cancelled or expires."""
        loop = asyncio.get_running_loop()
        done = asyncio.Event()

        def on_context_done(error: ContextError) -> None:
            # May run on any thread
            loop.call_soon_threadsafe(done.set)

        self.context.add_done_callback(on_context_done)
        try:
            with anyio.CancelScope(deadline=self._scope_deadline()):
                await done.wait()
        finally:
            self.context.remove_done_callback(on_context_done)

        if process.returncode is not None:
            return
        self._interrupted = self.context.error() or DeadlineExceeded()
        logger.debug(
            f"Context ended subprocess pid={process.pid}: {self._interrupted}"
        )
        await self._terminate_process(process)
        await self._stop_input_pump()

    def _scope_deadline(self) -> float:
        """Translate the context deadline onto anyio's clock."""
        deadline = self.context.deadline
        if deadline is None:
            return math.inf
        return anyio.current_time() + (deadline - time.monotonic())

    def _lookup_path(self) -> str:
        """Resolve a bare program name against the caller's PATH."""
        if os.sep in self.path or (os.altsep and os.altsep in self.path):
            return self.path
        found = shutil.which(self.path)
        if found is None:
            raise FileNotFoundError(
                errno.ENOENT, "executable file not found in $PATH", self.path
            )
        return found

    def _build_environ(self) -> dict[str, str] | None:
        """Turn the ``KEY=VALUE`` list into a mapping. Later entries win."""
        if self.env is None:
            return None
        environ: dict[str, str] = {}
        for entry in self.env:
            key, sep, value = entry.partition("=")
            if not sep:
                raise ValueError(
                    f"invalid environment entry {entry!r}: expected KEY=VALUE"
                )
            environ[key] = value
        return environ

    def _build_subprocess_kwargs(self) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        environ = self._build_environ()
        if environ is not None:
            kwargs["env"] = environ

        if self.extra_files:
            if IS_WINDOWS:
                raise ValueError("extra files are not supported on Windows")
            fds = [f.fileno() for f in self.extra_files]
            # pass_fds would keep the parent's numbers
            kwargs["preexec_fn"] = _renumber_fds(fds)
            kwargs["close_fds"] = False

        if self.isolate:
            if IS_WINDOWS:
                kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
            else:
                kwargs["start_new_session"] = True

        return kwargs

    @staticmethod
    def _stream_target(stream: Any) -> Any:
        """Pick what to hand to the child for ``stream``.

        Returns:
            None to inherit, a descriptor for real files, or PIPE for
            objects that must be pumped
        """
        if stream is None:
            return None
        fd = _fileno(stream)
        if fd is None:
            return asyncio.subprocess.PIPE
        # Push out anything buffered on our side before the child writes
        flush = getattr(stream, "flush", None)
        if callable(flush):
            flush()
        return fd

    async def _pump_output(self, reader: asyncio.StreamReader, sink: Any) -> None:
        """Copy a child's output pipe into ``sink``."""
        decoder = None
        if isinstance(sink, io.TextIOBase):
            encoding = getattr(sink, "encoding", None) or "utf-8"
            decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

        while True:
            chunk = await reader.read(CHUNK_SIZE)
            if not chunk:
                break
            if decoder is None:
                sink.write(chunk)
                continue
            text = decoder.decode(chunk)
            if text:
                sink.write(text)

        if decoder is not None:
            tail = decoder.decode(b"", final=True)
            if tail:
                sink.write(tail)
        flush = getattr(sink, "flush", None)
        if callable(flush):
            flush()

    async def _pump_input(self, writer: asyncio.StreamWriter, source: Any) -> None:
        """Feed ``source`` into the child's stdin pipe, then close it.

        Reads run in a worker thread so a source that blocks (a terminal, a
        socket) never stalls the event loop; on cancellation the pending read
        is abandoned.
        """
        try:
            while True:
                chunk = await anyio.to_thread.run_sync(
                    source.read, CHUNK_SIZE, abandon_on_cancel=True
                )
                if not chunk:
                    break
                if isinstance(chunk, str):
                    chunk = chunk.encode(getattr(source, "encoding", None) or "utf-8")
                writer.write(chunk)
                await writer.drain()
        except (BrokenPipeError, ConnectionResetError):
            # Child stopped reading; its exit status tells the rest
            logger.debug(f"Subprocess closed stdin early pid={self.pid}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

    async def _stop_input_pump(self) -> None:
        """Cancel the stdin pump if it is still feeding the child."""
        task = self._input_pump
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _safe_cleanup(self, process: asyncio.subprocess.Process) -> None:
        """Cleanup subprocess, watcher and pumps, shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup(process))
        except asyncio.CancelledError:
            # If shield itself is cancelled, still try cleanup
            await self._do_cleanup(process)
            raise

    async def _do_cleanup(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the child if it is still running, then stop helper tasks."""
        if process.returncode is None:
            await self._terminate_process(process)

        tasks = list(self._output_pumps)
        if self._input_pump is not None:
            tasks.append(self._input_pump)
        if self._watcher is not None:
            tasks.append(self._watcher)

        for task in tasks:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

    async def _terminate_process(self, process: asyncio.subprocess.Process) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit
        """
        pid = process.pid
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                self._windows_terminate(process)
            else:
                self._posix_signal(process, signal.SIGTERM)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                process.kill()
            else:
                self._posix_signal(process, signal.SIGKILL)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={process.returncode}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    def _posix_signal(self, process: asyncio.subprocess.Process, sig: int) -> None:
        """Send ``sig`` to the child's process group, or to the child alone.

        The child alone is signalled when it was not isolated, or when the
        group cannot be signalled.
        """
        if self.isolate:
            try:
                pgid = os.getpgid(process.pid)
                os.killpg(pgid, sig)
                logger.debug(
                    f"Sent {signal.Signals(sig).name} to process group pgid={pgid}"
                )
                return
            except ProcessLookupError:
                return
            except OSError as e:
                logger.debug(f"killpg failed, signalling pid={process.pid}: {e}")
        process.send_signal(sig)

    def _windows_terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send CTRL_BREAK_EVENT on Windows."""
        if not self.isolate:
            process.terminate()
            return
        try:
            # Works because of CREATE_NEW_PROCESS_GROUP
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()
