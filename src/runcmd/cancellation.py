"""Cancellable, deadline-aware contexts with a value overlay.

A context carries three things down a call chain:
- a cancellation signal (explicit cancel or parent cancellation)
- an optional deadline on the time.monotonic() clock
- a persistent key/value overlay, looked up from the newest node to the oldest

Contexts form a tree. Cancellation flows from a parent to all of its
descendants and never upwards. Nodes are never mutated once created, except
for the cancellation state of cancellable nodes.

Example:
    ctx, cancel = with_timeout(background(), 5.0)
    try:
        await runcmd.run(ctx, "make", "test")
    finally:
        cancel()
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Any

from .errors import ContextCancelled, ContextError, DeadlineExceeded

__all__ = [
    "Context",
    "background",
    "with_cancel",
    "with_deadline",
    "with_timeout",
    "with_value",
]

logger = logging.getLogger(__name__)

DoneCallback = Callable[[ContextError], None]


class Context:
    """Base class for every context.

    Subclasses override what they add; everything else is delegated to the
    parent. The root (background) context is never done and has no values.
    """

    def __init__(self, parent: Context | None = None) -> None:
        self._parent = parent

    @property
    def parent(self) -> Context | None:
        return self._parent

    @property
    def deadline(self) -> float | None:
        """Monotonic instant after which the context is done, or None."""
        if self._parent is None:
            return None
        return self._parent.deadline

    def error(self) -> ContextError | None:
        """Why the context is done, or None while it is still live."""
        if self._parent is None:
            return None
        return self._parent.error()

    @property
    def done(self) -> bool:
        return self.error() is not None

    def value(self, key: Any) -> Any:
        """Look up ``key`` in the overlay. Returns None when absent."""
        if self._parent is None:
            return None
        return self._parent.value(key)

    def add_done_callback(self, callback: DoneCallback) -> None:
        """Call ``callback(error)`` once the context is done.

        The callback runs on the thread that cancels the context, or
        immediately if the context is already done. Deadline expiry only
        fires callbacks once somebody observes it through ``error()``.
        """
        if self._parent is not None:
            self._parent.add_done_callback(callback)

    def remove_done_callback(self, callback: DoneCallback) -> None:
        if self._parent is not None:
            self._parent.remove_done_callback(callback)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(parent={self._parent!r})"


class _BackgroundContext(Context):
    """Root context: never cancelled, no deadline, no values."""

    def __repr__(self) -> str:
        return "background()"


class _CancelContext(Context):
    """Context that can be cancelled, optionally with a deadline."""

    def __init__(self, parent: Context, deadline: float | None = None) -> None:
        super().__init__(parent)
        parent_deadline = parent.deadline
        if parent_deadline is not None and (deadline is None or parent_deadline < deadline):
            deadline = parent_deadline
        self._deadline = deadline
        self._lock = threading.Lock()
        self._error: ContextError | None = None
        self._callbacks: list[DoneCallback] = []

        # Hook into the parent; fires immediately if it is already done.
        parent.add_done_callback(self._on_parent_done)

    @property
    def deadline(self) -> float | None:
        return self._deadline

    def error(self) -> ContextError | None:
        if self._error is None and self._deadline is not None:
            if time.monotonic() >= self._deadline:
                self.cancel(DeadlineExceeded())
        if self._error is None:
            # Parent may have expired without anybody observing it yet.
            parent_error = self._parent.error() if self._parent else None
            if parent_error is not None:
                self.cancel(parent_error)
        return self._error

    def cancel(self, error: ContextError | None = None) -> None:
        """Mark the context done and notify callbacks. Idempotent."""
        with self._lock:
            if self._error is not None:
                return
            self._error = error if error is not None else ContextCancelled()
            callbacks, self._callbacks = self._callbacks, []

        if self._parent is not None:
            self._parent.remove_done_callback(self._on_parent_done)

        logger.debug(f"Context done: {self._error}")
        for callback in callbacks:
            try:
                callback(self._error)
            except Exception as e:
                logger.warning(f"Error in context done callback: {e}")

    def add_done_callback(self, callback: DoneCallback) -> None:
        with self._lock:
            if self._error is None:
                self._callbacks.append(callback)
                return
            error = self._error
        callback(error)

    def remove_done_callback(self, callback: DoneCallback) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def _on_parent_done(self, error: ContextError) -> None:
        self.cancel(error)

    def __repr__(self) -> str:
        state = "done" if self._error is not None else "live"
        return f"{type(self).__name__}(state={state}, deadline={self._deadline})"


class _ValueContext(Context):
    """Overlay node holding a single key/value pair."""

    def __init__(self, parent: Context, key: Any, value: Any) -> None:
        super().__init__(parent)
        self._key = key
        self._value = value

    def value(self, key: Any) -> Any:
        if key is self._key:
            return self._value
        return super().value(key)

    def __repr__(self) -> str:
        return f"{self._parent!r}.with_value({self._key!r}, {type(self._value).__name__})"


_BACKGROUND = _BackgroundContext()


def background() -> Context:
    """Return the root context."""
    return _BACKGROUND


def with_cancel(parent: Context) -> tuple[Context, Callable[[], None]]:
    """Derive a cancellable context.

    Returns:
        Tuple of (context, cancel). Calling cancel() more than once is harmless.
    """
    ctx = _CancelContext(parent)
    return ctx, ctx.cancel


def with_deadline(parent: Context, deadline: float) -> tuple[Context, Callable[[], None]]:
    """Derive a context that expires at ``deadline`` (time.monotonic() clock).

    The parent's deadline still applies when it is earlier.
    """
    ctx = _CancelContext(parent, deadline)
    return ctx, ctx.cancel


def with_timeout(parent: Context, timeout: float) -> tuple[Context, Callable[[], None]]:
    """Derive a context that expires ``timeout`` seconds from now."""
    return with_deadline(parent, time.monotonic() + timeout)


def with_value(parent: Context, key: Any, value: Any) -> Context:
    """Derive an overlay node. Keys are compared by identity."""
    return _ValueContext(parent, key, value)
