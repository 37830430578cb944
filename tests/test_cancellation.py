"""Base context unit tests.

Test coverage:
- Background context
- Explicit cancellation and propagation to children
- Deadlines and timeouts
- Value overlay lookup and shadowing
- Done callbacks
"""

from __future__ import annotations

import threading
import time

import pytest

from runcmd.cancellation import (
    background,
    with_cancel,
    with_deadline,
    with_timeout,
    with_value,
)
from runcmd.errors import ContextCancelled, ContextError, DeadlineExceeded


# =============================================================================
# Background Tests
# =============================================================================


class TestBackground:
    """Test the root context."""

    def test_never_done(self):
        ctx = background()
        assert ctx.done is False
        assert ctx.error() is None
        assert ctx.deadline is None

    def test_no_values(self):
        assert background().value("anything") is None

    def test_singleton(self):
        assert background() is background()


# =============================================================================
# Cancellation Tests
# =============================================================================


class TestCancellation:
    """Test explicit cancellation."""

    def test_cancel(self):
        ctx, cancel = with_cancel(background())
        assert not ctx.done

        cancel()

        assert ctx.done
        assert isinstance(ctx.error(), ContextCancelled)
        assert str(ctx.error()) == "context canceled"

    def test_cancel_is_idempotent(self):
        ctx, cancel = with_cancel(background())
        cancel()
        first = ctx.error()
        cancel()
        assert ctx.error() is first

    def test_parent_cancels_child(self):
        parent, cancel_parent = with_cancel(background())
        child, _ = with_cancel(parent)

        cancel_parent()

        assert child.done
        assert isinstance(child.error(), ContextCancelled)

    def test_child_does_not_cancel_parent(self):
        parent, _ = with_cancel(background())
        child, cancel_child = with_cancel(parent)

        cancel_child()

        assert child.done
        assert not parent.done

    def test_child_of_done_parent_is_done(self):
        parent, cancel = with_cancel(background())
        cancel()

        child, _ = with_cancel(parent)
        assert child.done

    def test_cancel_through_value_node(self):
        parent, cancel = with_cancel(background())
        middle = with_value(parent, "k", "v")
        child, _ = with_cancel(middle)

        cancel()

        assert middle.done
        assert child.done

    def test_cancel_from_other_thread(self):
        ctx, cancel = with_cancel(background())
        thread = threading.Thread(target=cancel)
        thread.start()
        thread.join()
        assert ctx.done


# =============================================================================
# Deadline Tests
# =============================================================================


class TestDeadline:
    """Test deadlines and timeouts."""

    def test_timeout_sets_deadline(self):
        before = time.monotonic()
        ctx, _ = with_timeout(background(), 10.0)
        assert ctx.deadline is not None
        assert before + 10.0 <= ctx.deadline <= time.monotonic() + 10.0

    def test_expired_deadline(self):
        ctx, _ = with_deadline(background(), time.monotonic() - 1)
        assert ctx.done
        assert isinstance(ctx.error(), DeadlineExceeded)
        assert str(ctx.error()) == "context deadline exceeded"

    def test_timeout_expires(self):
        ctx, _ = with_timeout(background(), 0.05)
        assert not ctx.done
        time.sleep(0.1)
        assert isinstance(ctx.error(), DeadlineExceeded)

    def test_parent_deadline_wins_when_earlier(self):
        parent, _ = with_timeout(background(), 1.0)
        child, _ = with_timeout(parent, 100.0)
        assert child.deadline == parent.deadline

    def test_child_deadline_wins_when_earlier(self):
        parent, _ = with_timeout(background(), 100.0)
        child, _ = with_timeout(parent, 1.0)
        assert child.deadline < parent.deadline

    def test_value_node_reports_parent_deadline(self):
        parent, _ = with_timeout(background(), 5.0)
        assert with_value(parent, "k", 1).deadline == parent.deadline

    def test_cancel_before_deadline(self):
        ctx, cancel = with_timeout(background(), 100.0)
        cancel()
        assert isinstance(ctx.error(), ContextCancelled)


# =============================================================================
# Value Overlay Tests
# =============================================================================


class TestValues:
    """Test the key/value overlay."""

    def test_lookup(self):
        ctx = with_value(background(), "key", "value")
        assert ctx.value("key") == "value"
        assert ctx.value("other") is None

    def test_newest_shadows_oldest(self):
        ctx = with_value(with_value(background(), "key", 1), "key", 2)
        assert ctx.value("key") == 2

    def test_shadowing_does_not_touch_parent(self):
        first = with_value(background(), "key", 1)
        second = with_value(first, "key", 2)
        assert first.value("key") == 1
        assert second.value("key") == 2

    def test_keys_compared_by_identity(self):
        class Key:
            def __eq__(self, other):
                return True

            __hash__ = object.__hash__

        ctx = with_value(background(), Key(), "value")
        assert ctx.value(Key()) is None

    def test_values_visible_through_cancel_node(self):
        ctx, _ = with_cancel(with_value(background(), "key", "value"))
        assert ctx.value("key") == "value"


# =============================================================================
# Callback Tests
# =============================================================================


class TestDoneCallbacks:
    """Test done callbacks."""

    def test_callback_fires_on_cancel(self):
        ctx, cancel = with_cancel(background())
        seen: list[ContextError] = []
        ctx.add_done_callback(seen.append)

        cancel()
        cancel()

        assert len(seen) == 1
        assert isinstance(seen[0], ContextCancelled)

    def test_callback_on_done_context_fires_immediately(self):
        ctx, cancel = with_cancel(background())
        cancel()

        seen: list[ContextError] = []
        ctx.add_done_callback(seen.append)
        assert len(seen) == 1

    def test_removed_callback_does_not_fire(self):
        ctx, cancel = with_cancel(background())
        seen: list[ContextError] = []
        ctx.add_done_callback(seen.append)
        ctx.remove_done_callback(seen.append)

        cancel()

        assert seen == []

    def test_callback_via_value_node(self):
        parent, cancel = with_cancel(background())
        ctx = with_value(parent, "k", "v")
        seen: list[ContextError] = []
        ctx.add_done_callback(seen.append)

        cancel()

        assert len(seen) == 1

    def test_failing_callback_does_not_block_others(self):
        ctx, cancel = with_cancel(background())
        seen: list[ContextError] = []

        def broken(error: ContextError) -> None:
            raise RuntimeError("boom")

        ctx.add_done_callback(broken)
        ctx.add_done_callback(seen.append)

        cancel()

        assert len(seen) == 1

    def test_background_callback_never_fires(self):
        seen: list[ContextError] = []
        background().add_done_callback(seen.append)
        background().remove_done_callback(seen.append)
        assert seen == []
