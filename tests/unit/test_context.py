"""Tests for ngrokd.context — cancellation and deadlines."""
from __future__ import annotations

import threading
import time

import pytest

from ngrokd.context import Context
from ngrokd.errors import ContextCancelledError, DeadlineExceededError


class TestBackground:
    def test_background_is_live(self) -> None:
        ctx = Context.background()
        assert ctx.err() is None
        assert ctx.deadline is None
        assert ctx.remaining() is None
        assert not ctx.done.is_set()
        ctx.raise_if_done()

    def test_cancel_sets_error(self) -> None:
        ctx = Context.background()
        ctx.cancel()
        assert isinstance(ctx.err(), ContextCancelledError)
        assert not isinstance(ctx.err(), DeadlineExceededError)
        assert ctx.done.is_set()
        with pytest.raises(ContextCancelledError):
            ctx.raise_if_done()

    def test_cancel_is_idempotent(self) -> None:
        ctx = Context.background()
        ctx.cancel()
        first = ctx.err()
        ctx.cancel()
        assert ctx.err() is first

    def test_with_statement_cancels_on_exit(self) -> None:
        with Context.background().with_cancel() as ctx:
            assert ctx.err() is None
        assert ctx.err() is not None


class TestDeadline:
    def test_timeout_expires(self) -> None:
        ctx = Context.background().with_timeout(0.05)
        assert ctx.wait(2.0) is True
        assert isinstance(ctx.err(), DeadlineExceededError)
        with pytest.raises(TimeoutError):
            ctx.raise_if_done()

    def test_non_positive_timeout_is_done_immediately(self) -> None:
        ctx = Context.background().with_timeout(0)
        assert ctx.done.is_set()
        assert isinstance(ctx.err(), DeadlineExceededError)

    def test_remaining_counts_down(self) -> None:
        ctx = Context.background().with_timeout(10)
        remaining = ctx.remaining()
        assert remaining is not None
        assert 9.0 < remaining <= 10.0
        ctx.cancel()

    def test_child_inherits_earlier_parent_deadline(self) -> None:
        parent = Context.background().with_timeout(1)
        child = parent.with_timeout(60)
        assert child.deadline == parent.deadline
        parent.cancel()

    def test_child_keeps_its_own_earlier_deadline(self) -> None:
        parent = Context.background().with_timeout(60)
        child = parent.with_timeout(1)
        assert child.deadline is not None and parent.deadline is not None
        assert child.deadline < parent.deadline
        parent.cancel()

    def test_cancel_stops_timer(self) -> None:
        ctx = Context.background().with_timeout(0.05)
        ctx.cancel()
        time.sleep(0.1)
        assert type(ctx.err()) is ContextCancelledError


class TestTree:
    def test_parent_cancel_reaches_child(self) -> None:
        parent = Context.background()
        child = parent.with_cancel()
        grandchild = child.with_timeout(60)
        parent.cancel()
        assert isinstance(child.err(), ContextCancelledError)
        assert isinstance(grandchild.err(), ContextCancelledError)

    def test_child_cancel_does_not_reach_parent(self) -> None:
        parent = Context.background()
        child = parent.with_cancel()
        child.cancel()
        assert child.err() is not None
        assert parent.err() is None

    def test_parent_deadline_propagates_as_deadline(self) -> None:
        parent = Context.background().with_timeout(0.05)
        child = parent.with_cancel()
        assert child.wait(2.0) is True
        assert isinstance(child.err(), DeadlineExceededError)

    def test_child_of_done_parent_is_done(self) -> None:
        parent = Context.background()
        parent.cancel()
        assert parent.with_cancel().err() is not None

    def test_finished_child_detaches_from_parent(self) -> None:
        parent = Context.background()
        for _ in range(10):
            parent.with_cancel().cancel()
        assert parent._callbacks == {}


class TestCallbacks:
    def test_callback_runs_on_cancel(self) -> None:
        ctx = Context.background()
        fired = threading.Event()
        ctx.after_cancel(fired.set)
        assert not fired.is_set()
        ctx.cancel()
        assert fired.is_set()

    def test_callback_runs_immediately_when_done(self) -> None:
        ctx = Context.background()
        ctx.cancel()
        calls: list[int] = []
        ctx.after_cancel(lambda: calls.append(1))
        assert calls == [1]

    def test_unregistered_callback_does_not_run(self) -> None:
        ctx = Context.background()
        calls: list[int] = []
        unregister = ctx.after_cancel(lambda: calls.append(1))
        unregister()
        ctx.cancel()
        assert calls == []

    def test_callbacks_run_once(self) -> None:
        ctx = Context.background()
        calls: list[int] = []
        ctx.after_cancel(lambda: calls.append(1))
        ctx.cancel()
        ctx.cancel()
        assert calls == [1]

    def test_cancel_from_another_thread_wakes_waiter(self) -> None:
        ctx = Context.background()
        threading.Timer(0.05, ctx.cancel).start()
        assert ctx.wait(2.0) is True
