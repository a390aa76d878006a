"""Cancellation contexts for blocking operations.

A :class:`Context` carries a cancellation signal and an optional deadline
across threads. Every blocking ngrokd operation (TCP connect, TLS handshake,
frame I/O, retry backoff, directory requests) accepts one and unwinds
promptly once it is done.

Contexts form a tree: cancelling a parent cancels every child, while a
child's cancellation never propagates upwards.

Example
-------
::

    from ngrokd.context import Context

    ctx = Context.background().with_timeout(10.0)
    conn = dialer.dial_context(ctx, "tcp", "app.example:443")
"""
from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from ngrokd.errors import ContextCancelledError, DeadlineExceededError


class Context:
    """A cancellation signal with an optional deadline.

    Use :meth:`background` for a root context, then derive children with
    :meth:`with_cancel` and :meth:`with_timeout`.

    Parameters
    ----------
    parent:
        Context whose cancellation also cancels this one.
    deadline:
        Absolute ``time.monotonic()`` value after which the context is done.
    """

    def __init__(
        self,
        parent: Optional["Context"] = None,
        deadline: Optional[float] = None,
    ) -> None:
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self._deadline = deadline
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._err: Optional[ContextCancelledError] = None
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0
        self._timer: Optional[threading.Timer] = None
        self._detach: Optional[Callable[[], None]] = None

        if parent is not None:
            self._detach = parent.after_cancel(
                lambda: self._finish(type(parent.err() or ContextCancelledError())())
            )

        if deadline is not None and not self._done.is_set():
            delay = deadline - time.monotonic()
            if delay <= 0:
                self._finish(DeadlineExceededError())
            else:
                self._timer = threading.Timer(delay, self._finish, args=(DeadlineExceededError(),))
                self._timer.daemon = True
                self._timer.start()

    # ------------------------------------------------------------------
    # Factories
    # ------------------------------------------------------------------

    @classmethod
    def background(cls) -> "Context":
        """Return a new root context that is never cancelled on its own."""
        return cls()

    def with_cancel(self) -> "Context":
        """Return a child context that can be cancelled independently."""
        return Context(parent=self)

    def with_timeout(self, seconds: float) -> "Context":
        """Return a child context that expires *seconds* from now."""
        return Context(parent=self, deadline=time.monotonic() + seconds)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def deadline(self) -> Optional[float]:
        """Absolute monotonic deadline, or None when the context has none."""
        return self._deadline

    @property
    def done(self) -> threading.Event:
        """Event set once the context is cancelled or its deadline passes."""
        return self._done

    def err(self) -> Optional[ContextCancelledError]:
        """Return the reason the context ended, or None while it is live."""
        with self._lock:
            return self._err

    def raise_if_done(self) -> None:
        """Raise the cancellation reason if the context has ended."""
        err = self.err()
        if err is not None:
            raise type(err)()

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline (never negative), or None without one."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block for up to *timeout* seconds; return True if the context ended."""
        return self._done.wait(timeout)

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Cancel the context and all of its children. Idempotent."""
        self._finish(ContextCancelledError())

    def after_cancel(self, fn: Callable[[], None]) -> Callable[[], None]:
        """Run *fn* when the context ends.

        If the context has already ended, *fn* runs immediately in the
        calling thread. Returns a function that unregisters *fn*.
        """
        with self._lock:
            if self._err is None:
                key = self._next_id
                self._next_id += 1
                self._callbacks[key] = fn

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(key, None)

                return unregister
        fn()
        return lambda: None

    def _finish(self, err: ContextCancelledError) -> None:
        with self._lock:
            if self._err is not None:
                return
            self._err = err
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
            timer = self._timer
            detach = self._detach
        if timer is not None:
            timer.cancel()
        if detach is not None:
            detach()
        self._done.set()
        for fn in callbacks:
            fn()

    def __enter__(self) -> "Context":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.cancel()

    def __repr__(self) -> str:
        state = "live" if self.err() is None else type(self.err()).__name__
        return f"Context(state={state}, remaining={self.remaining()!r})"
