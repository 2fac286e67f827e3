from __future__ import annotations

import threading
import time
from collections.abc import Callable
from types import TracebackType
from typing import Any, TypeVar

T = TypeVar("T")


class ContextCancelled(Exception):
    """Raised when work is abandoned because its context was cancelled."""


class DeadlineExceeded(ContextCancelled):
    """Raised when a context's deadline passes before the work completes."""


class Context:
    """Cancellation token threaded explicitly through every call boundary.

    A context is cancelled either by calling :meth:`cancel`, by its deadline
    elapsing, or by its parent being cancelled.  Children never outlive their
    parent: cancelling a parent cancels every child with the same error.

    Contexts are cheap; a deadline costs one daemon timer thread which is
    released as soon as the context is cancelled.  Use the context-manager
    form so derived contexts are always released::

        with appctx.with_timeout(180) as ctx:
            updater.update(ctx, obj)
    """

    def __init__(self, parent: Context | None = None, deadline: float | None = None) -> None:
        self._done = threading.Event()
        self._lock = threading.Lock()
        self._error: ContextCancelled | None = None
        self._children: set[Context] = set()
        self._timer: threading.Timer | None = None
        self._parent = parent

        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline = deadline

        if parent is not None:
            parent._attach(self)
        if deadline is not None and not self._done.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self._cancel(DeadlineExceeded("context deadline exceeded"))
            else:
                self._timer = threading.Timer(
                    remaining, self._cancel, args=(DeadlineExceeded("context deadline exceeded"),)
                )
                self._timer.daemon = True
                self._timer.start()

    @classmethod
    def background(cls) -> Context:
        """Return a root context that is only cancelled explicitly."""
        return cls()

    def with_cancel(self) -> Context:
        return Context(parent=self)

    def with_timeout(self, seconds: float) -> Context:
        return Context(parent=self, deadline=time.monotonic() + seconds)

    def cancel(self) -> None:
        self._cancel(ContextCancelled("context cancelled"))

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses.  Returns True when cancelled."""
        return self._done.wait(timeout)

    @property
    def error(self) -> ContextCancelled | None:
        return self._error

    def remaining(self) -> float | None:
        """Seconds left before the deadline, or None when there is no deadline."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def raise_if_done(self) -> None:
        error = self._error
        if error is not None:
            raise error

    def _attach(self, child: Context) -> None:
        with self._lock:
            error = self._error
            if error is None:
                self._children.add(child)
        if error is not None:
            child._cancel(error)

    def _detach(self, child: Context) -> None:
        with self._lock:
            self._children.discard(child)

    def _cancel(self, error: ContextCancelled) -> None:
        with self._lock:
            if self._error is not None:
                return
            self._error = error
            children = list(self._children)
            self._children.clear()
            timer = self._timer
            self._timer = None
        self._done.set()
        if timer is not None:
            timer.cancel()
        for child in children:
            child._cancel(error)
        if self._parent is not None:
            self._parent._detach(self)

    def __enter__(self) -> Context:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.cancel()


def call_with_context(ctx: Context, fn: Callable[..., T], *args: Any) -> T:
    """Run ``fn(call_ctx, *args)`` and wait for it, but never past *ctx*.

    The call runs on a daemon thread with a child of *ctx*.  When *ctx* is
    cancelled or its deadline passes first, the context error is raised and
    the call is abandoned; the helper thread is left to observe its own
    cancelled context and finish on its own.
    """
    ctx.raise_if_done()
    call_ctx = ctx.with_cancel()
    outcome: dict[str, Any] = {}

    def _target() -> None:
        try:
            outcome["result"] = fn(call_ctx, *args)
        except BaseException as exc:  # noqa: BLE001
            outcome["error"] = exc
        finally:
            outcome["finished"] = True
            call_ctx.cancel()

    threading.Thread(target=_target, name="context-call", daemon=True).start()
    call_ctx.wait()

    if not outcome.get("finished"):
        error = ctx.error or call_ctx.error
        raise error if error is not None else ContextCancelled("context cancelled")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["result"]
