from __future__ import annotations

import copy
import logging
import threading
import time
from typing import Any, Protocol

from tagger.src.context import Context, call_with_context
from tagger.src.informer import Informer, NotFoundError, meta_namespace_key, split_meta_namespace_key
from tagger.src.metrics import METRICS
from tagger.src.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

DEFAULT_SYNC_TIMEOUT_SECONDS = 180


class Controller(Protocol):
    """Anything the controller group can start: a name and a blocking ``start``."""

    name: str

    def start(self, ctx: Context) -> None: ...


class Updater(Protocol):
    def update(self, ctx: Context, obj: Any) -> None: ...


class TagUpdater(Protocol):
    """Reconciles one Tag.  Called with a private copy the callee may mutate.

    Calls are at-least-once: a failed attempt is retried with no guarantee
    that its side effects were rolled back, so implementations must be
    idempotent.
    """

    def update(self, ctx: Context, tag: dict[str, Any]) -> None: ...


class QueueController:
    """Informer-fed work queue drained by a token-bounded dispatcher.

    Informer notifications enqueue the object's ``namespace/name`` key.  A
    single dispatch loop pulls keys off the queue one at a time, acquires a
    worker token and runs the reconcile handler for that key on its own
    thread, so at most ``workers`` handlers run at once.  When every token is
    taken the dispatch loop itself blocks, leaving further keys in the queue.

    The handler re-reads the latest object from the cache rather than the
    event payload, copies it and calls ``updater.update`` with a deadline of
    ``sync_timeout_seconds`` derived from the context passed to
    :meth:`start`.  Failures are requeued with the queue's exponential
    backoff; success clears the key's backoff state.

    Handler threads outlive :meth:`start` unless ``drain_seconds`` is
    positive, in which case ``start`` waits up to that long for them.
    """

    def __init__(
        self,
        name: str,
        informer: Informer,
        updater: Updater,
        *,
        workers: int = 10,
        sync_timeout_seconds: float = DEFAULT_SYNC_TIMEOUT_SECONDS,
        queue: RateLimitingQueue | None = None,
        max_retries: int = 0,
        drain_seconds: float = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.name = name
        self.informer = informer
        self.updater = updater
        self.workers = workers
        self.sync_timeout_seconds = sync_timeout_seconds
        self.queue = queue if queue is not None else RateLimitingQueue(
            ItemExponentialFailureRateLimiter(base_delay=1.0, max_delay=60.0), name=name
        )
        self.max_retries = max_retries
        self.drain_seconds = drain_seconds
        self.logger = logger or logging.getLogger(__name__)

        self._tokens = threading.BoundedSemaphore(workers)
        self._handlers: set[threading.Thread] = set()
        self._handlers_lock = threading.Lock()
        # Failed attempts per key since its last success, independent of how
        # many times informer events re-enqueued it.
        self._failures: dict[str, int] = {}
        self._failures_lock = threading.Lock()
        self._appctx = Context.background()
        informer.add_event_handler(self)

    # Informer notifications.  Deletes are enqueued too: the handler sees
    # the key missing from the cache and treats it as done.

    def on_add(self, obj: Any) -> None:
        self._enqueue(obj)

    def on_update(self, old: Any, new: Any) -> None:
        self._enqueue(new)

    def on_delete(self, obj: Any) -> None:
        self._enqueue(obj)

    def _enqueue(self, obj: Any) -> None:
        try:
            key = meta_namespace_key(obj)
        except ValueError as exc:
            self.logger.error("Failed to enqueue %s event: %s", self.name, exc)
            return
        self.queue.add_rate_limited(key)

    def in_flight(self) -> int:
        with self._handlers_lock:
            return len(self._handlers)

    def _process_events(self) -> None:
        while True:
            key, shutting_down = self.queue.get()
            if shutting_down or key is None:
                return

            self._tokens.acquire()
            handler = threading.Thread(
                target=self._handle,
                args=(key,),
                name=f"{self.name}-handler",
                daemon=True,
            )
            with self._handlers_lock:
                self._handlers.add(handler)
            METRICS.handlers_in_flight.labels(controller=self.name).inc()
            handler.start()

    def _handle(self, key: str) -> None:
        try:
            self._process_key(key)
        finally:
            with self._handlers_lock:
                self._handlers.discard(threading.current_thread())
            METRICS.handlers_in_flight.labels(controller=self.name).dec()
            self._tokens.release()

    def _process_key(self, key: str) -> None:
        try:
            namespace, name = split_meta_namespace_key(key)
        except ValueError as exc:
            self.logger.error("Invalid %s event received %s: %s", self.name, key, exc)
            METRICS.dropped_keys_total.labels(controller=self.name).inc()
            self.queue.done(key)
            return

        self.logger.info("Received event for %s: %s", self.name, key)
        started = time.monotonic()
        try:
            self.sync(namespace, name)
        except Exception as exc:
            METRICS.reconcile_total.labels(controller=self.name, result="error").inc()
            self.logger.error("Error processing %s %s: %s", self.name, key, exc)
            self.queue.done(key)
            failures = self._record_failure(key)
            if self.max_retries and failures > self.max_retries:
                self.logger.error(
                    "Dropping %s %s after %d retries", self.name, key, self.max_retries
                )
                METRICS.dropped_keys_total.labels(controller=self.name).inc()
                self._clear_failures(key)
                self.queue.forget(key)
                return
            METRICS.queue_retries_total.labels(name=self.queue.name).inc()
            self.queue.add_rate_limited(key)
            return
        finally:
            METRICS.reconcile_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )

        METRICS.reconcile_total.labels(controller=self.name, result="success").inc()
        self.logger.info("Event for %s %s processed", self.name, key)
        self.queue.done(key)
        self._clear_failures(key)
        self.queue.forget(key)

    def _record_failure(self, key: str) -> int:
        with self._failures_lock:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            return failures

    def _clear_failures(self, key: str) -> None:
        with self._failures_lock:
            self._failures.pop(key, None)

    def sync(self, namespace: str, name: str) -> None:
        """Reconcile the cached object at ``namespace/name``.

        A missing object was deleted after the event was queued; there is
        nothing left to do, so it counts as success.
        """
        try:
            obj = self.informer.get(namespace, name)
        except NotFoundError:
            return
        obj = copy.deepcopy(obj)
        with self._appctx.with_timeout(self.sync_timeout_seconds) as ctx:
            call_with_context(ctx, self.updater.update, obj)

    def _wait_for_handlers(self, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while True:
            with self._handlers_lock:
                handlers = list(self._handlers)
            if not handlers:
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                self.logger.warning(
                    "%d %s handlers still running after %.1fs drain",
                    len(handlers),
                    self.name,
                    timeout,
                )
                return
            handlers[0].join(timeout=remaining)

    def start(self, ctx: Context) -> None:
        """Run the dispatch loop until *ctx* is cancelled, then shut the queue down."""
        self._appctx = ctx

        loop = threading.Thread(
            target=self._process_events, name=f"{self.name}-dispatcher", daemon=True
        )
        loop.start()

        ctx.wait()

        self.queue.shut_down()
        loop.join()
        if self.drain_seconds > 0:
            self._wait_for_handlers(self.drain_seconds)


class TagController(QueueController):
    """Reconciles ``images.io/v1`` Tags, importing up to ``workers`` in parallel."""

    def __init__(self, informer: Informer, tagsvc: TagUpdater, **kwargs: Any) -> None:
        super().__init__("tag", informer, tagsvc, **kwargs)
