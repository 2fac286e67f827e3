from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable, Iterable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from tagger.src.context import Context
from tagger.src.metrics import METRICS


class NotFoundError(LookupError):
    """Raised by :meth:`Informer.get` when the key is not in the local cache."""


class ResourceEventHandler(Protocol):
    def on_add(self, obj: Any) -> None: ...

    def on_update(self, old: Any, new: Any) -> None: ...

    def on_delete(self, obj: Any) -> None: ...


def _field(obj: Any, name: str) -> Any:
    """Read a field from either a plain dict or a kubernetes client model."""
    if obj is None:
        return None
    if isinstance(obj, dict):
        if name in obj:
            return obj[name]
        camel = "".join(
            part if i == 0 else part.capitalize() for i, part in enumerate(name.split("_"))
        )
        return obj.get(camel)
    return getattr(obj, name, None)


def meta_namespace_key(obj: Any) -> str:
    """Return ``namespace/name`` for namespaced objects and ``name`` otherwise."""
    metadata = _field(obj, "metadata")
    name = _field(metadata, "name")
    if not name:
        raise ValueError("object has no metadata.name")
    namespace = _field(metadata, "namespace")
    if namespace:
        return f"{namespace}/{name}"
    return str(name)


def split_meta_namespace_key(key: str) -> tuple[str, str]:
    """Split a cache key into ``(namespace, name)``; namespace is empty for cluster scope."""
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


def resource_version_of(obj: Any) -> str | None:
    return _field(_field(obj, "metadata"), "resource_version")


class Informer:
    """List-then-watch mirror of one resource collection.

    ``list_fn`` is a kubernetes client list call (for example
    ``CustomObjectsApi.list_namespaced_custom_object``) and ``list_kwargs``
    its keyword arguments.  The same callable drives the watch stream, as
    ``kubernetes.watch.Watch.stream`` expects.

    The store maps cache keys to the last object seen.  Objects handed out by
    :meth:`get` and :meth:`list` are the cache's own instances and must be
    treated as read-only; consumers copy before mutating.

    Each watch stream is opened with ``timeout_seconds=resync_seconds``.
    When a stream ends without error every cached object is delivered to the
    handlers again as an update, so work lost to transient failures is
    eventually picked up even without new API events.
    """

    def __init__(
        self,
        list_fn: Callable[..., Any],
        *,
        name: str,
        resync_seconds: int = 60,
        watch_factory: Callable[[], Any] = watch.Watch,
        logger: logging.Logger | None = None,
        **list_kwargs: Any,
    ) -> None:
        self.list_fn = list_fn
        self.name = name
        self.resync_seconds = resync_seconds
        self.list_kwargs = list_kwargs
        self.logger = logger or logging.getLogger(__name__)
        self._watch_factory = watch_factory
        self._store: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._handlers: list[ResourceEventHandler] = []
        self._synced = threading.Event()
        self._active_watcher: Any = None
        self._watcher_lock = threading.Lock()
        METRICS.informer_synced.labels(informer=name).set(0)

    def add_event_handler(self, handler: ResourceEventHandler) -> None:
        self._handlers.append(handler)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def get(self, namespace: str, name: str) -> Any:
        key = f"{namespace}/{name}" if namespace else name
        with self._lock:
            try:
                return self._store[key]
            except KeyError:
                raise NotFoundError(f"{self.name} {key} not found") from None

    def list(self) -> list[Any]:
        with self._lock:
            return list(self._store.values())

    def replace(self, items: Iterable[Any]) -> None:
        """Swap the store for a fresh listing and notify handlers of the difference."""
        fresh: dict[str, Any] = {}
        for obj in items:
            try:
                fresh[meta_namespace_key(obj)] = obj
            except ValueError:
                self.logger.warning("Skipping %s list item without a name", self.name)

        with self._lock:
            previous = self._store
            self._store = fresh

        for key, obj in fresh.items():
            old = previous.get(key)
            if old is None:
                self._dispatch("on_add", obj)
            elif resource_version_of(old) != resource_version_of(obj):
                self._dispatch("on_update", old, obj)
        for key, old in previous.items():
            if key not in fresh:
                self._dispatch("on_delete", old)

        self._synced.set()
        METRICS.informer_synced.labels(informer=self.name).set(1)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply a single ``ADDED``/``MODIFIED``/``DELETED`` watch event."""
        key = meta_namespace_key(obj)
        METRICS.informer_events_total.labels(informer=self.name, type=event_type).inc()
        if event_type in {"ADDED", "MODIFIED"}:
            with self._lock:
                old = self._store.get(key)
                self._store[key] = obj
            if old is None:
                self._dispatch("on_add", obj)
            else:
                self._dispatch("on_update", old, obj)
        elif event_type == "DELETED":
            with self._lock:
                self._store.pop(key, None)
            self._dispatch("on_delete", obj)

    def resync(self) -> None:
        for obj in self.list():
            self._dispatch("on_update", obj, obj)

    def _dispatch(self, method: str, *args: Any) -> None:
        for handler in self._handlers:
            try:
                getattr(handler, method)(*args)
            except Exception:
                self.logger.exception("%s event handler %s failed", self.name, method)

    def _list(self) -> str | None:
        listing = self.list_fn(**self.list_kwargs)
        items = _field(listing, "items") or []
        self.replace(items)
        return _field(_field(listing, "metadata"), "resource_version")

    def _stop_watcher_on_cancel(self, ctx: Context) -> None:
        ctx.wait()
        with self._watcher_lock:
            watcher = self._active_watcher
        if watcher is not None:
            watcher.stop()

    def run(self, ctx: Context) -> None:
        """List then watch until *ctx* is cancelled.

        1. List the collection and replace the store; the informer reports
           synced after the first successful list.
        2. Watch from the list's ``resourceVersion``.  A ``410 Gone`` (as an
           exception or an ``ERROR`` event) means etcd compacted past our
           version, so the next iteration re-lists.
        3. Other errors back off exponentially with jitter, capped at 30 s.
        """
        threading.Thread(
            target=self._stop_watcher_on_cancel,
            args=(ctx,),
            name=f"{self.name}-informer-stop",
            daemon=True,
        ).start()

        resource_version: str | None = None
        backoff_seconds = 1
        while not ctx.done():
            watcher = None
            try:
                if resource_version is None:
                    resource_version = self._list() or ""
                    self.logger.info(
                        "%s cache listed %d objects at resourceVersion %s",
                        self.name,
                        len(self.list()),
                        resource_version,
                    )

                watcher = self._watch_factory()
                with self._watcher_lock:
                    self._active_watcher = watcher
                if ctx.done():
                    break

                expired = False
                stream_started = time.monotonic()
                for event in watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self.resync_seconds,
                    **self.list_kwargs,
                ):
                    if ctx.done():
                        break
                    event_type = str(event.get("type", ""))
                    if event_type == "ERROR":
                        raw = event.get("raw_object") or event.get("object") or {}
                        if _field(raw, "code") == 410:
                            self.logger.warning(
                                "%s watch resource version expired, re-listing", self.name
                            )
                            expired = True
                            break
                        self.logger.error("%s watch returned error event: %s", self.name, raw)
                        METRICS.informer_watch_errors_total.labels(informer=self.name).inc()
                        continue

                    obj = event.get("object")
                    if obj is None:
                        continue
                    version = resource_version_of(obj)
                    if version:
                        resource_version = version
                    self.handle_event(event_type, obj)

                if expired:
                    resource_version = None
                    continue
                if not ctx.done() and time.monotonic() - stream_started >= self.resync_seconds:
                    self.resync()
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", self.name)
                    resource_version = None
                    continue
                self.logger.exception("%s list/watch failed (status=%s)", self.name, exc.status)
                METRICS.informer_watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                ctx.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected %s list/watch error", self.name)
                METRICS.informer_watch_errors_total.labels(informer=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                ctx.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                if watcher is not None:
                    watcher.stop()
                    with self._watcher_lock:
                        if self._active_watcher is watcher:
                            self._active_watcher = None

        self.logger.info("%s informer stopped", self.name)


def wait_for_cache_sync(ctx: Context, timeout: float, *informers: Any) -> bool:
    """Poll every 100ms until all informers report synced.

    Returns False when *timeout* elapses or *ctx* is cancelled first.
    """
    deadline = time.monotonic() + timeout
    while True:
        if all(informer.has_synced() for informer in informers):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        if ctx.wait(timeout=min(0.1, remaining)):
            return False
