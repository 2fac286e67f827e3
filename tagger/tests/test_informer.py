from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException

from tagger.src.context import Context
from tagger.src.informer import (
    Informer,
    NotFoundError,
    meta_namespace_key,
    split_meta_namespace_key,
    wait_for_cache_sync,
)


def make_tag(name: str, namespace: str = "default", resource_version: str = "1") -> dict[str, Any]:
    return {
        "apiVersion": "images.io/v1",
        "kind": "Tag",
        "metadata": {"name": name, "namespace": namespace, "resourceVersion": resource_version},
        "spec": {"from": f"docker.io/acme/{name}:latest", "generation": 0},
    }


class RecordingHandler:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    def on_add(self, obj: Any) -> None:
        self.events.append(("add", meta_namespace_key(obj)))

    def on_update(self, old: Any, new: Any) -> None:
        self.events.append(("update", meta_namespace_key(new)))

    def on_delete(self, obj: Any) -> None:
        self.events.append(("delete", meta_namespace_key(obj)))


class FakeLister:
    def __init__(self, *listings: dict[str, Any]) -> None:
        self.listings = list(listings)
        self.calls: list[dict[str, Any]] = []

    def __call__(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(kwargs)
        if len(self.listings) > 1:
            return self.listings.pop(0)
        return self.listings[0]


class FakeWatch:
    """Replays scripted streams, then blocks until stopped like an idle watch."""

    scripts: list[list[dict[str, Any]]] = []
    stream_kwargs: list[dict[str, Any]] = []

    def __init__(self) -> None:
        self._stopped = threading.Event()

    def stream(self, fn: Any, **kwargs: Any) -> Any:
        FakeWatch.stream_kwargs.append(kwargs)
        if FakeWatch.scripts:
            yield from FakeWatch.scripts.pop(0)
            return
        self._stopped.wait(timeout=5)

    def stop(self) -> None:
        self._stopped.set()


@pytest.fixture(autouse=True)
def _reset_fake_watch() -> None:
    FakeWatch.scripts = []
    FakeWatch.stream_kwargs = []


def _wait_until(predicate: Any, timeout: float = 3) -> bool:
    done = threading.Event()
    for _ in range(int(timeout / 0.02)):
        if predicate():
            return True
        done.wait(0.02)
    return predicate()


# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def test_meta_namespace_key_for_dict_and_model_objects() -> None:
    model = SimpleNamespace(metadata=SimpleNamespace(name="web", namespace="prod"))

    assert meta_namespace_key(make_tag("app", "acme")) == "acme/app"
    assert meta_namespace_key(model) == "prod/web"
    assert meta_namespace_key({"metadata": {"name": "cluster-wide"}}) == "cluster-wide"


def test_meta_namespace_key_requires_a_name() -> None:
    with pytest.raises(ValueError):
        meta_namespace_key({"metadata": {"namespace": "acme"}})


@pytest.mark.parametrize(
    ("key", "expected"),
    [("acme/app", ("acme", "app")), ("app", ("", "app"))],
)
def test_split_meta_namespace_key(key: str, expected: tuple[str, str]) -> None:
    assert split_meta_namespace_key(key) == expected


@pytest.mark.parametrize("key", ["", "a/b/c", "acme/", "/"])
def test_split_meta_namespace_key_rejects_malformed_keys(key: str) -> None:
    with pytest.raises(ValueError):
        split_meta_namespace_key(key)


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def test_replace_notifies_handlers_of_differences() -> None:
    informer = Informer(FakeLister({"items": []}), name="tags")
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    informer.replace([make_tag("a"), make_tag("b")])
    informer.replace([make_tag("a", resource_version="2"), make_tag("c")])

    assert handler.events == [
        ("add", "default/a"),
        ("add", "default/b"),
        ("update", "default/a"),
        ("add", "default/c"),
        ("delete", "default/b"),
    ]
    assert informer.has_synced()


def test_get_and_list_read_from_the_store() -> None:
    informer = Informer(FakeLister({"items": []}), name="tags")
    informer.replace([make_tag("a", "acme")])

    assert informer.get("acme", "a")["metadata"]["name"] == "a"
    assert len(informer.list()) == 1
    with pytest.raises(NotFoundError):
        informer.get("acme", "missing")


def test_handle_event_applies_watch_events() -> None:
    informer = Informer(FakeLister({"items": []}), name="tags")
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    informer.handle_event("ADDED", make_tag("a"))
    informer.handle_event("MODIFIED", make_tag("a", resource_version="2"))
    informer.handle_event("DELETED", make_tag("a", resource_version="3"))

    assert handler.events == [("add", "default/a"), ("update", "default/a"), ("delete", "default/a")]
    with pytest.raises(NotFoundError):
        informer.get("default", "a")


def test_failing_handler_does_not_block_others() -> None:
    informer = Informer(FakeLister({"items": []}), name="tags")
    broken = SimpleNamespace(on_add=lambda obj: 1 / 0)
    handler = RecordingHandler()
    informer.add_event_handler(broken)  # type: ignore[arg-type]
    informer.add_event_handler(handler)

    informer.handle_event("ADDED", make_tag("a"))

    assert handler.events == [("add", "default/a")]


def test_resync_redelivers_every_cached_object() -> None:
    informer = Informer(FakeLister({"items": []}), name="tags")
    informer.replace([make_tag("a"), make_tag("b")])
    handler = RecordingHandler()
    informer.add_event_handler(handler)

    informer.resync()

    assert sorted(handler.events) == [("update", "default/a"), ("update", "default/b")]


# ---------------------------------------------------------------------------
# List and watch loop
# ---------------------------------------------------------------------------


def test_run_lists_then_watches_from_resource_version() -> None:
    lister = FakeLister({"metadata": {"resourceVersion": "10"}, "items": [make_tag("a")]})
    FakeWatch.scripts = [[{"type": "ADDED", "object": make_tag("b", resource_version="11")}]]
    informer = Informer(
        lister, name="tags", watch_factory=FakeWatch, group="images.io", plural="tags"
    )
    ctx = Context.background()
    thread = threading.Thread(target=informer.run, args=(ctx,), daemon=True)
    thread.start()

    assert _wait_until(lambda: len(informer.list()) == 2)
    ctx.cancel()
    thread.join(timeout=3)

    assert not thread.is_alive()
    assert lister.calls[0] == {"group": "images.io", "plural": "tags"}
    assert FakeWatch.stream_kwargs[0]["resource_version"] == "10"
    assert FakeWatch.stream_kwargs[1]["resource_version"] == "11"


def test_run_relists_after_expired_resource_version() -> None:
    lister = FakeLister(
        {"metadata": {"resourceVersion": "10"}, "items": [make_tag("a")]},
        {"metadata": {"resourceVersion": "20"}, "items": [make_tag("b")]},
    )
    FakeWatch.scripts = [[{"type": "ERROR", "raw_object": {"code": 410}}]]
    informer = Informer(lister, name="tags", watch_factory=FakeWatch)
    ctx = Context.background()
    thread = threading.Thread(target=informer.run, args=(ctx,), daemon=True)
    thread.start()

    assert _wait_until(lambda: len(lister.calls) >= 2)
    assert _wait_until(lambda: [t["metadata"]["name"] for t in informer.list()] == ["b"])
    ctx.cancel()
    thread.join(timeout=3)


def test_run_retries_failed_list() -> None:
    calls: list[int] = []

    def flaky_list(**kwargs: Any) -> dict[str, Any]:
        calls.append(1)
        if len(calls) == 1:
            raise ApiException(status=500, reason="boom")
        return {"metadata": {"resourceVersion": "1"}, "items": []}

    informer = Informer(flaky_list, name="tags", watch_factory=FakeWatch)
    ctx = Context.background()
    thread = threading.Thread(target=informer.run, args=(ctx,), daemon=True)
    thread.start()

    assert _wait_until(informer.has_synced, timeout=5)
    ctx.cancel()
    thread.join(timeout=3)
    assert len(calls) == 2


# ---------------------------------------------------------------------------
# Cache sync barrier
# ---------------------------------------------------------------------------


def test_wait_for_cache_sync_returns_true_once_synced() -> None:
    informer = Informer(FakeLister({"items": []}), name="tags")
    threading.Timer(0.1, informer.replace, args=([],)).start()

    assert wait_for_cache_sync(Context.background(), 3, informer)


def test_wait_for_cache_sync_times_out() -> None:
    informer = Informer(FakeLister({"items": []}), name="tags")

    assert not wait_for_cache_sync(Context.background(), 0.2, informer)


def test_wait_for_cache_sync_stops_on_cancel() -> None:
    informer = Informer(FakeLister({"items": []}), name="tags")
    ctx = Context.background()
    ctx.cancel()

    assert not wait_for_cache_sync(ctx, 30, informer)
