from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

from kubernetes.client import ApiException

from dex_clients.src.informer import ResourceInformer, object_key


def make_obj(
    name: str,
    namespace: str = "default",
    resource_version: str = "1",
    with_type: bool = False,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": resource_version,
            "annotations": {},
        }
    }
    if with_type:
        obj["kind"] = "Ingress"
        obj["apiVersion"] = "networking.k8s.io/v1"
    return obj


class FakeResource:
    """Dynamic-client resource stand-in: each ``get`` returns the next listing."""

    def __init__(self, listings: list[Any]) -> None:
        self.listings = list(listings)
        self.list_calls: list[dict[str, Any]] = []

    def get(self, **kwargs: Any) -> Any:
        self.list_calls.append(kwargs)
        listing = self.listings.pop(0) if len(self.listings) > 1 else self.listings[0]
        if isinstance(listing, Exception):
            raise listing
        return SimpleNamespace(to_dict=lambda: listing)


def listing(items: list[dict[str, Any]], resource_version: str = "100") -> dict[str, Any]:
    return {"items": items, "metadata": {"resourceVersion": resource_version}}


class RecordingHandler:
    def __init__(self, fail_on: str | None = None) -> None:
        self.calls: list[tuple[Any, ...]] = []
        self.fail_on = fail_on

    def _maybe_fail(self, name: str) -> None:
        if name == self.fail_on:
            raise RuntimeError(f"handler exploded on {name}")

    def on_add(self, obj: dict[str, Any]) -> None:
        self.calls.append(("add", obj["metadata"]["name"]))
        self._maybe_fail(obj["metadata"]["name"])

    def on_update(self, old: dict[str, Any], new: dict[str, Any]) -> None:
        self.calls.append(
            (
                "update",
                old["metadata"]["name"],
                old["metadata"]["resourceVersion"],
                new["metadata"]["resourceVersion"],
            )
        )

    def on_delete(self, obj: dict[str, Any]) -> None:
        self.calls.append(("delete", obj["metadata"]["name"], obj["metadata"]["resourceVersion"]))


def _make_informer(
    resource: Any = None,
    handler: RecordingHandler | None = None,
    resync_seconds: int = 0,
    clock: Any = None,
    label_selector: str | None = None,
) -> ResourceInformer:
    kwargs: dict[str, Any] = {}
    if clock is not None:
        kwargs["clock"] = clock
    return ResourceInformer(
        resource=resource or FakeResource([listing([])]),
        handler=handler or RecordingHandler(),
        kind="Ingress",
        api_version="networking.k8s.io/v1",
        label_selector=label_selector,
        resync_seconds=resync_seconds,
        **kwargs,
    )


def _stream_then_stop(shutdown_event: threading.Event, batches: list[Any]) -> Any:
    """Build a ``Watch.stream`` side effect yielding each batch, then stopping the loop."""
    seen_kwargs: list[dict[str, Any]] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_kwargs.append(kwargs)
        if batches:
            batch = batches.pop(0)
            if isinstance(batch, Exception):
                raise batch
            return iter(batch)
        shutdown_event.set()
        return iter([])

    patched_stream.seen_kwargs = seen_kwargs  # type: ignore[attr-defined]
    return patched_stream


# ---------------------------------------------------------------------------
# Event dispatch
# ---------------------------------------------------------------------------


def test_object_key_is_namespace_and_name() -> None:
    assert object_key(make_obj("a", namespace="ns")) == "ns/a"
    assert object_key({"metadata": {}}) is None


def test_added_for_unknown_object_dispatches_add() -> None:
    handler = RecordingHandler()
    informer = _make_informer(handler=handler)

    informer.handle_event("ADDED", make_obj("a"))

    assert handler.calls == [("add", "a")]
    assert sorted(informer._cache) == ["default/a"]


def test_modified_dispatches_update_with_cached_old_object() -> None:
    handler = RecordingHandler()
    informer = _make_informer(handler=handler)
    informer.handle_event("ADDED", make_obj("a", resource_version="1"))

    informer.handle_event("MODIFIED", make_obj("a", resource_version="2"))

    assert handler.calls[-1] == ("update", "a", "1", "2")


def test_added_for_known_object_is_treated_as_update() -> None:
    handler = RecordingHandler()
    informer = _make_informer(handler=handler)
    informer.handle_event("ADDED", make_obj("a", resource_version="1"))

    informer.handle_event("ADDED", make_obj("a", resource_version="5"))

    assert handler.calls[-1] == ("update", "a", "1", "5")


def test_modified_for_unknown_object_dispatches_add() -> None:
    handler = RecordingHandler()
    informer = _make_informer(handler=handler)

    informer.handle_event("MODIFIED", make_obj("a"))

    assert handler.calls == [("add", "a")]


def test_deleted_uses_last_cached_state_and_evicts() -> None:
    handler = RecordingHandler()
    informer = _make_informer(handler=handler)
    informer.handle_event("ADDED", make_obj("a", resource_version="1"))

    informer.handle_event("DELETED", make_obj("a", resource_version="9"))

    assert handler.calls[-1] == ("delete", "a", "1")
    assert sorted(informer._cache) == []


def test_deleted_for_unknown_object_still_dispatches_delete() -> None:
    handler = RecordingHandler()
    informer = _make_informer(handler=handler)

    informer.handle_event("DELETED", make_obj("a", resource_version="3"))

    assert handler.calls == [("delete", "a", "3")]


def test_bookmark_and_unnamed_events_are_ignored() -> None:
    handler = RecordingHandler()
    informer = _make_informer(handler=handler)

    informer.handle_event("BOOKMARK", make_obj("a"))
    informer.handle_event("ADDED", {"metadata": {}})
    informer.handle_event("ADDED", "garbage")

    assert handler.calls == []


def test_events_fill_in_kind_and_api_version() -> None:
    received: list[dict[str, Any]] = []
    handler = MagicMock()
    handler.on_add.side_effect = received.append
    informer = _make_informer(handler=handler)

    informer.handle_event("ADDED", make_obj("a"))

    assert received[0]["kind"] == "Ingress"
    assert received[0]["apiVersion"] == "networking.k8s.io/v1"


def test_handler_exception_does_not_stop_dispatch() -> None:
    handler = RecordingHandler(fail_on="a")
    informer = _make_informer(handler=handler)

    informer.handle_event("ADDED", make_obj("a"))
    informer.handle_event("ADDED", make_obj("b"))

    assert handler.calls == [("add", "a"), ("add", "b")]


# ---------------------------------------------------------------------------
# Replace (initial list and 410 re-list) and resync
# ---------------------------------------------------------------------------


def test_replace_diffs_fresh_listing_against_cache() -> None:
    handler = RecordingHandler()
    informer = _make_informer(handler=handler)
    informer.replace(
        [
            make_obj("keep", resource_version="1"),
            make_obj("gone", resource_version="1"),
            make_obj("changed", resource_version="1"),
        ]
    )
    handler.calls.clear()

    informer.replace(
        [
            make_obj("keep", resource_version="1"),
            make_obj("changed", resource_version="2"),
            make_obj("new", resource_version="1"),
        ]
    )

    assert sorted(handler.calls) == sorted(
        [
            ("update", "changed", "1", "2"),
            ("add", "new"),
            ("delete", "gone", "1"),
        ]
    )
    assert sorted(informer._cache) == ["default/changed", "default/keep", "default/new"]


def test_resync_redelivers_add_for_every_cached_object() -> None:
    now = [1000.0]
    handler = RecordingHandler()
    informer = _make_informer(handler=handler, resync_seconds=60, clock=lambda: now[0])
    informer.replace([make_obj("a"), make_obj("b")])
    handler.calls.clear()

    now[0] += 30
    assert informer.resync_if_due() is False
    now[0] += 31
    assert informer.resync_if_due() is True

    assert sorted(handler.calls) == [("add", "a"), ("add", "b")]


def test_resync_disabled_when_period_is_zero() -> None:
    informer = _make_informer(resync_seconds=0)
    informer.replace([make_obj("a")])

    assert informer.resync_if_due() is False


def test_watch_timeout_is_shortened_to_next_resync() -> None:
    now = [0.0]
    informer = _make_informer(resync_seconds=60, clock=lambda: now[0])
    now[0] = 50.0

    assert informer._next_watch_timeout_seconds() == 10


# ---------------------------------------------------------------------------
# run_forever
# ---------------------------------------------------------------------------


def test_run_forever_lists_then_watches_and_tracks_resource_version() -> None:
    handler = RecordingHandler()
    resource = FakeResource([listing([make_obj("a", resource_version="10")], resource_version="100")])
    informer = _make_informer(resource=resource, handler=handler, label_selector="team=x")

    shutdown_event = threading.Event()
    stream = _stream_then_stop(
        shutdown_event,
        [[{"type": "MODIFIED", "object": make_obj("a", resource_version="101", with_type=True)}]],
    )
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = stream

    with patch("dex_clients.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=shutdown_event)

    assert handler.calls == [("add", "a"), ("update", "a", "10", "101")]
    assert resource.list_calls == [{"label_selector": "team=x"}]
    first, second = stream.seen_kwargs
    assert first["resource_version"] == "100"
    assert first["label_selector"] == "team=x"
    assert first["serialize"] is False
    assert second["resource_version"] == "101"
    assert mock_watcher.stop.call_count >= 1
    assert not informer.ready.is_set()


def test_run_forever_sets_ready_after_initial_list() -> None:
    informer = _make_informer()
    shutdown_event = threading.Event()
    observed: list[bool] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        observed.append(informer.ready.is_set())
        shutdown_event.set()
        return iter([])

    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = patched_stream

    with patch("dex_clients.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=shutdown_event)

    assert observed == [True]


def test_run_forever_relists_and_diffs_on_410() -> None:
    handler = RecordingHandler()
    resource = FakeResource(
        [
            listing([make_obj("a"), make_obj("b")], resource_version="100"),
            listing([make_obj("a")], resource_version="200"),
        ]
    )
    informer = _make_informer(resource=resource, handler=handler)

    shutdown_event = threading.Event()
    stream = _stream_then_stop(shutdown_event, [ApiException(status=410, reason="Gone")])
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = stream

    with patch("dex_clients.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=shutdown_event)

    assert handler.calls == [("add", "a"), ("add", "b"), ("delete", "b", "1")]
    assert [kwargs["resource_version"] for kwargs in stream.seen_kwargs] == ["100", "200"]


def test_run_forever_exits_fast_on_initial_list_rbac_denied() -> None:
    resource = FakeResource([ApiException(status=403, reason="Forbidden")])
    informer = _make_informer(resource=resource)

    with patch("dex_clients.src.informer.watch.Watch") as mock_watch:
        informer.run_forever(shutdown_event=threading.Event())

    mock_watch.assert_not_called()
    assert not informer.ready.is_set()


def test_run_forever_exits_fast_on_watch_rbac_denied() -> None:
    informer = _make_informer()
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="Unauthorized")
    with patch("dex_clients.src.informer.watch.Watch", return_value=mock_watcher):
        informer.run_forever(shutdown_event=threading.Event())

    assert mock_watcher.stream.call_count == 1
    assert not informer.ready.is_set()


def test_run_forever_backs_off_on_transient_watch_error() -> None:
    informer = _make_informer()
    shutdown_event = threading.Event()
    stream = _stream_then_stop(shutdown_event, [ApiException(status=500, reason="boom")])
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = stream
    waits: list[float] = []

    def fake_wait(timeout: float | None = None) -> bool:
        waits.append(timeout or 0.0)
        return False

    with (
        patch("dex_clients.src.informer.watch.Watch", return_value=mock_watcher),
        patch("dex_clients.src.informer.random.random", return_value=0.5),
        patch.object(shutdown_event, "wait", side_effect=fake_wait),
    ):
        informer.run_forever(shutdown_event=shutdown_event)

    assert waits == [1.0]
    assert len(stream.seen_kwargs) == 2


def test_run_forever_returns_immediately_when_already_stopped() -> None:
    resource = FakeResource([listing([make_obj("a")])])
    handler = RecordingHandler()
    informer = _make_informer(resource=resource, handler=handler)
    shutdown_event = threading.Event()
    shutdown_event.set()

    informer.run_forever(shutdown_event=shutdown_event)

    assert resource.list_calls == []
    assert handler.calls == []


def test_request_stop_interrupts_active_watcher() -> None:
    informer = _make_informer()
    watcher = MagicMock()
    informer._active_watcher = watcher

    informer.request_stop()

    watcher.stop.assert_called_once()
