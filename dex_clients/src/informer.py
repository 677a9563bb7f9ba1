from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable
from typing import Any, Protocol

from kubernetes import watch
from kubernetes.client import ApiException

from dex_clients.src.metrics import METRICS

WATCH_TIMEOUT_SECONDS = 300


class EventHandler(Protocol):
    def on_add(self, obj: Any) -> Any: ...

    def on_update(self, old: Any, new: Any) -> Any: ...

    def on_delete(self, obj: Any) -> Any: ...


def object_key(obj: dict[str, Any]) -> str | None:
    """Return the ``namespace/name`` cache key for a raw object, or ``None`` if unnamed."""
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict) or not metadata.get("name"):
        return None
    return f"{metadata.get('namespace') or ''}/{metadata['name']}"


def _resource_version(obj: dict[str, Any]) -> str | None:
    metadata = obj.get("metadata")
    if not isinstance(metadata, dict):
        return None
    return metadata.get("resourceVersion")


class ResourceInformer:
    """List-then-watch loop for one (kind, apiVersion) in all namespaces.

    Objects are raw dicts from the dynamic client. A local cache keyed by
    ``namespace/name`` lets the informer hand the previous object to
    ``on_update`` and the last known state to ``on_delete``:

    * ``ADDED`` for an unknown key -> ``on_add``
    * ``ADDED``/``MODIFIED`` for a known key -> ``on_update(cached, new)``
    * ``DELETED`` -> ``on_delete(cached or new)``

    Every ``resync_seconds`` ``on_add`` is re-delivered for each cached
    object; this is the only recovery path for events whose registry call
    failed. A ``410 Gone`` re-lists and diffs the fresh snapshot against the
    cache. ``401``/``403`` end the loop. Other errors back off exponentially
    with jitter, capped at 30 s.
    """

    def __init__(
        self,
        resource: Any,
        handler: EventHandler,
        kind: str,
        api_version: str,
        label_selector: str | None = None,
        resync_seconds: int = 1800,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.resource = resource
        self.handler = handler
        self.kind = kind
        self.api_version = api_version
        self.label_selector = label_selector
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.clock = clock

        self._cache: dict[str, dict[str, Any]] = {}
        self._last_resync = clock()
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    @property
    def name(self) -> str:
        return f"{self.kind} {self.api_version}"

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _normalize(self, obj: Any) -> dict[str, Any] | None:
        # List responses omit kind/apiVersion on items.
        if not isinstance(obj, dict):
            return None
        normalized = dict(obj)
        normalized.setdefault("kind", self.kind)
        normalized.setdefault("apiVersion", self.api_version)
        return normalized

    def _dispatch(self, event: str, callback: Callable[..., Any], *objs: Any) -> None:
        METRICS.events_total.labels(
            kind=self.kind, api_version=self.api_version, event=event
        ).inc()
        try:
            callback(*objs)
        except Exception:
            self.logger.exception("Handler failed for %s event on %s", event, self.name)

    def _list(self) -> tuple[list[dict[str, Any]], str | None]:
        listing = self.resource.get(label_selector=self.label_selector)
        payload = listing.to_dict() if hasattr(listing, "to_dict") else listing
        items = [
            normalized
            for normalized in (self._normalize(item) for item in payload.get("items") or [])
            if normalized is not None
        ]
        metadata = payload.get("metadata") or {}
        return items, metadata.get("resourceVersion")

    def replace(self, items: list[dict[str, Any]]) -> None:
        """Swap the cache for a fresh listing, emitting add/update/delete for the differences."""
        fresh: dict[str, dict[str, Any]] = {}
        for item in items:
            key = object_key(item)
            if key is None:
                self.logger.warning("Skipping unnamed %s in listing", self.name)
                continue
            fresh[key] = item

        previous_cache = self._cache
        self._cache = fresh
        for key, item in fresh.items():
            previous = previous_cache.get(key)
            if previous is None:
                self._dispatch("ADDED", self.handler.on_add, item)
            elif _resource_version(previous) != _resource_version(item):
                self._dispatch("MODIFIED", self.handler.on_update, previous, item)
        for key, stale in previous_cache.items():
            if key not in fresh:
                self._dispatch("DELETED", self.handler.on_delete, stale)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the cache and dispatch the matching callback."""
        normalized = self._normalize(obj)
        if normalized is None:
            self.logger.error("Ignoring %s event on %s with non-object payload", event_type, self.name)
            return
        key = object_key(normalized)
        if key is None:
            self.logger.warning("Ignoring %s event on %s without metadata.name", event_type, self.name)
            return

        if event_type in {"ADDED", "MODIFIED"}:
            previous = self._cache.get(key)
            self._cache[key] = normalized
            if previous is None:
                self._dispatch(event_type, self.handler.on_add, normalized)
            else:
                self._dispatch(event_type, self.handler.on_update, previous, normalized)
        elif event_type == "DELETED":
            previous = self._cache.pop(key, None)
            self._dispatch(event_type, self.handler.on_delete, previous or normalized)

    def resync_if_due(self) -> bool:
        """Re-deliver ``on_add`` for every cached object once the resync period has elapsed."""
        if self.resync_seconds <= 0:
            return False
        now = self.clock()
        if now - self._last_resync < self.resync_seconds:
            return False
        self._last_resync = now
        self.logger.debug("Resyncing %d cached %s object(s)", len(self._cache), self.name)
        for obj in list(self._cache.values()):
            self._dispatch("RESYNC", self.handler.on_add, obj)
        return True

    def _next_watch_timeout_seconds(self) -> int:
        """Return the watch timeout, shortened so the stream wakes up in time for the next resync."""
        if self.resync_seconds <= 0:
            return WATCH_TIMEOUT_SECONDS
        remaining = self._last_resync + self.resync_seconds - self.clock()
        return min(WATCH_TIMEOUT_SECONDS, max(1, math.ceil(remaining)))

    def _access_denied(self, status: int | None, phase: str) -> bool:
        if status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            self.name,
            status,
        )
        self.ready.clear()
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """List, then watch from the listing's ``resourceVersion`` until shutdown."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                items, resource_version = self._list()
                self.replace(items)
                self._last_resync = self.clock()
                self.ready.set()
                self.logger.info(
                    "Listed %d %s object(s); watching from resourceVersion %s",
                    len(items),
                    self.name,
                    resource_version,
                )
                break
            except ApiException as exc:
                if self._access_denied(exc.status, "initial list"):
                    return
                self.logger.exception("Initial list of %s failed", self.name)
                METRICS.watch_errors_total.labels(kind=self.kind, api_version=self.api_version).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial list of %s", self.name)
                METRICS.watch_errors_total.labels(kind=self.kind, api_version=self.api_version).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            self.ready.clear()
            return

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self.resync_if_due()
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(
                        kind=self.kind, api_version=self.api_version
                    ).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.resource.get,
                    label_selector=self.label_selector,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(),
                    serialize=False,
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if not isinstance(obj, dict):
                        continue

                    observed_version = _resource_version(obj)
                    if observed_version:
                        resource_version = observed_version

                    self.handle_event(str(event.get("type", "")), obj)
                    self.resync_if_due()

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away; re-list and diff.
                if exc.status == 410:
                    self.logger.warning("Watch of %s expired, re-listing", self.name)
                    try:
                        items, resource_version = self._list()
                        self.replace(items)
                    except ApiException as relist_exc:
                        if self._access_denied(relist_exc.status, "410 re-list"):
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.name)
                        METRICS.watch_errors_total.labels(
                            kind=self.kind, api_version=self.api_version
                        ).inc()
                        resource_version = None
                    continue

                if self._access_denied(exc.status, "watch"):
                    METRICS.watch_errors_total.labels(kind=self.kind, api_version=self.api_version).inc()
                    return

                self.logger.exception("Kubernetes API watch error on %s", self.name)
                METRICS.watch_errors_total.labels(kind=self.kind, api_version=self.api_version).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.name)
                METRICS.watch_errors_total.labels(kind=self.kind, api_version=self.api_version).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None

        self.ready.clear()
