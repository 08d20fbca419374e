from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from ingresslb.src.events import (
    Added,
    Deleted,
    DeletedFinalStateUnknown,
    Event,
    ResourceKind,
    Updated,
    object_key,
)
from ingresslb.src.metrics import METRICS

EventHandler = Callable[[ResourceKind, Event], None]


class Store:
    """Thread-safe local cache of one kind of cluster object keyed by ``namespace/name``.

    Written only by its :class:`Informer`; every other component reads it.
    """

    def __init__(self, kind: ResourceKind) -> None:
        self.kind = kind
        self._items: dict[str, Any] = {}
        self._lock = threading.Lock()
        self._synced = threading.Event()

    def list(self) -> list[Any]:
        """Return all cached objects ordered by key."""
        with self._lock:
            return [self._items[key] for key in sorted(self._items)]

    def get_by_key(self, key: str) -> Any | None:
        with self._lock:
            return self._items.get(key)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def mark_synced(self) -> None:
        self._synced.set()

    def upsert(self, obj: Any) -> Any | None:
        """Insert or replace *obj*, returning the previous state if any."""
        key = object_key(obj)
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, obj: Any) -> Any | None:
        key = object_key(obj)
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, objects: list[Any]) -> list[Event]:
        """Swap the cache contents for a fresh listing and return the implied events.

        Objects that disappeared between listings produce a ``Deleted`` event
        carrying a :class:`DeletedFinalStateUnknown` tombstone, because their
        real delete notification was never observed.
        """
        fresh = {object_key(obj): obj for obj in objects}
        events: list[Event] = []
        with self._lock:
            previous = self._items
            self._items = fresh
        for key in sorted(fresh):
            old = previous.get(key)
            if old is None:
                events.append(Added(fresh[key]))
            else:
                events.append(Updated(old, fresh[key]))
        for key in sorted(set(previous) - set(fresh)):
            events.append(Deleted(DeletedFinalStateUnknown(key=key, obj=previous[key])))
        return events


class Informer:
    """Mirror one resource collection into a :class:`Store` and report changes.

    Runs the list-then-watch protocol:

    1. List the collection, retrying with jittered exponential backoff.
    2. Replace the store contents and mark it synced.
    3. Stream watch events from the listing's ``resourceVersion``.
    4. On ``410 Gone`` re-list; vanished objects are reported as tombstones.
    5. Every ``resync_seconds`` replay every cached object as an update so a
       missed notification is eventually corrected.

    ``401`` / ``403`` responses terminate the loop; they indicate RBAC
    misconfiguration rather than a transient condition.
    """

    def __init__(
        self,
        kind: ResourceKind,
        list_fn: Callable[..., Any],
        store: Store,
        handler: EventHandler,
        list_kwargs: dict[str, Any] | None = None,
        resync_seconds: float = 0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.list_fn = list_fn
        self.store = store
        self.handler = handler
        self.list_kwargs = dict(list_kwargs or {})
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, event: Event) -> None:
        try:
            self.handler(self.kind, event)
        except Exception:
            self.logger.exception("%s event handler failed", self.kind.value)

    def _apply_watch_event(self, event_type: str, obj: Any) -> None:
        if event_type == "ADDED" or event_type == "MODIFIED":
            previous = self.store.upsert(obj)
            if previous is None:
                self._dispatch(Added(obj))
            else:
                self._dispatch(Updated(previous, obj))
        elif event_type == "DELETED":
            self.store.delete(obj)
            self._dispatch(Deleted(obj))

    def _list(self) -> tuple[list[Any], str | None]:
        listing = self.list_fn(**self.list_kwargs)
        items = list(getattr(listing, "items", None) or [])
        resource_version = getattr(getattr(listing, "metadata", None), "resource_version", None)
        return items, resource_version

    def _relist(self) -> str | None:
        items, resource_version = self._list()
        for event in self.store.replace(items):
            self._dispatch(event)
        return resource_version

    def _resync(self) -> None:
        for obj in self.store.list():
            self._dispatch(Updated(obj, obj))

    def _next_watch_timeout_seconds(self, next_resync: float | None, now_monotonic: float) -> int:
        if next_resync is None:
            return 30
        remaining = max(1.0, next_resync - now_monotonic)
        return int(min(30, max(1, remaining)))

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        resource_version: str | None = None
        startup_backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                resource_version = self._relist()
                self.store.mark_synced()
                self.logger.info(
                    "%s cache synced at resourceVersion %s", self.kind.value, resource_version
                )
                break
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API access denied listing %s (status=%s). "
                        "Check controller RBAC and service account permissions.",
                        self.kind.value,
                        exc.status,
                    )
                    return
                self.logger.exception("Initial %s list failed", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()

            jittered = startup_backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            startup_backoff_seconds = min(startup_backoff_seconds * 2, 30)

        if self._should_stop(stop):
            return

        next_resync = (
            time.monotonic() + self.resync_seconds if self.resync_seconds > 0 else None
        )
        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            if next_resync is not None and time.monotonic() >= next_resync:
                self._resync()
                next_resync = time.monotonic() + self.resync_seconds

            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=self.kind.value).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(
                        next_resync, time.monotonic()
                    ),
                    **self.list_kwargs,
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    metadata = getattr(obj, "metadata", None)
                    if metadata is not None and getattr(metadata, "resource_version", None):
                        resource_version = metadata.resource_version
                    self._apply_watch_event(str(event.get("type", "")), obj)
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "%s watch resource version expired, re-listing", self.kind.value
                    )
                    try:
                        resource_version = self._relist()
                    except ApiException as relist_exc:
                        if relist_exc.status in {401, 403}:
                            self.logger.error(
                                "Kubernetes API access denied re-listing %s (status=%s).",
                                self.kind.value,
                                relist_exc.status,
                            )
                            return
                        self.logger.exception("Failed to re-list %s after 410", self.kind.value)
                        METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                        resource_version = None
                    continue

                if exc.status in {401, 403}:
                    self.logger.error(
                        "Kubernetes API watch on %s denied (status=%s).",
                        self.kind.value,
                        exc.status,
                    )
                    METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                    return

                self.logger.exception("Kubernetes API watch error on %s", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", self.kind.value)
                METRICS.watch_errors_total.labels(kind=self.kind.value).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
