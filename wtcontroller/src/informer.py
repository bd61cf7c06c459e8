from __future__ import annotations

import logging
import math
import random
import threading
import time
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException

from wtcontroller.src.metrics import METRICS
from wtcontroller.src.model import object_labels

AddHandler = Callable[[Any], None]
UpdateHandler = Callable[[Any, Any], None]
DeleteHandler = Callable[[Any], None]


def parse_selector(selector: str) -> dict[str, str]:
    """Parse a Kubernetes equality label selector (``k=v,k2=v2``) into a dict."""
    result: dict[str, str] = {}
    for part in selector.split(","):
        part = part.strip()
        if "=" in part:
            key, value = part.split("=", 1)
            result[key.strip()] = value.strip()
    return result


def format_selector(labels: Mapping[str, str]) -> str:
    return ",".join(f"{key}={value}" for key, value in labels.items())


def matches_labels(labels: Mapping[str, str], selector: Mapping[str, str]) -> bool:
    """Return True if *labels* contain every key-value pair of *selector*."""
    return all(labels.get(k) == v for k, v in selector.items())


def _store_key(obj: Any) -> tuple[str, str] | None:
    metadata = getattr(obj, "metadata", None)
    name = getattr(metadata, "name", None)
    if not name:
        return None
    return getattr(metadata, "namespace", None) or "", name


def _resource_version(obj: Any) -> str | None:
    return getattr(getattr(obj, "metadata", None), "resource_version", None)


class ObjectStore:
    """Thread-safe local copy of watched objects keyed by ``(namespace, name)``.

    Cluster-scoped objects use ``""`` as their namespace.  Listing returns
    objects sorted by key so callers iterate in a stable order.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._items: dict[tuple[str, str], Any] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def get(self, namespace: str, name: str) -> Any | None:
        with self._lock:
            return self._items.get((namespace, name))

    def list(
        self,
        namespace: str | None = None,
        selector: Mapping[str, str] | None = None,
    ) -> list[Any]:
        with self._lock:
            entries = sorted(self._items.items(), key=lambda entry: entry[0])
        return [
            obj
            for (obj_namespace, _), obj in entries
            if (namespace is None or obj_namespace == namespace)
            and (not selector or matches_labels(object_labels(obj), selector))
        ]

    def upsert(self, obj: Any) -> Any | None:
        """Store *obj* and return the copy it replaced, if any."""
        key = _store_key(obj)
        if key is None:
            return None
        with self._lock:
            previous = self._items.get(key)
            self._items[key] = obj
        return previous

    def delete(self, obj: Any) -> Any | None:
        key = _store_key(obj)
        if key is None:
            return None
        with self._lock:
            return self._items.pop(key, None)

    def replace(
        self, objects: Iterable[Any]
    ) -> tuple[list[Any], list[tuple[Any, Any]], list[Any]]:
        """Swap the whole store for *objects*.

        Returns ``(added, updated, deleted)`` where ``updated`` holds
        ``(old, new)`` pairs for objects whose resourceVersion changed.
        """
        fresh: dict[tuple[str, str], Any] = {}
        for obj in objects:
            key = _store_key(obj)
            if key is not None:
                fresh[key] = obj

        with self._lock:
            previous = self._items
            self._items = fresh

        added = [obj for key, obj in fresh.items() if key not in previous]
        updated = [
            (previous[key], obj)
            for key, obj in fresh.items()
            if key in previous and _resource_version(previous[key]) != _resource_version(obj)
        ]
        deleted = [obj for key, obj in previous.items() if key not in fresh]
        return added, updated, deleted


class Informer:
    """List-then-watch cache for one object kind, filtered by a label selector.

    ``run`` performs the initial list (retrying with jittered exponential
    backoff), seeds the store, marks the informer synced and then streams
    watch events from the list's ``resourceVersion``.  Every change is
    applied to the store first and then delivered to the registered
    handlers, so a handler that reads the store sees the new state.

    ``410 Gone`` triggers a re-list whose diff against the store is
    delivered as add/update/delete notifications, which is how deletions
    missed while disconnected are still observed.  When
    ``resync_period_seconds`` is positive every cached object is periodically
    re-delivered as an update so level-triggered consumers converge even
    without changes.

    ``401`` / ``403`` responses are treated as configuration errors (RBAC)
    and stop the informer; ``failed`` is then set and ``has_synced`` stays
    false.
    """

    def __init__(
        self,
        name: str,
        list_fn: Callable[..., Any],
        label_selector: str = "",
        resync_period_seconds: int = 0,
        watch_timeout_seconds: int = 30,
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.list_fn = list_fn
        self.label_selector = label_selector
        self.resync_period_seconds = resync_period_seconds
        self.watch_timeout_seconds = watch_timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

        self.store = ObjectStore()
        self.failed = False
        self._synced = threading.Event()
        self._external_stop = threading.Event()
        self._active_watcher: watch.Watch | None = None
        self._watcher_lock = threading.Lock()
        self._next_resync_at: float | None = None

        self._add_handlers: list[AddHandler] = []
        self._update_handlers: list[UpdateHandler] = []
        self._delete_handlers: list[DeleteHandler] = []

    def add_event_handler(
        self,
        on_add: AddHandler | None = None,
        on_update: UpdateHandler | None = None,
        on_delete: DeleteHandler | None = None,
    ) -> None:
        if on_add is not None:
            self._add_handlers.append(on_add)
        if on_update is not None:
            self._update_handlers.append(on_update)
        if on_delete is not None:
            self._delete_handlers.append(on_delete)

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active_watcher = self._active_watcher
        if active_watcher is not None:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _dispatch(self, handlers: list[Callable[..., None]], *args: Any) -> None:
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                self.logger.exception("Event handler failed in informer %s", self.name)

    def _list(self) -> tuple[list[Any], str | None]:
        result = self.list_fn(label_selector=self.label_selector)
        resource_version = getattr(getattr(result, "metadata", None), "resource_version", None)
        return list(getattr(result, "items", None) or []), resource_version

    def _replace_and_notify(self, objects: list[Any]) -> None:
        added, updated, deleted = self.store.replace(objects)
        for obj in added:
            self._dispatch(self._add_handlers, obj)
        for old, new in updated:
            self._dispatch(self._update_handlers, old, new)
        for obj in deleted:
            self._dispatch(self._delete_handlers, obj)

    def handle_event(self, event_type: str, obj: Any) -> None:
        """Apply one watch event to the store and notify handlers."""
        if event_type in {"ADDED", "MODIFIED"}:
            previous = self.store.upsert(obj)
            if previous is None:
                self._dispatch(self._add_handlers, obj)
            else:
                self._dispatch(self._update_handlers, previous, obj)
        elif event_type == "DELETED":
            previous = self.store.delete(obj)
            self._dispatch(self._delete_handlers, obj if previous is None else previous)

    def _schedule_resync(self, now_monotonic: float) -> None:
        if self.resync_period_seconds > 0:
            self._next_resync_at = now_monotonic + self.resync_period_seconds

    def _maybe_resync(self, now_monotonic: float) -> None:
        if self._next_resync_at is None or now_monotonic < self._next_resync_at:
            return
        cached = self.store.list()
        self.logger.debug("Resyncing %d cached object(s) in informer %s", len(cached), self.name)
        for obj in cached:
            self._dispatch(self._update_handlers, obj, obj)
        METRICS.resyncs_total.labels(controller=self.name).inc()
        self._schedule_resync(now_monotonic)

    def _next_watch_timeout_seconds(self, now_monotonic: float) -> int:
        """Return the watch timeout, shortened so the loop wakes up for the next resync."""
        if self._next_resync_at is None:
            return self.watch_timeout_seconds
        remaining = max(1.0, self._next_resync_at - now_monotonic)
        return min(self.watch_timeout_seconds, max(1, math.ceil(remaining)))

    def _access_denied(self, status: int | None, phase: str) -> bool:
        if status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s for informer %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            self.name,
            status,
        )
        METRICS.watch_errors_total.labels(controller=self.name).inc()
        self.failed = True
        self._synced.clear()
        return True

    def _list_with_backoff(self, stop: threading.Event, phase: str) -> tuple[bool, str | None]:
        """List until it succeeds, backing off with jitter between attempts.

        The store is replaced and the diff dispatched only on success.
        Returns ``(False, None)`` if stopped or access was denied.
        """
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                objects, resource_version = self._list()
            except ApiException as exc:
                if self._access_denied(exc.status, phase):
                    return False, None
                self.logger.exception("%s failed for informer %s", phase.capitalize(), self.name)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
            except Exception:
                self.logger.exception("Unexpected error during %s for informer %s", phase, self.name)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
            else:
                self._replace_and_notify(objects)
                self.logger.info(
                    "Informer %s listed %d object(s) at resourceVersion %s",
                    self.name,
                    len(objects),
                    resource_version,
                )
                return True, resource_version

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return False, None

    def run(self, stop_event: threading.Event | None = None) -> None:
        """List-then-watch until *stop_event* is set or the API denies access."""
        stop = stop_event or threading.Event()
        self._external_stop.clear()
        self.failed = False

        listed, resource_version = self._list_with_backoff(stop, "initial list")
        if not listed or self._should_stop(stop):
            return
        self._schedule_resync(time.monotonic())
        self._synced.set()

        backoff_seconds = 1
        watch_stream_count = 0

        while not self._should_stop(stop):
            self._maybe_resync(time.monotonic())
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watcher = watcher
            try:
                if watch_stream_count > 0:
                    METRICS.watch_reconnects_total.labels(controller=self.name).inc()
                watch_stream_count += 1
                stream = watcher.stream(
                    self.list_fn,
                    label_selector=self.label_selector,
                    resource_version=resource_version,
                    timeout_seconds=self._next_watch_timeout_seconds(time.monotonic()),
                )

                for event in stream:
                    if self._should_stop(stop):
                        break

                    obj = event.get("object")
                    if obj is None:
                        continue

                    latest_version = _resource_version(obj)
                    if latest_version:
                        resource_version = latest_version

                    self.handle_event(str(event.get("type", "")), obj)
                    self._maybe_resync(time.monotonic())

                backoff_seconds = 1
            except ApiException as exc:
                # 410 Gone: our resourceVersion was compacted away.  Re-list
                # and deliver the difference so no deletion is missed.
                if exc.status == 410:
                    self.logger.warning(
                        "Watch resource version expired for informer %s, re-listing", self.name
                    )
                    METRICS.relists_total.labels(controller=self.name).inc()
                    # Watching again is only safe from a fresh list.
                    listed, resource_version = self._list_with_backoff(stop, "re-list after 410")
                    if not listed:
                        return
                    continue

                if self._access_denied(exc.status, "watch"):
                    return

                self.logger.exception("Kubernetes API watch error in informer %s", self.name)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error in informer %s", self.name)
                METRICS.watch_errors_total.labels(controller=self.name).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watcher is watcher:
                        self._active_watcher = None
