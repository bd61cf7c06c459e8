from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

from kubernetes.client import ApiException

from wtcontroller.src.informer import Informer
from wtcontroller.src.metrics import METRICS
from wtcontroller.src.model import (
    MalformedInputError,
    Notification,
    ObjectKey,
    SyncResult,
    TransientSyncError,
    WatchedKind,
    object_key,
    object_labels,
)
from wtcontroller.src.workqueue import RateLimitingQueue

SyncFn = Callable[[Notification], SyncResult]


class ControllerState(str, Enum):
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class Controller:
    """Generic level-triggered reconciliation loop for one watched kind.

    Informer notifications are reduced to an :class:`ObjectKey` and put on a
    deduplicating :class:`RateLimitingQueue`.  A single worker thread pulls
    keys, resolves each against the informer's store and calls ``sync_fn``.
    Because there is exactly one worker, sync calls for one controller never
    overlap.

    Resolution: a key still present in the store is delivered as a live
    object.  A missing key is delivered as a deletion carrying the last copy
    seen by the delete handler, so sync functions can still read labels of
    an object that is already gone.  That copy is kept until the key syncs
    successfully or the object is re-added.

    When any of ``regroup_labels`` changes on an update, the previous copy is
    also kept and synced first as a deletion, so derived state keyed by the
    old label values is recomputed without this object.

    Outcomes:
        * success -- ``forget`` the key;
        * :class:`MalformedInputError` -- log and drop, never retried;
        * anything else (:class:`TransientSyncError`, ``ApiException``,
          unexpected errors) -- log and re-add with per-item backoff.  The
          worker keeps going, so one failing object never blocks the rest.

    Lifecycle: ``INITIALIZING`` until the informer reports synced,
    ``RUNNING`` while the worker drains the queue, ``DRAINING`` once a stop
    is requested (queue closed, in-flight sync completes) and finally
    ``STOPPED``.  The controller only stops on its own if the informer dies
    (e.g. RBAC denied), which leaves it never ready.
    """

    def __init__(
        self,
        name: str,
        kind: WatchedKind,
        informer: Informer,
        sync_fn: SyncFn,
        queue: RateLimitingQueue | None = None,
        poll_interval_seconds: float = 1.0,
        regroup_labels: tuple[str, ...] = (),
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self.kind = kind
        self.informer = informer
        self.sync_fn = sync_fn
        self.queue = queue or RateLimitingQueue(name)
        self.poll_interval_seconds = poll_interval_seconds
        self.regroup_labels = regroup_labels
        self.logger = logger or logging.getLogger(__name__)

        self.state = ControllerState.INITIALIZING
        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._last_known: dict[ObjectKey, Any] = {}
        # Copies from before a regroup_labels change, oldest first.
        self._superseded: dict[ObjectKey, list[Any]] = {}
        self._last_known_lock = threading.Lock()

        informer.add_event_handler(
            on_add=self._on_add,
            on_update=self._on_update,
            on_delete=self._on_delete,
        )

    def _key_for(self, obj: Any) -> ObjectKey | None:
        try:
            return object_key(self.kind, obj)
        except MalformedInputError:
            self.logger.warning("Dropping %s notification without a name", self.kind.value)
            return None

    def _on_add(self, obj: Any) -> None:
        key = self._key_for(obj)
        if key is None:
            return
        with self._last_known_lock:
            self._last_known.pop(key, None)
        self.queue.add(key)

    def _group_of(self, obj: Any) -> tuple[str | None, ...]:
        labels = object_labels(obj)
        return tuple(labels.get(label) for label in self.regroup_labels)

    def _on_update(self, old: Any, new: Any) -> None:
        key = self._key_for(new)
        if key is None:
            return
        if self.regroup_labels and self._group_of(old) != self._group_of(new):
            with self._last_known_lock:
                previous = self._superseded.setdefault(key, [])
                if not previous or self._group_of(previous[-1]) != self._group_of(old):
                    previous.append(old)
        self.queue.add(key)

    def _on_delete(self, obj: Any) -> None:
        key = self._key_for(obj)
        if key is None:
            return
        with self._last_known_lock:
            self._last_known[key] = obj
        self.queue.add(key)

    def resolve(self, key: ObjectKey) -> Notification:
        obj = self.informer.store.get(key.namespace, key.name)
        if obj is not None:
            return Notification(key=key, obj=obj)
        with self._last_known_lock:
            final_state = self._last_known.get(key)
        return Notification(key=key, obj=final_state, deleted=True)

    def _release_last_known(self, notification: Notification, superseded: list[Any]) -> None:
        with self._last_known_lock:
            if superseded:
                remaining = [
                    obj
                    for obj in self._superseded.get(notification.key, [])
                    if not any(obj is done for done in superseded)
                ]
                if remaining:
                    self._superseded[notification.key] = remaining
                else:
                    self._superseded.pop(notification.key, None)
            if notification.deleted and self._last_known.get(notification.key) is notification.obj:
                self._last_known.pop(notification.key, None)

    def _sync_superseded(self, key: ObjectKey, superseded: list[Any]) -> SyncResult:
        """Sync each pre-change copy of *key* as a deletion of its old grouping."""
        created: list[str] = []
        updated: list[str] = []
        deleted: list[str] = []
        for old in superseded:
            try:
                result = self.sync_fn(Notification(key=key, obj=old, deleted=True))
            except MalformedInputError as exc:
                self.logger.debug("Skipping previous state of %s: %s", key, exc)
                continue
            created.extend(result.created)
            updated.extend(result.updated)
            deleted.extend(result.deleted)
        return SyncResult(
            key=key, created=tuple(created), updated=tuple(updated), deleted=tuple(deleted)
        )

    def process_next_item(self) -> bool:
        """Pull and sync one key.  Returns False once the queue is shut down."""
        item, shutting_down = self.queue.get()
        if shutting_down:
            return False
        if item is None:
            return True

        try:
            self._process(item)  # type: ignore[arg-type]
        finally:
            self.queue.done(item)
        return True

    def _process(self, key: ObjectKey) -> None:
        started = time.monotonic()
        notification = self.resolve(key)
        with self._last_known_lock:
            superseded = list(self._superseded.get(key, ()))
        try:
            regrouped = self._sync_superseded(key, superseded)
            result = self.sync_fn(notification)
            if regrouped.mutated:
                result = SyncResult(
                    key=key,
                    created=regrouped.created + result.created,
                    updated=regrouped.updated + result.updated,
                    deleted=regrouped.deleted + result.deleted,
                )
        except MalformedInputError as exc:
            self.logger.warning("Dropping %s: %s", key, exc)
            self.queue.forget(key)
            self._release_last_known(notification, superseded)
            METRICS.syncs_total.labels(controller=self.name, result="dropped").inc()
        except (TransientSyncError, ApiException) as exc:
            delay = self.queue.add_rate_limited(key)
            self.logger.warning(
                "Sync of %s failed (%s); retry %d in %.1fs",
                key,
                exc,
                self.queue.num_requeues(key),
                delay,
            )
            METRICS.syncs_total.labels(controller=self.name, result="retry").inc()
        except Exception:
            delay = self.queue.add_rate_limited(key)
            self.logger.exception("Unexpected error syncing %s; retrying in %.1fs", key, delay)
            METRICS.syncs_total.labels(controller=self.name, result="retry").inc()
        else:
            self.queue.forget(key)
            self._release_last_known(notification, superseded)
            METRICS.syncs_total.labels(controller=self.name, result="success").inc()
            if result.mutated:
                self.logger.info(
                    "Synced %s (created=%s updated=%s deleted=%s)",
                    key,
                    list(result.created),
                    list(result.updated),
                    list(result.deleted),
                )
            else:
                self.logger.debug("Synced %s; already converged", key)
        finally:
            METRICS.sync_duration_seconds.labels(controller=self.name).observe(
                time.monotonic() - started
            )

    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def request_stop(self) -> None:
        self._external_stop.set()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _wait_for_cache_sync(
        self, stop_event: threading.Event, informer_thread: threading.Thread
    ) -> bool:
        while not self._should_stop(stop_event):
            if self.informer.has_synced():
                return True
            if self.informer.failed or not informer_thread.is_alive():
                return False
            stop_event.wait(timeout=self.poll_interval_seconds)
        return False

    def run(self, shutdown_event: threading.Event | None = None) -> None:
        """Run the informer and the single worker until shutdown."""
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.state = ControllerState.INITIALIZING

        informer_stop = threading.Event()
        informer_thread = threading.Thread(
            target=self.informer.run,
            args=(informer_stop,),
            name=f"{self.name}-informer",
            daemon=True,
        )
        informer_thread.start()
        self.logger.info("Starting %s controller; waiting for cache sync", self.name)

        worker: threading.Thread | None = None
        if self._wait_for_cache_sync(stop, informer_thread):
            self.state = ControllerState.RUNNING
            self.ready.set()
            METRICS.controller_running.labels(controller=self.name).set(1)
            worker = threading.Thread(target=self._worker, name=f"{self.name}-worker", daemon=True)
            worker.start()
            self.logger.info("%s controller running", self.name)

            while not self._should_stop(stop):
                if not informer_thread.is_alive():
                    self.logger.error("Informer for %s stopped unexpectedly", self.name)
                    break
                stop.wait(timeout=self.poll_interval_seconds)
        elif not self._should_stop(stop):
            self.logger.error("Cache for %s never synced; stopping controller", self.name)

        self.state = ControllerState.DRAINING
        self.ready.clear()
        self.queue.shut_down()
        informer_stop.set()
        self.informer.request_stop()
        if worker is not None:
            worker.join()
        informer_thread.join(timeout=self.poll_interval_seconds * 5)

        METRICS.controller_running.labels(controller=self.name).set(0)
        self.state = ControllerState.STOPPED
        self.logger.info("%s controller stopped", self.name)
