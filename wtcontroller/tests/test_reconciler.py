from __future__ import annotations

import threading
from types import SimpleNamespace
from typing import Any

from kubernetes.client import ApiException

from wtcontroller.src.informer import ObjectStore
from wtcontroller.src.model import (
    MalformedInputError,
    Notification,
    ObjectKey,
    SyncResult,
    TransientSyncError,
    WatchedKind,
)
from wtcontroller.src.reconciler import Controller, ControllerState
from wtcontroller.src.workqueue import RateLimitingQueue


class FakeInformer:
    """In-memory stand-in for :class:`Informer` driven directly by tests."""

    def __init__(self, objects: list[Any] | None = None, fail: bool = False) -> None:
        self.store = ObjectStore()
        self.failed = False
        self._fail = fail
        self._initial = objects or []
        self._synced = threading.Event()
        self.stop_requested = False
        self.on_add: Any = None
        self.on_update: Any = None
        self.on_delete: Any = None

    def add_event_handler(self, on_add: Any = None, on_update: Any = None, on_delete: Any = None) -> None:
        self.on_add, self.on_update, self.on_delete = on_add, on_update, on_delete

    def has_synced(self) -> bool:
        return self._synced.is_set()

    def request_stop(self) -> None:
        self.stop_requested = True

    def emit_add(self, obj: Any) -> None:
        self.store.upsert(obj)
        self.on_add(obj)

    def emit_delete(self, obj: Any) -> None:
        self.store.delete(obj)
        self.on_delete(obj)

    def run(self, stop_event: threading.Event) -> None:
        if self._fail:
            self.failed = True
            return
        for obj in self._initial:
            self.emit_add(obj)
        self._synced.set()
        stop_event.wait()


def make_service(name: str, namespace: str = "team-a") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, labels={}, resource_version="1")
    )


def _key(name: str) -> ObjectKey:
    return ObjectKey(kind=WatchedKind.SERVICE, namespace="team-a", name=name)


class RecordingSync:
    def __init__(self, failures: dict[str, list[Exception]] | None = None) -> None:
        self.calls: list[Notification] = []
        self.failures = {name: list(errors) for name, errors in (failures or {}).items()}

    def __call__(self, notification: Notification) -> SyncResult:
        self.calls.append(notification)
        pending = self.failures.get(notification.key.name)
        if pending:
            raise pending.pop(0)
        return SyncResult(key=notification.key)


def _make_controller(
    sync: Any, informer: FakeInformer | None = None
) -> tuple[Controller, FakeInformer]:
    fake_informer = informer or FakeInformer()
    controller = Controller(
        name="test",
        kind=WatchedKind.SERVICE,
        informer=fake_informer,  # type: ignore[arg-type]
        sync_fn=sync,
        queue=RateLimitingQueue("test", base_delay_seconds=0.01, max_delay_seconds=0.05),
        poll_interval_seconds=0.01,
    )
    return controller, fake_informer


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


def test_notifications_for_same_object_are_coalesced() -> None:
    sync = RecordingSync()
    controller, informer = _make_controller(sync)
    web = make_service("web")

    informer.emit_add(web)
    informer.on_update(web, web)
    informer.on_update(web, web)

    assert len(controller.queue) == 1
    assert controller.process_next_item() is True
    assert [call.key for call in sync.calls] == [_key("web")]
    assert len(controller.queue) == 0


def test_live_object_is_resolved_from_cache() -> None:
    sync = RecordingSync()
    controller, informer = _make_controller(sync)
    web = make_service("web")
    informer.emit_add(web)

    controller.process_next_item()

    assert sync.calls[0].obj is web
    assert sync.calls[0].deleted is False


def test_missing_object_is_resolved_as_deletion_with_last_known_state() -> None:
    sync = RecordingSync()
    controller, informer = _make_controller(sync)
    web = make_service("web")
    informer.emit_add(web)
    controller.process_next_item()

    informer.emit_delete(web)
    controller.process_next_item()

    assert sync.calls[1].deleted is True
    assert sync.calls[1].obj is web
    assert controller._last_known == {}


def test_success_forgets_backoff() -> None:
    sync = RecordingSync()
    controller, informer = _make_controller(sync)
    informer.emit_add(make_service("web"))
    controller.queue.when(_key("web"))

    controller.process_next_item()

    assert controller.queue.num_requeues(_key("web")) == 0


def test_transient_failure_requeues_and_other_items_still_converge() -> None:
    sync = RecordingSync(failures={"broken": [TransientSyncError("api down")]})
    controller, informer = _make_controller(sync)
    informer.emit_add(make_service("broken"))
    informer.emit_add(make_service("healthy"))

    assert controller.process_next_item() is True
    assert controller.process_next_item() is True

    assert [call.key.name for call in sync.calls] == ["broken", "healthy"]
    assert controller.queue.num_requeues(_key("broken")) == 1

    # The failed key comes back after its backoff and then succeeds.
    item, _ = controller.queue.get(timeout=2)
    assert item == _key("broken")
    controller.queue.done(item)


def test_api_exception_from_sync_is_retried() -> None:
    sync = RecordingSync(failures={"web": [ApiException(status=500, reason="boom")]})
    controller, informer = _make_controller(sync)
    informer.emit_add(make_service("web"))

    controller.process_next_item()

    assert controller.queue.num_requeues(_key("web")) == 1


def test_unexpected_exception_is_retried_not_fatal() -> None:
    sync = RecordingSync(failures={"web": [RuntimeError("bug")]})
    controller, informer = _make_controller(sync)
    informer.emit_add(make_service("web"))

    assert controller.process_next_item() is True
    assert controller.queue.num_requeues(_key("web")) == 1


def test_deletion_state_is_kept_until_retry_succeeds() -> None:
    sync = RecordingSync()
    controller, informer = _make_controller(sync)
    web = make_service("web")
    informer.emit_add(web)
    controller.process_next_item()

    sync.failures["web"] = [TransientSyncError("api down")]
    informer.emit_delete(web)
    controller.process_next_item()
    assert controller._last_known[_key("web")] is web

    # Blocks until the backoff elapses and the key is handed out again.
    controller.process_next_item()

    assert sync.calls[-1].deleted is True
    assert sync.calls[-1].obj is web
    assert controller._last_known == {}


def _labelled(name: str, app: str) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace="team-a", labels={"app": app}, resource_version="1")
    )


def _make_regrouping_controller(sync: Any) -> tuple[Controller, FakeInformer]:
    informer = FakeInformer()
    controller = Controller(
        name="test",
        kind=WatchedKind.SERVICE,
        informer=informer,  # type: ignore[arg-type]
        sync_fn=sync,
        queue=RateLimitingQueue("test", base_delay_seconds=0.01, max_delay_seconds=0.05),
        regroup_labels=("app",),
    )
    return controller, informer


def test_regroup_label_change_syncs_previous_copy_as_deletion_first() -> None:
    sync = RecordingSync()
    controller, informer = _make_regrouping_controller(sync)
    old, new = _labelled("web", "shop"), _labelled("web", "blog")
    informer.emit_add(old)
    controller.process_next_item()

    informer.store.upsert(new)
    informer.on_update(old, new)
    controller.process_next_item()

    assert [(call.obj, call.deleted) for call in sync.calls[1:]] == [(old, True), (new, False)]
    assert controller._superseded == {}


def test_other_label_changes_do_not_sync_previous_copy() -> None:
    sync = RecordingSync()
    controller, informer = _make_regrouping_controller(sync)
    old = _labelled("web", "shop")
    new = _labelled("web", "shop")
    new.metadata.labels["tier"] = "backend"
    informer.emit_add(old)
    controller.process_next_item()

    informer.on_update(old, new)
    controller.process_next_item()

    assert [call.deleted for call in sync.calls] == [False, False]


def test_previous_copy_is_kept_until_retry_succeeds() -> None:
    sync = RecordingSync()
    controller, informer = _make_regrouping_controller(sync)
    old, new = _labelled("web", "shop"), _labelled("web", "blog")
    informer.emit_add(old)
    controller.process_next_item()

    sync.failures["web"] = [TransientSyncError("api down")]
    informer.store.upsert(new)
    informer.on_update(old, new)
    controller.process_next_item()
    assert controller._superseded[_key("web")] == [old]

    controller.process_next_item()

    assert controller._superseded == {}
    assert [(call.obj, call.deleted) for call in sync.calls[-2:]] == [(old, True), (new, False)]


def test_malformed_input_is_dropped_without_retry() -> None:
    sync = RecordingSync(failures={"web": [MalformedInputError("no labels")]})
    controller, informer = _make_controller(sync)
    informer.emit_add(make_service("web"))

    controller.process_next_item()

    assert controller.queue.num_requeues(_key("web")) == 0
    assert controller.queue.get(timeout=0.05) == (None, False)


def test_readd_clears_last_known_state() -> None:
    sync = RecordingSync()
    controller, informer = _make_controller(sync)
    web = make_service("web")
    informer.emit_add(web)
    informer.emit_delete(web)

    informer.emit_add(web)

    assert controller._last_known == {}


def test_notification_without_name_is_ignored() -> None:
    controller, informer = _make_controller(RecordingSync())

    informer.on_add(SimpleNamespace(metadata=SimpleNamespace(name=None)))

    assert len(controller.queue) == 0


def test_process_next_item_returns_false_after_shutdown() -> None:
    controller, _ = _make_controller(RecordingSync())

    controller.queue.shut_down()

    assert controller.process_next_item() is False


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def test_run_syncs_initial_objects_and_stops_on_shutdown() -> None:
    synced = threading.Event()
    calls: list[ObjectKey] = []

    def sync(notification: Notification) -> SyncResult:
        calls.append(notification.key)
        synced.set()
        return SyncResult(key=notification.key)

    informer = FakeInformer(objects=[make_service("web")])
    controller, _ = _make_controller(sync, informer=informer)
    shutdown_event = threading.Event()
    thread = threading.Thread(target=controller.run, kwargs={"shutdown_event": shutdown_event})
    thread.start()

    assert synced.wait(timeout=5)
    assert controller.ready.is_set()
    assert controller.state == ControllerState.RUNNING

    shutdown_event.set()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert calls == [_key("web")]
    assert controller.state == ControllerState.STOPPED
    assert not controller.ready.is_set()
    assert controller.queue.shutting_down()
    assert informer.stop_requested


def test_run_never_becomes_ready_when_informer_fails() -> None:
    informer = FakeInformer(fail=True)
    controller, _ = _make_controller(RecordingSync(), informer=informer)

    controller.run(shutdown_event=threading.Event())

    assert controller.state == ControllerState.STOPPED
    assert not controller.ready.is_set()


def test_request_stop_stops_only_this_controller() -> None:
    informer = FakeInformer()
    controller, _ = _make_controller(RecordingSync(), informer=informer)
    shared_shutdown = threading.Event()
    thread = threading.Thread(target=controller.run, kwargs={"shutdown_event": shared_shutdown})
    thread.start()
    informer._synced.wait(timeout=5)

    controller.request_stop()
    thread.join(timeout=5)

    assert not thread.is_alive()
    assert not shared_shutdown.is_set()
    assert controller.state == ControllerState.STOPPED
