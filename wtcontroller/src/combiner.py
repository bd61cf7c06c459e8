from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from kubernetes.client import (
    ApiException,
    CoreV1Api,
    V1ObjectMeta,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)

from wtcontroller.src.config import SERVICE_COMBINER, Settings
from wtcontroller.src.informer import Informer, ObjectStore, parse_selector
from wtcontroller.src.kube import is_not_found
from wtcontroller.src.metrics import METRICS
from wtcontroller.src.model import (
    MalformedInputError,
    Notification,
    SyncResult,
    TransientSyncError,
    WatchedKind,
    object_labels,
)
from wtcontroller.src.reconciler import Controller
from wtcontroller.src.workqueue import RateLimitingQueue

APP_LABEL = "app"
ALIAS_LABEL = "service_alias"
COMBINED_CREATOR = "wutong-controller"
COMBINED_PREFIX = "wtsvc"


def combined_service_name(alias: str) -> str:
    return f"{COMBINED_PREFIX}-{alias}"


def merge_ports(services: Iterable[Any]) -> list[V1ServicePort]:
    """Union the ports of *services*, keyed by port number.

    When two services declare the same port number the later one in
    iteration order wins (name, protocol, target port).  The result is
    sorted by port number.
    """
    by_number: dict[int, Any] = {}
    for service in services:
        for port in getattr(getattr(service, "spec", None), "ports", None) or []:
            by_number[port.port] = port
    return [_copy_port(by_number[number]) for number in sorted(by_number)]


def _copy_port(port: Any) -> V1ServicePort:
    # No node_port: the combined service is ClusterIP.
    return V1ServicePort(
        name=getattr(port, "name", None),
        port=port.port,
        protocol=getattr(port, "protocol", None),
        target_port=getattr(port, "target_port", None),
        app_protocol=getattr(port, "app_protocol", None),
    )


def _port_signature(ports: Iterable[Any] | None) -> list[tuple[Any, ...]]:
    return sorted(
        (
            port.port,
            getattr(port, "name", None) or "",
            getattr(port, "protocol", None) or "TCP",
            str(getattr(port, "target_port", None) or port.port),
            getattr(port, "app_protocol", None) or "",
        )
        for port in ports or []
    )


class ServiceCombiner:
    """Keeps one combined ``wtsvc-<alias>`` Service per application component.

    The platform creates one "inner" Service per exposed port group of a
    component.  This sync folds all of them into a single ClusterIP Service
    whose ports are the union of the sources, so other components can reach
    it under one stable name.  The combined Service is pure derived state:
    created when the first source appears, updated when the port union
    changes and deleted when the last source is gone.

    Each call issues at most one mutating API call.  Re-running with nothing
    changed issues none.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        store: ObjectStore,
        source_selector: Mapping[str, str],
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.store = store
        self.source_selector = dict(source_selector)
        self.logger = logger or logging.getLogger(__name__)

    def _read_combined(self, name: str, namespace: str) -> Any | None:
        try:
            return self.core_api.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise TransientSyncError(
                f"get combined service {namespace}/{name} failed: {exc.status} {exc.reason}"
            ) from exc

    def _record(self, verb: str) -> None:
        METRICS.mutations_total.labels(controller=SERVICE_COMBINER, kind="Service", verb=verb).inc()

    def sync(self, notification: Notification) -> SyncResult:
        key = notification.key
        source = notification.obj
        if source is None:
            raise MalformedInputError(f"no final state recorded for deleted service {key}")

        labels = object_labels(source)
        app = labels.get(APP_LABEL)
        alias = labels.get(ALIAS_LABEL)
        if not app or not alias:
            raise MalformedInputError(
                f"service {key} is missing the {APP_LABEL!r} or {ALIAS_LABEL!r} label"
            )

        namespace = key.namespace
        name = combined_service_name(alias)
        combined = self._read_combined(name, namespace)

        selector = {**self.source_selector, APP_LABEL: app, ALIAS_LABEL: alias}
        sources = self.store.list(namespace=namespace, selector=selector)

        if not sources:
            if combined is None:
                return SyncResult(key=key)
            try:
                self.core_api.delete_namespaced_service(name=name, namespace=namespace)
            except ApiException as exc:
                if not is_not_found(exc):
                    raise TransientSyncError(
                        f"delete combined service {namespace}/{name} failed: "
                        f"{exc.status} {exc.reason}"
                    ) from exc
                return SyncResult(key=key)
            self._record("delete")
            self.logger.info("Deleted combined service %s/%s", namespace, name)
            return SyncResult(key=key, deleted=(f"Service/{name}",))

        ports = merge_ports(sources)

        if combined is not None:
            if _port_signature(combined.spec.ports) == _port_signature(ports):
                return SyncResult(key=key)
            combined.spec.ports = ports
            try:
                self.core_api.replace_namespaced_service(
                    name=name, namespace=namespace, body=combined
                )
            except ApiException as exc:
                raise TransientSyncError(
                    f"update combined service {namespace}/{name} failed: "
                    f"{exc.status} {exc.reason}"
                ) from exc
            self._record("update")
            self.logger.info(
                "Updated combined service %s/%s ports to %s",
                namespace,
                name,
                [port.port for port in ports],
            )
            return SyncResult(key=key, updated=(f"Service/{name}",))

        # The selector is copied once at creation.  A deleted trigger is not
        # a live source any more, so fall back to the first remaining one.
        selector_source = sources[0] if notification.deleted else source
        body = V1Service(
            api_version="v1",
            kind="Service",
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels={
                    "creator": COMBINED_CREATOR,
                    APP_LABEL: app,
                    ALIAS_LABEL: alias,
                },
            ),
            spec=V1ServiceSpec(
                type="ClusterIP",
                ports=ports,
                selector=dict(getattr(selector_source.spec, "selector", None) or {}),
            ),
        )
        try:
            self.core_api.create_namespaced_service(namespace=namespace, body=body)
        except ApiException as exc:
            # On 409 the retry finds the service and takes the update branch.
            raise TransientSyncError(
                f"create combined service {namespace}/{name} failed: {exc.status} {exc.reason}"
            ) from exc
        self._record("create")
        self.logger.info(
            "Created combined service %s/%s with ports %s",
            namespace,
            name,
            [port.port for port in ports],
        )
        return SyncResult(key=key, created=(f"Service/{name}",))


def build_service_combiner(
    settings: Settings,
    core_api: CoreV1Api,
    logger: logging.Logger | None = None,
) -> Controller:
    """Wire the source Service informer, queue and :class:`ServiceCombiner` together."""
    informer = Informer(
        name=SERVICE_COMBINER,
        list_fn=core_api.list_service_for_all_namespaces,
        label_selector=settings.service_selector,
        resync_period_seconds=settings.resync_period_seconds,
    )
    combiner = ServiceCombiner(
        core_api=core_api,
        store=informer.store,
        source_selector=parse_selector(settings.service_selector),
        logger=logger,
    )
    return Controller(
        name=SERVICE_COMBINER,
        kind=WatchedKind.SERVICE,
        informer=informer,
        sync_fn=combiner.sync,
        queue=RateLimitingQueue(
            SERVICE_COMBINER,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
        regroup_labels=(APP_LABEL, ALIAS_LABEL),
        logger=logger,
    )
