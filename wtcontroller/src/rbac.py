from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException, CoreV1Api, RbacAuthorizationV1Api

from wtcontroller.src.config import NAMESPACE_RBAC, Settings
from wtcontroller.src.informer import Informer
from wtcontroller.src.kube import is_conflict, is_not_found
from wtcontroller.src.metrics import METRICS
from wtcontroller.src.model import (
    Notification,
    SyncResult,
    TransientSyncError,
    WatchedKind,
)
from wtcontroller.src.reconciler import Controller
from wtcontroller.src.workqueue import RateLimitingQueue

RBAC_API_GROUP = "rbac.authorization.k8s.io"
DEV_PREFIX = "tpdev"

# Granted inside the system namespace and inside each managed namespace.
NAMESPACE_ROLE: dict[str, Any] = {
    "apiVersion": f"{RBAC_API_GROUP}/v1",
    "kind": "ClusterRole",
    "metadata": {"name": "tpdev4rb"},
    "rules": [
        {
            "apiGroups": [""],
            "resources": ["pods"],
            "verbs": ["get", "list", "watch", "create", "delete"],
        },
        {"apiGroups": [""], "resources": ["services"], "verbs": ["update"]},
        {"apiGroups": [""], "resources": ["pods/portforward"], "verbs": ["create"]},
        {
            "apiGroups": ["apps"],
            "resources": ["deployments", "statefulsets", "replicasets"],
            "verbs": ["get", "list", "watch", "update"],
        },
        {
            "apiGroups": ["getambassador.io"],
            "resources": ["hosts", "mappings"],
            "verbs": ["*"],
        },
        {"apiGroups": [""], "resources": ["endpoints"], "verbs": ["get", "list", "watch"]},
    ],
}

# Granted cluster-wide through the per-namespace ClusterRoleBinding.
CLUSTER_ROLE: dict[str, Any] = {
    "apiVersion": f"{RBAC_API_GROUP}/v1",
    "kind": "ClusterRole",
    "metadata": {"name": "tpdev4crb"},
    "rules": [
        {"apiGroups": [""], "resources": ["namespaces"], "verbs": ["get", "list", "watch"]},
        {"apiGroups": [""], "resources": ["services"], "verbs": ["get", "list", "watch"]},
    ],
}


def _role_name(role: dict[str, Any]) -> str:
    return role["metadata"]["name"]


@dataclass(frozen=True)
class AccessBundle:
    """Names and manifests of the development-access objects for one namespace.

    Everything is derived from the namespace name, so the bundle can be
    rebuilt for a namespace that no longer exists.
    """

    namespace: str
    system_namespace: str

    @property
    def service_account(self) -> str:
        return f"{DEV_PREFIX}-{self.namespace}"

    @property
    def system_role_binding(self) -> str:
        return f"{DEV_PREFIX}-tprb-{self.namespace}"

    @property
    def namespace_role_binding(self) -> str:
        return f"{DEV_PREFIX}-nsrb-{self.namespace}"

    @property
    def cluster_role_binding(self) -> str:
        return f"{DEV_PREFIX}-crb-{self.namespace}"

    def _subjects(self) -> list[dict[str, str]]:
        return [
            {
                "kind": "ServiceAccount",
                "name": self.service_account,
                "namespace": self.system_namespace,
            }
        ]

    @staticmethod
    def _role_ref(role: dict[str, Any]) -> dict[str, str]:
        return {"apiGroup": RBAC_API_GROUP, "kind": "ClusterRole", "name": _role_name(role)}

    def service_account_body(self) -> dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": "ServiceAccount",
            "metadata": {"name": self.service_account, "namespace": self.system_namespace},
        }

    def system_role_binding_body(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{RBAC_API_GROUP}/v1",
            "kind": "RoleBinding",
            "metadata": {"name": self.system_role_binding, "namespace": self.system_namespace},
            "subjects": self._subjects(),
            "roleRef": self._role_ref(NAMESPACE_ROLE),
        }

    def namespace_role_binding_body(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{RBAC_API_GROUP}/v1",
            "kind": "RoleBinding",
            "metadata": {"name": self.namespace_role_binding, "namespace": self.namespace},
            "subjects": self._subjects(),
            "roleRef": self._role_ref(NAMESPACE_ROLE),
        }

    def cluster_role_binding_body(self) -> dict[str, Any]:
        return {
            "apiVersion": f"{RBAC_API_GROUP}/v1",
            "kind": "ClusterRoleBinding",
            "metadata": {"name": self.cluster_role_binding},
            "subjects": self._subjects(),
            "roleRef": self._role_ref(CLUSTER_ROLE),
        }


class NamespaceAccessSync:
    """Provisions the development-access bundle for every managed namespace.

    For a live namespace the sync ensures, in order: the ServiceAccount in
    the system namespace, the shared ``tpdev4rb`` ClusterRole, the
    RoleBinding in the system namespace, the RoleBinding in the namespace
    itself, the shared ``tpdev4crb`` ClusterRole and the ClusterRoleBinding.
    Each object is probed and only created when absent, so a converged
    namespace costs six reads and no writes.

    When the namespace is gone the ServiceAccount, the system-namespace
    RoleBinding and the ClusterRoleBinding are deleted.  The in-namespace
    RoleBinding goes away with its namespace and the two shared ClusterRoles
    are never deleted.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        rbac_api: RbacAuthorizationV1Api,
        system_namespace: str = "ambassador",
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.rbac_api = rbac_api
        self.system_namespace = system_namespace
        self.logger = logger or logging.getLogger(__name__)

    def _record(self, kind: str, verb: str) -> None:
        METRICS.mutations_total.labels(controller=NAMESPACE_RBAC, kind=kind, verb=verb).inc()

    def _ensure(
        self,
        kind: str,
        name: str,
        read: Callable[[], Any],
        create: Callable[[], Any],
    ) -> bool:
        """Create an object if a probe says it is missing.  Returns True if created."""
        try:
            read()
            return False
        except ApiException as exc:
            if not is_not_found(exc):
                self.logger.error("get %s %s failed: %s %s", kind, name, exc.status, exc.reason)
                raise TransientSyncError(f"get {kind} {name} failed: {exc.status}") from exc

        try:
            create()
        except ApiException as exc:
            if is_conflict(exc):
                return False
            self.logger.error("create %s %s failed: %s %s", kind, name, exc.status, exc.reason)
            raise TransientSyncError(f"create {kind} {name} failed: {exc.status}") from exc
        self._record(kind, "create")
        self.logger.info("Created %s %s", kind, name)
        return True

    def _shared_role_step(
        self, role: dict[str, Any]
    ) -> tuple[str, str, Callable[[], Any], Callable[[], Any]]:
        """Ensure-exists step for a shared ClusterRole; it is never updated or deleted."""
        name = _role_name(role)
        return (
            "ClusterRole",
            name,
            lambda: self.rbac_api.read_cluster_role(name=name),
            lambda: self.rbac_api.create_cluster_role(body=role),
        )

    def _namespace_exists(self, name: str) -> bool:
        try:
            self.core_api.read_namespace(name=name)
            return True
        except ApiException as exc:
            if is_not_found(exc):
                return False
            raise TransientSyncError(f"get namespace {name} failed: {exc.status}") from exc

    def sync(self, notification: Notification) -> SyncResult:
        key = notification.key
        bundle = AccessBundle(namespace=key.name, system_namespace=self.system_namespace)

        if not self._namespace_exists(key.name):
            return self.teardown(notification, bundle)
        if notification.deleted:
            # A live namespace reported as deleted lost the managed-by label.
            # Its bundle is kept and re-ensured.
            self.logger.debug(
                "Namespace %s left the watch but still exists; keeping its access bundle",
                key.name,
            )

        created: list[str] = []
        system_ns = self.system_namespace
        steps: list[tuple[str, str, Callable[[], Any], Callable[[], Any]]] = [
            (
                "ServiceAccount",
                bundle.service_account,
                lambda: self.core_api.read_namespaced_service_account(
                    name=bundle.service_account, namespace=system_ns
                ),
                lambda: self.core_api.create_namespaced_service_account(
                    namespace=system_ns, body=bundle.service_account_body()
                ),
            ),
            self._shared_role_step(NAMESPACE_ROLE),
            (
                "RoleBinding",
                bundle.system_role_binding,
                lambda: self.rbac_api.read_namespaced_role_binding(
                    name=bundle.system_role_binding, namespace=system_ns
                ),
                lambda: self.rbac_api.create_namespaced_role_binding(
                    namespace=system_ns, body=bundle.system_role_binding_body()
                ),
            ),
            (
                "RoleBinding",
                bundle.namespace_role_binding,
                lambda: self.rbac_api.read_namespaced_role_binding(
                    name=bundle.namespace_role_binding, namespace=bundle.namespace
                ),
                lambda: self.rbac_api.create_namespaced_role_binding(
                    namespace=bundle.namespace, body=bundle.namespace_role_binding_body()
                ),
            ),
            self._shared_role_step(CLUSTER_ROLE),
            (
                "ClusterRoleBinding",
                bundle.cluster_role_binding,
                lambda: self.rbac_api.read_cluster_role_binding(
                    name=bundle.cluster_role_binding
                ),
                lambda: self.rbac_api.create_cluster_role_binding(
                    body=bundle.cluster_role_binding_body()
                ),
            ),
        ]
        # Each role is ensured before the first binding that references it.
        for kind, name, read, create in steps:
            if self._ensure(kind, name, read, create):
                created.append(f"{kind}/{name}")

        return SyncResult(key=key, created=tuple(created))

    def teardown(self, notification: Notification, bundle: AccessBundle) -> SyncResult:
        """Delete the per-namespace objects that outlive a deleted namespace.

        Every delete is attempted; objects that are already gone are fine.
        Any other failure is raised after all attempts so the key is retried.
        """
        system_ns = self.system_namespace
        deletions: list[tuple[str, str, Callable[[], Any]]] = [
            (
                "ServiceAccount",
                bundle.service_account,
                lambda: self.core_api.delete_namespaced_service_account(
                    name=bundle.service_account, namespace=system_ns
                ),
            ),
            (
                "RoleBinding",
                bundle.system_role_binding,
                lambda: self.rbac_api.delete_namespaced_role_binding(
                    name=bundle.system_role_binding, namespace=system_ns
                ),
            ),
            (
                "ClusterRoleBinding",
                bundle.cluster_role_binding,
                lambda: self.rbac_api.delete_cluster_role_binding(
                    name=bundle.cluster_role_binding
                ),
            ),
        ]

        deleted: list[str] = []
        failures: list[str] = []
        for kind, name, delete in deletions:
            try:
                delete()
            except ApiException as exc:
                if is_not_found(exc):
                    continue
                self.logger.error("delete %s %s failed: %s %s", kind, name, exc.status, exc.reason)
                failures.append(f"{kind}/{name}")
                continue
            self._record(kind, "delete")
            deleted.append(f"{kind}/{name}")

        if failures:
            raise TransientSyncError(
                f"teardown of namespace {bundle.namespace} incomplete: {', '.join(failures)}"
            )
        if deleted:
            self.logger.info("Removed dev access for deleted namespace %s", bundle.namespace)
        return SyncResult(key=notification.key, deleted=tuple(deleted))


def build_namespace_rbac(
    settings: Settings,
    core_api: CoreV1Api,
    rbac_api: RbacAuthorizationV1Api,
    logger: logging.Logger | None = None,
) -> Controller:
    """Wire the managed-namespace informer, queue and :class:`NamespaceAccessSync` together."""
    informer = Informer(
        name=NAMESPACE_RBAC,
        list_fn=core_api.list_namespace,
        label_selector=settings.namespace_selector,
        resync_period_seconds=settings.resync_period_seconds,
    )
    access_sync = NamespaceAccessSync(
        core_api=core_api,
        rbac_api=rbac_api,
        system_namespace=settings.system_namespace,
        logger=logger,
    )
    return Controller(
        name=NAMESPACE_RBAC,
        kind=WatchedKind.NAMESPACE,
        informer=informer,
        sync_fn=access_sync.sync,
        queue=RateLimitingQueue(
            NAMESPACE_RBAC,
            base_delay_seconds=settings.retry_base_delay_seconds,
            max_delay_seconds=settings.retry_max_delay_seconds,
        ),
        logger=logger,
    )
