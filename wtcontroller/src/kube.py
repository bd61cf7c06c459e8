from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api, RbacAuthorizationV1Api
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig (``KUBECONFIG`` or ``~/.kube/config``) for
    development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, RbacAuthorizationV1Api]:
    """Return CoreV1 and RbacAuthorizationV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.RbacAuthorizationV1Api()


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409
