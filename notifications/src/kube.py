from __future__ import annotations

import logging
from pathlib import Path

from kubernetes import client, config
from kubernetes.client import CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

LOGGER = logging.getLogger(__name__)

SERVICE_ACCOUNT_NAMESPACE_PATH = Path("/var/run/secrets/kubernetes.io/serviceaccount/namespace")


def load_kube_configuration(kubeconfig: str | None = None, context: str | None = None) -> bool:
    """Load Kubernetes client configuration.

    An explicit *kubeconfig* or *context* always wins. Otherwise in-cluster
    config is tried first (running inside a pod), falling back to the local
    kubeconfig for development. Returns True when in-cluster config was used.
    """
    if kubeconfig or context:
        config.load_kube_config(config_file=kubeconfig, context=context)
        LOGGER.info("Loaded kubeconfig (context=%s)", context or "current")
        return False
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
        return True
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")
        return False


def current_namespace(
    in_cluster: bool,
    kubeconfig: str | None = None,
    context: str | None = None,
    namespace_path: Path = SERVICE_ACCOUNT_NAMESPACE_PATH,
) -> str:
    """Return the namespace the controller runs in when none was given.

    Inside a pod that is the service account namespace; locally it is the
    namespace of the active kubeconfig context, or ``default``.
    """
    if in_cluster:
        try:
            namespace = namespace_path.read_text().strip()
        except OSError:
            LOGGER.warning("Cannot read %s, using the default namespace", namespace_path)
            return "default"
        return namespace or "default"

    contexts, active_context = config.list_kube_config_contexts(config_file=kubeconfig)
    if context:
        active_context = next((c for c in contexts if c.get("name") == context), active_context)
    return ((active_context or {}).get("context") or {}).get("namespace") or "default"


def build_clients() -> tuple[CoreV1Api, CustomObjectsApi]:
    """Return CoreV1 and CustomObjects API clients using the active kube configuration."""
    return client.CoreV1Api(), client.CustomObjectsApi()
