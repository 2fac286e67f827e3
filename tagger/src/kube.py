from __future__ import annotations

import logging
from typing import Any

from kubernetes import client, config
from kubernetes.client import CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from tagger.src.informer import Informer

LOGGER = logging.getLogger(__name__)

TAG_GROUP = "images.io"
TAG_VERSION = "v1"
TAG_PLURAL = "tags"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig (``KUBECONFIG``) for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> CustomObjectsApi:
    """Return a CustomObjects API client using the active kube configuration."""
    return client.CustomObjectsApi()


def build_tag_informer(
    custom_api: CustomObjectsApi, namespace: str = "", resync_seconds: int = 60
) -> Informer:
    """Return an informer over Tags in *namespace*, or cluster-wide when empty."""
    if namespace:
        return Informer(
            custom_api.list_namespaced_custom_object,
            name="tags",
            resync_seconds=resync_seconds,
            group=TAG_GROUP,
            version=TAG_VERSION,
            namespace=namespace,
            plural=TAG_PLURAL,
        )
    return Informer(
        custom_api.list_cluster_custom_object,
        name="tags",
        resync_seconds=resync_seconds,
        group=TAG_GROUP,
        version=TAG_VERSION,
        plural=TAG_PLURAL,
    )


def patch_tag_status(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    status: dict[str, Any],
) -> None:
    """Merge-patch the ``status`` subresource of a Tag.

    ``references`` is a list, so a merge patch replaces it wholesale; callers
    send the complete history.
    """
    custom_api.patch_namespaced_custom_object_status(
        group=TAG_GROUP,
        version=TAG_VERSION,
        namespace=namespace,
        plural=TAG_PLURAL,
        name=name,
        body={"status": status},
    )


def patch_tag_generation(
    custom_api: CustomObjectsApi,
    namespace: str,
    name: str,
    generation: int,
) -> None:
    """Set ``spec.generation`` on a Tag, which queues a new import through the watch."""
    custom_api.patch_namespaced_custom_object(
        group=TAG_GROUP,
        version=TAG_VERSION,
        namespace=namespace,
        plural=TAG_PLURAL,
        name=name,
        body={"spec": {"generation": generation}},
    )
