from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from kubernetes import client, config
from kubernetes.client import CoreV1Api, NetworkingV1Api
from kubernetes.config.config_exception import ConfigException

from ingresslb.src.events import ResourceKind, split_key

LOGGER = logging.getLogger(__name__)

ListSource = tuple[Callable[..., Any], dict[str, Any]]


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, NetworkingV1Api]:
    """Return CoreV1 and NetworkingV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.NetworkingV1Api()


def list_sources(
    core_api: CoreV1Api,
    networking_api: NetworkingV1Api,
    watch_namespace: str = "",
    proxy_configmap: str = "",
) -> dict[ResourceKind, ListSource]:
    """Return the list function and arguments used to mirror each resource kind.

    Only Ingresses are restricted to *watch_namespace*.  Services, Endpoints,
    Secrets and Pods are mirrored cluster wide because the default backend
    and the default TLS Secret may live in any namespace.  The tuning
    ConfigMap is watched by name.
    """
    if watch_namespace:
        ingress_source: ListSource = (
            networking_api.list_namespaced_ingress,
            {"namespace": watch_namespace},
        )
    else:
        ingress_source = (networking_api.list_ingress_for_all_namespaces, {})

    sources: dict[ResourceKind, ListSource] = {
        ResourceKind.INGRESS: ingress_source,
        ResourceKind.SERVICE: (core_api.list_service_for_all_namespaces, {}),
        ResourceKind.ENDPOINTS: (core_api.list_endpoints_for_all_namespaces, {}),
        ResourceKind.SECRET: (core_api.list_secret_for_all_namespaces, {}),
        ResourceKind.POD: (core_api.list_pod_for_all_namespaces, {}),
    }
    if proxy_configmap:
        namespace, name = split_key(proxy_configmap)
        sources[ResourceKind.CONFIGMAP] = (
            core_api.list_namespaced_config_map,
            {"namespace": namespace, "field_selector": f"metadata.name={name}"},
        )
    return sources


def request_timeout_kwargs(request_timeout: float | None) -> dict[str, Any]:
    if request_timeout is None:
        return {}
    return {"_request_timeout": request_timeout}


def patch_ingress_status(
    networking_api: NetworkingV1Api,
    namespace: str,
    name: str,
    addresses: list[dict[str, str]],
    request_timeout: float | None = None,
) -> None:
    """Replace ``status.loadBalancer.ingress`` of an Ingress with *addresses*.

    The list has no merge key, so the patch replaces it wholesale.
    """
    body = {
        "status": {
            "loadBalancer": {
                "ingress": addresses
            }
        }
    }

    networking_api.patch_namespaced_ingress_status(
        name=name,
        namespace=namespace,
        body=body,
        **request_timeout_kwargs(request_timeout),
    )


def read_ingress_status(
    networking_api: NetworkingV1Api,
    namespace: str,
    name: str,
    request_timeout: float | None = None,
) -> Any:
    """Read an Ingress straight from the API server, bypassing the local mirror."""
    return networking_api.read_namespaced_ingress_status(
        name=name, namespace=namespace, **request_timeout_kwargs(request_timeout)
    )
