from __future__ import annotations

import ipaddress
import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes.client import ApiException

from ingresslb.src.annotations import class_matches
from ingresslb.src.events import object_key, split_key
from ingresslb.src.kube import (
    patch_ingress_status,
    read_ingress_status,
    request_timeout_kwargs,
)
from ingresslb.src.metrics import METRICS
from ingresslb.src.mirror import Store

REMOVAL_POLL_INTERVAL_SECONDS = 0.25
REMOVAL_TIMEOUT_SECONDS = 2.0
REMOVAL_JOIN_GRACE_SECONDS = 0.25
MIN_REQUEST_TIMEOUT_SECONDS = 0.1


class StatusError(RuntimeError):
    """Raised when the controller cannot work out its own advertised address."""


@dataclass(frozen=True, order=True)
class LoadBalancerAddress:
    """One ``status.loadBalancer.ingress`` entry.  Exactly one field is set."""

    ip: str = ""
    hostname: str = ""

    @classmethod
    def from_string(cls, address: str) -> LoadBalancerAddress:
        try:
            ipaddress.ip_address(address)
        except ValueError:
            return cls(hostname=address)
        return cls(ip=address)

    def to_dict(self) -> dict[str, str]:
        if self.ip:
            return {"ip": self.ip}
        return {"hostname": self.hostname}


def sort_and_dedup_addresses(addresses: list[LoadBalancerAddress]) -> list[LoadBalancerAddress]:
    result: list[LoadBalancerAddress] = []
    for address in sorted(addresses):
        if result and result[-1] == address:
            continue
        result.append(address)
    return result


def status_addresses(ingress: Any) -> list[LoadBalancerAddress]:
    """Return the addresses currently recorded in an Ingress status, in stored order."""
    load_balancer = getattr(getattr(ingress, "status", None), "load_balancer", None)
    return [
        LoadBalancerAddress(
            ip=getattr(entry, "ip", None) or "",
            hostname=getattr(entry, "hostname", None) or "",
        )
        for entry in getattr(load_balancer, "ingress", None) or []
    ]


def node_address(node: Any, allow_internal_ip: bool = False) -> str | None:
    """Pick the address a node is reachable on from outside the cluster.

    ``ExternalIP`` is preferred.  ``InternalIP`` is accepted only when
    *allow_internal_ip* is set; ``LegacyHostIP`` always is.
    """
    addresses = getattr(getattr(node, "status", None), "addresses", None) or []
    for address in addresses:
        if address.type == "ExternalIP" and address.address:
            return address.address
    for address in addresses:
        if not address.address:
            continue
        if address.type == "LegacyHostIP" or (allow_internal_ip and address.type == "InternalIP"):
            return address.address
    return None


class StatusReconciler:
    """Publishes the controller's external addresses into Ingress status.

    Runs on its own jittered timer, independent of configuration syncs.  On
    shutdown it removes only this replica's address, leaving the addresses
    of the other replicas in place.
    """

    def __init__(
        self,
        core_api: Any,
        networking_api: Any,
        ingresses: Store,
        pod_name: str,
        pod_namespace: str,
        ingress_class: str,
        allow_internal_ip: bool = False,
        publish_service: str = "",
        interval_seconds: float = 30,
        removal_timeout_seconds: float = REMOVAL_TIMEOUT_SECONDS,
        removal_poll_interval_seconds: float = REMOVAL_POLL_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        logger: logging.Logger | None = None,
    ) -> None:
        self.core_api = core_api
        self.networking_api = networking_api
        self.ingresses = ingresses
        self.pod_name = pod_name
        self.pod_namespace = pod_namespace
        self.ingress_class = ingress_class
        self.allow_internal_ip = allow_internal_ip
        self.publish_service = publish_service
        self.interval_seconds = interval_seconds
        self.removal_timeout_seconds = removal_timeout_seconds
        self.removal_poll_interval_seconds = removal_poll_interval_seconds
        self._clock = clock
        self.logger = logger or logging.getLogger(__name__)

    def _in_scope_ingresses(self) -> list[Any]:
        return [ing for ing in self.ingresses.list() if class_matches(ing, self.ingress_class)]

    def _self_pod(self, request_timeout: float | None = None) -> Any:
        try:
            return self.core_api.read_namespaced_pod(
                name=self.pod_name,
                namespace=self.pod_namespace,
                **request_timeout_kwargs(request_timeout),
            )
        except ApiException as exc:
            raise StatusError(
                f"could not get Pod {self.pod_namespace}/{self.pod_name}: {exc.status} {exc.reason}"
            ) from exc

    def _pod_address(self, pod: Any, request_timeout: float | None = None) -> LoadBalancerAddress:
        node_name = getattr(pod.spec, "node_name", None)
        if not node_name:
            raise StatusError(f"Pod {object_key(pod)} is not scheduled to a node")
        try:
            node = self.core_api.read_node(name=node_name, **request_timeout_kwargs(request_timeout))
        except ApiException as exc:
            raise StatusError(f"could not get Node {node_name}: {exc.status} {exc.reason}") from exc
        address = node_address(node, self.allow_internal_ip)
        if address is None:
            raise StatusError(f"Node {node_name} has no usable address")
        return LoadBalancerAddress.from_string(address)

    def _replica_pods(self, pod: Any) -> list[Any]:
        labels = getattr(pod.metadata, "labels", None) or {}
        if not labels:
            return [pod]
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        listing = self.core_api.list_namespaced_pod(
            namespace=self.pod_namespace, label_selector=selector
        )
        return list(listing.items or [])

    def _published_addresses(self) -> list[LoadBalancerAddress]:
        namespace, name = split_key(self.publish_service)
        try:
            service = self.core_api.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as exc:
            raise StatusError(
                f"could not get Service {self.publish_service}: {exc.status} {exc.reason}"
            ) from exc

        addresses: list[LoadBalancerAddress] = []
        load_balancer = getattr(getattr(service, "status", None), "load_balancer", None)
        for entry in getattr(load_balancer, "ingress", None) or []:
            if getattr(entry, "ip", None):
                addresses.append(LoadBalancerAddress(ip=entry.ip))
            elif getattr(entry, "hostname", None):
                addresses.append(LoadBalancerAddress(hostname=entry.hostname))
        for external_ip in getattr(service.spec, "external_ips", None) or []:
            addresses.append(LoadBalancerAddress.from_string(external_ip))
        return sort_and_dedup_addresses(addresses)

    def discover_addresses(self) -> list[LoadBalancerAddress]:
        """Return the sorted addresses of every running controller replica."""
        if self.publish_service:
            return self._published_addresses()

        replicas = self._replica_pods(self._self_pod())
        addresses: list[LoadBalancerAddress] = []
        for pod in replicas:
            if getattr(pod.metadata, "deletion_timestamp", None) is not None:
                continue
            if not getattr(pod.spec, "node_name", None):
                continue
            try:
                addresses.append(self._pod_address(pod))
            except StatusError as exc:
                self.logger.error("Skipping Pod %s: %s", object_key(pod), exc)
        return sort_and_dedup_addresses(addresses)

    def update_once(self) -> None:
        """Patch every in-scope Ingress whose status differs from the discovered addresses."""
        try:
            addresses = self.discover_addresses()
        except (StatusError, ApiException, ValueError) as exc:
            self.logger.error("Could not discover load balancer addresses: %s", exc)
            METRICS.status_updates_total.labels(result="error").inc()
            return

        for ingress in self._in_scope_ingresses():
            if status_addresses(ingress) == addresses:
                continue
            self._patch(ingress, addresses)

    def _patch(self, ingress: Any, addresses: list[LoadBalancerAddress]) -> bool:
        namespace = ingress.metadata.namespace
        name = ingress.metadata.name
        try:
            patch_ingress_status(
                self.networking_api, namespace, name, [a.to_dict() for a in addresses]
            )
        except ApiException as exc:
            self.logger.warning(
                "Could not update status of Ingress %s/%s: %s %s",
                namespace,
                name,
                exc.status,
                exc.reason,
            )
            METRICS.status_updates_total.labels(result="error").inc()
            return False
        self.logger.info(
            "Updated status of Ingress %s/%s to %s",
            namespace,
            name,
            [a.to_dict() for a in addresses],
        )
        METRICS.status_updates_total.labels(result="success").inc()
        return True

    def remove_self_address(self) -> None:
        """Remove this replica's address from every in-scope Ingress.

        Every API call made here carries a request timeout bounded by the
        removal window, and the whole removal is abandoned once the window
        plus a short grace period has passed.
        """
        if self.publish_service:
            self.logger.info(
                "Addresses are published from Service %s; leaving Ingress status untouched",
                self.publish_service,
            )
            return

        deadline = self._clock() + self.removal_timeout_seconds
        worker = threading.Thread(
            target=self._deregister, args=(deadline,), name="status-deregister", daemon=True
        )
        worker.start()
        worker.join(timeout=self.removal_timeout_seconds + REMOVAL_JOIN_GRACE_SECONDS)
        if worker.is_alive():
            self.logger.error(
                "Removing own address from Ingress status did not finish within %.2fs; abandoning it",
                self.removal_timeout_seconds,
            )

    def _request_timeout(self, deadline: float) -> float:
        return max(MIN_REQUEST_TIMEOUT_SECONDS, deadline - self._clock())

    def _deregister(self, deadline: float) -> None:
        try:
            own = self._pod_address(
                self._self_pod(request_timeout=self._request_timeout(deadline)),
                request_timeout=self._request_timeout(deadline),
            )
        except StatusError as exc:
            self.logger.error("Could not remove own address from Ingress status: %s", exc)
            return
        except Exception:
            self.logger.exception("Unexpected error looking up own address")
            return

        self.logger.info("Removing address %s from Ingress status", own.to_dict())
        for ingress in self._in_scope_ingresses():
            try:
                self._remove_address(
                    ingress.metadata.namespace, ingress.metadata.name, own, deadline
                )
            except Exception:
                self.logger.exception(
                    "Unexpected error removing address from Ingress %s", object_key(ingress)
                )

    def _remove_address(
        self, namespace: str, name: str, address: LoadBalancerAddress, deadline: float
    ) -> None:
        while True:
            try:
                current = status_addresses(
                    read_ingress_status(
                        self.networking_api,
                        namespace,
                        name,
                        request_timeout=self._request_timeout(deadline),
                    )
                )
            except ApiException as exc:
                if exc.status == 404:
                    self.logger.debug("Ingress %s/%s is gone", namespace, name)
                    return
                self.logger.warning(
                    "Could not read Ingress %s/%s: %s %s", namespace, name, exc.status, exc.reason
                )
            else:
                if address not in current:
                    return
                remaining = sort_and_dedup_addresses([a for a in current if a != address])
                try:
                    patch_ingress_status(
                        self.networking_api,
                        namespace,
                        name,
                        [a.to_dict() for a in remaining],
                        request_timeout=self._request_timeout(deadline),
                    )
                    METRICS.status_updates_total.labels(result="success").inc()
                    return
                except ApiException as exc:
                    if exc.status == 404:
                        return
                    METRICS.status_updates_total.labels(result="error").inc()
                    self.logger.warning(
                        "Could not remove address from Ingress %s/%s: %s %s",
                        namespace,
                        name,
                        exc.status,
                        exc.reason,
                    )

            if self._clock() + self.removal_poll_interval_seconds > deadline:
                self.logger.error(
                    "Gave up removing address %s from Ingress %s/%s",
                    address.to_dict(),
                    namespace,
                    name,
                )
                return
            time.sleep(self.removal_poll_interval_seconds)

    def next_interval(self) -> float:
        return self.interval_seconds * (1 + random.random())  # noqa: S311

    def run_forever(self, shutdown_event: threading.Event) -> None:
        """Update status now and then on a jittered timer until *shutdown_event*, then deregister."""
        while not shutdown_event.is_set():
            try:
                self.update_once()
            except Exception:
                self.logger.exception("Unexpected error updating Ingress status")
            if shutdown_event.wait(timeout=self.next_interval()):
                break
        self.remove_self_address()
