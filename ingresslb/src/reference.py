from __future__ import annotations

import logging
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from ingresslb.src.annotations import class_matches, selector_matches
from ingresslb.src.events import ResourceKind, object_key
from ingresslb.src.mirror import Store

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngressPath:
    """One ``host``/``path`` entry of an Ingress pointing at a service port."""

    host: str
    path: str
    service_name: str
    service_port: str


def ingress_paths(ingress: Any) -> Iterator[IngressPath]:
    """Yield the service-backed paths of an Ingress in declared order.

    ``service_port`` is the port number rendered as a string, or the port
    name when the backend refers to the port by name.
    """
    spec = getattr(ingress, "spec", None)
    for rule in getattr(spec, "rules", None) or []:
        http = getattr(rule, "http", None)
        if http is None:
            continue
        host = getattr(rule, "host", None) or ""
        for path in getattr(http, "paths", None) or []:
            service = getattr(getattr(path, "backend", None), "service", None)
            if service is None or not getattr(service, "name", None):
                continue
            port = getattr(service, "port", None)
            number = getattr(port, "number", None)
            service_port = str(number) if number is not None else (getattr(port, "name", None) or "")
            yield IngressPath(
                host=host,
                path=getattr(path, "path", None) or "",
                service_name=service.name,
                service_port=service_port,
            )


def _namespace_of(obj: Any) -> str:
    return getattr(getattr(obj, "metadata", None), "namespace", None) or ""


def _name_of(obj: Any) -> str:
    return getattr(getattr(obj, "metadata", None), "name", None) or ""


class ReferenceIndex:
    """Decides whether a changed object can affect the derived configuration.

    Pure predicate over the mirrored stores.  Lookup failures are logged and
    answered with "not relevant"; the periodic resync repairs any miss.
    """

    def __init__(
        self,
        ingresses: Store,
        services: Store,
        default_backend_service: str,
        ingress_class: str,
        default_tls_secret: str = "",
        proxy_configmap: str = "",
    ) -> None:
        self.ingresses = ingresses
        self.services = services
        self.default_backend_service = default_backend_service
        self.ingress_class = ingress_class
        self.default_tls_secret = default_tls_secret
        self.proxy_configmap = proxy_configmap

    def ingress_in_scope(self, ingress: Any) -> bool:
        return class_matches(ingress, self.ingress_class)

    def _in_scope_ingresses(self, namespace: str) -> list[Any]:
        return [
            ingress
            for ingress in self.ingresses.list()
            if _namespace_of(ingress) == namespace and self.ingress_in_scope(ingress)
        ]

    def is_relevant(self, kind: ResourceKind, obj: Any) -> bool:
        try:
            match kind:
                case ResourceKind.INGRESS:
                    return self.ingress_in_scope(obj)
                case ResourceKind.ENDPOINTS | ResourceKind.SERVICE:
                    return self.service_referenced(_namespace_of(obj), _name_of(obj))
                case ResourceKind.SECRET:
                    return self.secret_referenced(_namespace_of(obj), _name_of(obj))
                case ResourceKind.POD:
                    return self.pod_referenced(obj)
                case ResourceKind.CONFIGMAP:
                    return bool(self.proxy_configmap) and object_key(obj) == self.proxy_configmap
                case _:
                    return False
        except Exception:
            LOGGER.exception("Reference lookup for %s %s failed", kind.value, object_key(obj))
            return False

    def service_referenced(self, namespace: str, name: str) -> bool:
        """True for the default backend service or any service an in-scope Ingress routes to.

        Endpoints share their Service's key, so this answers for both kinds.
        """
        if f"{namespace}/{name}" == self.default_backend_service:
            return True
        for ingress in self._in_scope_ingresses(namespace):
            for path in ingress_paths(ingress):
                if path.service_name == name:
                    LOGGER.debug(
                        "%s/%s is referenced by Ingress %s", namespace, name, object_key(ingress)
                    )
                    return True
        return False

    def secret_referenced(self, namespace: str, name: str) -> bool:
        if self.default_tls_secret and f"{namespace}/{name}" == self.default_tls_secret:
            return True
        for ingress in self._in_scope_ingresses(namespace):
            for tls in getattr(getattr(ingress, "spec", None), "tls", None) or []:
                if getattr(tls, "secret_name", None) == name:
                    return True
        return False

    def pod_referenced(self, pod: Any) -> bool:
        labels = getattr(getattr(pod, "metadata", None), "labels", None) or {}
        namespace = _namespace_of(pod)

        default_service = self.services.get_by_key(self.default_backend_service)
        if (
            default_service is not None
            and _namespace_of(default_service) == namespace
            and selector_matches(_selector_of(default_service), labels)
        ):
            LOGGER.debug(
                "Pod %s is referenced by default Service %s",
                object_key(pod),
                self.default_backend_service,
            )
            return True

        for ingress in self._in_scope_ingresses(namespace):
            for path in ingress_paths(ingress):
                service = self.services.get_by_key(f"{namespace}/{path.service_name}")
                if service is None:
                    continue
                if selector_matches(_selector_of(service), labels):
                    LOGGER.debug(
                        "Pod %s is referenced by Ingress %s through Service %s",
                        object_key(pod),
                        object_key(ingress),
                        object_key(service),
                    )
                    return True
        return False


def _selector_of(service: Any) -> dict[str, str]:
    return getattr(getattr(service, "spec", None), "selector", None) or {}
