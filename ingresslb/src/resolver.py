from __future__ import annotations

import logging
from typing import Any

from ingresslb.src.annotations import (
    annotations_of,
    backend_config_mapping,
    class_matches,
    fixup_backend_config,
    path_config_mapping,
    selector_matches,
)
from ingresslb.src.events import object_key
from ingresslb.src.metrics import METRICS
from ingresslb.src.mirror import Store
from ingresslb.src.model import (
    BackendConfig,
    IngressConfig,
    PathConfig,
    TLSCred,
    Upstream,
    UpstreamServer,
    placeholder_server,
    sort_and_dedup_servers,
)
from ingresslb.src.reference import ingress_paths
from ingresslb.src.tls import TLSCredError, TLSCredResolver, assemble_credentials

LOGGER = logging.getLogger(__name__)

# Cache of symbolic target ports resolved through pods during one pass,
# keyed by (service key, port name).
NamedPortCache = dict[tuple[str, str], int | None]

# The proxy only speaks TCP; other endpoint and container ports are ignored.
PROTOCOL_TCP = "TCP"


def find_service_port(service: Any, backend_port: str) -> Any | None:
    """Return the first declared port of *service* that *backend_port* refers to.

    A port matches when its number, its target port or its name equals
    ``backend_port``.  Ports are tried in declared order.
    """
    for service_port in getattr(getattr(service, "spec", None), "ports", None) or []:
        if str(service_port.port) == backend_port:
            return service_port
        target_port = getattr(service_port, "target_port", None)
        if target_port is not None and str(target_port) == backend_port:
            return service_port
        if getattr(service_port, "name", None) and service_port.name == backend_port:
            return service_port
    return None


def _protocol(obj: Any) -> str:
    return getattr(obj, "protocol", None) or PROTOCOL_TCP


class ConfigResolver:
    """Builds an :class:`IngressConfig` from Ingresses and the mirrored stores.

    The result depends only on its inputs: Ingresses, servers and
    credentials are all visited or emitted in sorted order, so an unchanged
    cluster yields an identical model.  A broken Ingress, Secret or Service
    only removes what depends on it.
    """

    def __init__(
        self,
        services: Store,
        endpoints: Store,
        pods: Store,
        configmaps: Store,
        tls_resolver: TLSCredResolver,
        default_backend_service: str,
        ingress_class: str,
        default_tls_secret: str = "",
        proxy_configmap: str = "",
    ) -> None:
        self.services = services
        self.endpoints = endpoints
        self.pods = pods
        self.configmaps = configmaps
        self.tls_resolver = tls_resolver
        self.default_backend_service = default_backend_service
        self.ingress_class = ingress_class
        self.default_tls_secret = default_tls_secret
        self.proxy_configmap = proxy_configmap

    def resolve(self, ingresses: list[Any]) -> IngressConfig:
        named_ports: NamedPortCache = {}

        default_cred = self._default_tls_cred()
        redirect_by_default = default_cred is not None

        upstreams: list[Upstream] = []
        creds: list[TLSCred] = []
        for ingress in sorted(ingresses, key=object_key):
            if not class_matches(ingress, self.ingress_class):
                continue
            ingress_key = object_key(ingress)
            try:
                ingress_creds = self.tls_resolver.resolve_ingress(ingress)
            except TLSCredError as exc:
                LOGGER.warning(
                    "Ingress %s is disabled because its TLS Secret cannot be processed: %s",
                    ingress_key,
                    exc,
                )
                METRICS.tls_errors_total.inc()
                METRICS.skipped_total.labels(reason="tls").inc()
                continue

            try:
                ingress_upstreams = self._ingress_upstreams(
                    ingress,
                    redirect_if_not_tls=bool(ingress_creds) or redirect_by_default,
                    named_ports=named_ports,
                )
            except Exception:
                LOGGER.exception("Unexpected error resolving Ingress %s; skipping it", ingress_key)
                METRICS.skipped_total.labels(reason="error").inc()
                continue

            creds.extend(ingress_creds)
            upstreams.extend(ingress_upstreams)

        tls, default_tls_cred, sub_tls_creds = assemble_credentials(default_cred, creds)

        return IngressConfig(
            tls=tls,
            default_tls_cred=default_tls_cred,
            sub_tls_creds=sub_tls_creds,
            upstreams=self._finalize_upstreams(upstreams, redirect_by_default, named_ports),
            tuning_options=self._tuning_options(),
        )

    def _default_tls_cred(self) -> TLSCred | None:
        if not self.default_tls_secret:
            return None
        try:
            return self.tls_resolver.resolve_key(self.default_tls_secret)
        except TLSCredError as exc:
            LOGGER.warning("Default TLS Secret %s is unusable: %s", self.default_tls_secret, exc)
            METRICS.tls_errors_total.inc()
            return None

    def _tuning_options(self) -> tuple[tuple[str, str], ...]:
        if not self.proxy_configmap:
            return ()
        config_map = self.configmaps.get_by_key(self.proxy_configmap)
        if config_map is None:
            LOGGER.debug("ConfigMap %s does not exist", self.proxy_configmap)
            return ()
        data = getattr(config_map, "data", None) or {}
        return tuple(
            sorted((str(k), "" if v is None else str(v)) for k, v in data.items())
        )

    def _ingress_upstreams(
        self,
        ingress: Any,
        redirect_if_not_tls: bool,
        named_ports: NamedPortCache,
    ) -> list[Upstream]:
        ingress_key = object_key(ingress)
        namespace = getattr(ingress.metadata, "namespace", None) or ""
        annotations = annotations_of(ingress)
        default_backend_config, backend_configs = backend_config_mapping(annotations)
        default_path_config, path_configs = path_config_mapping(annotations)

        upstreams: list[Upstream] = []
        for path in ingress_paths(ingress):
            if path.path == "":
                normalized_path = "/"
            elif not path.path.startswith("/"):
                LOGGER.info(
                    "Ingress %s, host %s has a path which does not start with /: %s",
                    ingress_key,
                    path.host,
                    path.path,
                )
                METRICS.skipped_total.labels(reason="path").inc()
                continue
            else:
                normalized_path = path.path

            # Mirrors the proxy's own backend option syntax.
            name = (
                f"{namespace}/{path.service_name},{path.service_port};"
                f"{path.host}{normalized_path}"
            )
            LOGGER.debug(
                "Found rule for upstream name=%s, host=%s, path=%s",
                name,
                path.host,
                normalized_path,
            )

            service_key = f"{namespace}/{path.service_name}"
            service = self.services.get_by_key(service_key)
            if service is None:
                LOGGER.warning("Service %s does not exist", service_key)
                METRICS.skipped_total.labels(reason="service").inc()
                continue

            service_port = find_service_port(service, path.service_port)
            if service_port is None:
                LOGGER.warning(
                    "No port %s found in service %s", path.service_port, service_key
                )
                METRICS.skipped_total.labels(reason="port").inc()
                continue

            backend_config = backend_configs.get(path.service_name, {}).get(
                path.service_port, default_backend_config
            )
            servers = self._endpoint_servers(
                service, service_port, path.service_port, backend_config, named_ports
            )
            if not servers:
                LOGGER.warning(
                    "Service %s does not have any active endpoints for port %s",
                    service_key,
                    path.service_port,
                )
                METRICS.skipped_total.labels(reason="endpoints").inc()
                continue

            path_config = path_configs.get(f"{path.host}{normalized_path}", default_path_config)
            upstreams.append(
                self._upstream(
                    name=name,
                    host=path.host,
                    path=normalized_path,
                    servers=servers,
                    redirect_if_not_tls=redirect_if_not_tls,
                    path_config=path_config,
                )
            )
        return upstreams

    @staticmethod
    def _upstream(
        name: str,
        host: str,
        path: str,
        servers: list[UpstreamServer],
        redirect_if_not_tls: bool,
        path_config: PathConfig | None,
    ) -> Upstream:
        path_config = path_config or PathConfig()
        if path_config.redirect_if_not_tls is not None:
            redirect_if_not_tls = path_config.redirect_if_not_tls
        return Upstream(
            name=name,
            host=host,
            path=path,
            backends=sort_and_dedup_servers(servers),
            redirect_if_not_tls=redirect_if_not_tls,
            read_timeout=path_config.read_timeout,
            write_timeout=path_config.write_timeout,
            mruby=path_config.mruby,
        )

    def _endpoint_servers(
        self,
        service: Any,
        service_port: Any,
        backend_port: str,
        backend_config: BackendConfig | None,
        named_ports: NamedPortCache,
    ) -> list[UpstreamServer]:
        """Cross every matching endpoint port with every address of its subset."""
        service_key = object_key(service)
        endpoints = self.endpoints.get_by_key(service_key)
        if endpoints is None:
            return []

        config = fixup_backend_config(backend_config, service_key, backend_port)
        servers: list[UpstreamServer] = []
        for subset in getattr(endpoints, "subsets", None) or []:
            for endpoint_port in getattr(subset, "ports", None) or []:
                if _protocol(endpoint_port) != PROTOCOL_TCP:
                    continue
                target_port = self._target_port(service, service_port, endpoint_port, named_ports)
                if target_port is None or endpoint_port.port != target_port:
                    LOGGER.debug(
                        "Endpoint port %s does not match service port %s",
                        endpoint_port.port,
                        getattr(service_port, "target_port", None),
                    )
                    continue
                for address in getattr(subset, "addresses", None) or []:
                    servers.append(
                        UpstreamServer(
                            address=address.ip,
                            port=str(target_port),
                            protocol=config.proto or "",
                            tls=bool(config.tls),
                            sni=config.sni or "",
                            dns=bool(config.dns),
                            affinity=config.affinity or "",
                        )
                    )
        return servers

    def _target_port(
        self,
        service: Any,
        service_port: Any,
        endpoint_port: Any,
        named_ports: NamedPortCache,
    ) -> int | None:
        """Return the numeric target port for *endpoint_port*, or None if it cannot be known.

        A symbolic target port is taken from the endpoint port when that port
        carries the service port's name, and otherwise from a container port
        of the same name on a pod selected by the service.
        """
        target_port = getattr(service_port, "target_port", None)
        if target_port is None:
            return service_port.port
        if isinstance(target_port, int):
            return target_port

        target_name = str(target_port)
        if not target_name:
            return None
        if target_name.isdigit():
            return int(target_name)

        port_name = getattr(service_port, "name", None)
        if port_name and getattr(endpoint_port, "name", None) == port_name:
            return endpoint_port.port

        cache_key = (object_key(service), target_name)
        if cache_key not in named_ports:
            named_ports[cache_key] = self._named_port_from_pod(service, target_name)
        return named_ports[cache_key]

    def _named_port_from_pod(self, service: Any, port_name: str) -> int | None:
        """Look up *port_name* among the container ports of the first pod the service selects."""
        service_key = object_key(service)
        namespace = getattr(service.metadata, "namespace", None) or ""
        selector = getattr(service.spec, "selector", None) or {}
        pods = [
            pod
            for pod in self.pods.list()
            if (getattr(pod.metadata, "namespace", None) or "") == namespace
            and selector_matches(selector, getattr(pod.metadata, "labels", None))
        ]
        if not pods:
            LOGGER.warning(
                "Could not find named port %s: no pods available for service %s",
                port_name,
                service_key,
            )
            return None

        pod = pods[0]
        for container in getattr(pod.spec, "containers", None) or []:
            for container_port in getattr(container, "ports", None) or []:
                if (
                    getattr(container_port, "name", None) == port_name
                    and _protocol(container_port) == PROTOCOL_TCP
                ):
                    return container_port.container_port

        LOGGER.warning(
            "Could not find named port %s in pod %s for service %s",
            port_name,
            object_key(pod),
            service_key,
        )
        return None

    def _default_upstream(self, redirect_if_not_tls: bool, named_ports: NamedPortCache) -> Upstream:
        """Build the catch-all upstream from the default backend service.

        Falls back to a static placeholder so the proxy always has somewhere
        to send unmatched requests.
        """
        service_key = self.default_backend_service
        servers: list[UpstreamServer] = []
        service = self.services.get_by_key(service_key)
        if service is None:
            LOGGER.warning("Default backend service %s does not exist", service_key)
        else:
            ports = getattr(service.spec, "ports", None) or []
            if ports:
                servers = self._endpoint_servers(
                    service, ports[0], str(ports[0].port), None, named_ports
                )
            if not servers:
                LOGGER.warning(
                    "Default backend service %s does not have any active endpoints", service_key
                )
        if not servers:
            servers = [placeholder_server()]

        return Upstream(
            name=service_key,
            host="",
            path="/",
            backends=sort_and_dedup_servers(servers),
            redirect_if_not_tls=redirect_if_not_tls,
        )

    def _finalize_upstreams(
        self,
        upstreams: list[Upstream],
        redirect_if_not_tls: bool,
        named_ports: NamedPortCache,
    ) -> tuple[Upstream, ...]:
        """Sort by name, drop repeated names and keep exactly one catch-all upstream."""
        result: list[Upstream] = []
        default_found = False
        for upstream in sorted(upstreams, key=lambda u: u.name):
            if result and result[-1].name == upstream.name:
                LOGGER.warning("Duplicate upstream %s; keeping the first one", upstream.name)
                continue
            if upstream.is_default:
                if default_found:
                    LOGGER.warning(
                        "Upstream %s also claims the default host and path; ignoring it",
                        upstream.name,
                    )
                    continue
                default_found = True
            result.append(upstream)

        if not default_found:
            result.append(self._default_upstream(redirect_if_not_tls, named_ports))
            result.sort(key=lambda u: u.name)
        return tuple(result)
