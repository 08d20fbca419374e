from __future__ import annotations

from types import SimpleNamespace
from typing import Any

from ingresslb.src.events import ResourceKind
from ingresslb.src.reference import ReferenceIndex, ingress_paths
from ingresslb.tests.builders import (
    make_config_map,
    make_endpoints,
    make_ingress,
    make_pod,
    make_secret,
    make_service,
    make_store,
)


def _index(ingresses: list[Any], services: list[Any] | None = None) -> ReferenceIndex:
    return ReferenceIndex(
        ingresses=make_store(ResourceKind.INGRESS, ingresses),
        services=make_store(ResourceKind.SERVICE, services or []),
        default_backend_service="kube-system/default-http-backend",
        ingress_class="nghttpx",
        default_tls_secret="kube-system/default-tls",
        proxy_configmap="kube-system/nghttpx-config",
    )


def test_ingress_paths_render_number_or_name() -> None:
    ingress = make_ingress("web", rules=[("a.com", "/", "web", 80), ("a.com", "/api", "api", "http")])

    paths = list(ingress_paths(ingress))

    assert [(p.host, p.path, p.service_name, p.service_port) for p in paths] == [
        ("a.com", "/", "web", "80"),
        ("a.com", "/api", "api", "http"),
    ]


def test_ingress_paths_skip_rules_without_http() -> None:
    ingress = make_ingress("web")
    ingress.spec.rules = [SimpleNamespace(host="a.com", http=None)]

    assert list(ingress_paths(ingress)) == []


class TestRelevance:
    def setup_method(self) -> None:
        self.ingress = make_ingress(
            "web", rules=[("a.com", "/", "web", 80)], tls_secrets=["web-tls"]
        )
        self.foreign = make_ingress(
            "other",
            rules=[("b.com", "/", "other", 80)],
            tls_secrets=["other-tls"],
            annotations={"kubernetes.io/ingress.class": "nginx"},
        )
        self.services = [
            make_service("web", ports=[(None, 80, 8080)], selector={"app": "web"}),
            make_service("other", ports=[(None, 80, 8080)], selector={"app": "other"}),
            make_service(
                "default-http-backend",
                namespace="kube-system",
                ports=[(None, 80, 8080)],
                selector={"app": "default"},
            ),
        ]
        self.index = _index([self.ingress, self.foreign], self.services)

    def test_ingress_class_filter(self) -> None:
        assert self.index.is_relevant(ResourceKind.INGRESS, self.ingress)
        assert not self.index.is_relevant(ResourceKind.INGRESS, self.foreign)

    def test_endpoints_of_referenced_service(self) -> None:
        assert self.index.is_relevant(ResourceKind.ENDPOINTS, make_endpoints("web"))
        assert self.index.is_relevant(
            ResourceKind.ENDPOINTS, make_endpoints("default-http-backend", "kube-system")
        )

    def test_endpoints_only_referenced_by_foreign_class(self) -> None:
        assert not self.index.is_relevant(ResourceKind.ENDPOINTS, make_endpoints("other"))

    def test_endpoints_in_other_namespace(self) -> None:
        assert not self.index.is_relevant(ResourceKind.ENDPOINTS, make_endpoints("web", "prod"))

    def test_service_kind_shares_endpoints_rule(self) -> None:
        assert self.index.is_relevant(ResourceKind.SERVICE, self.services[0])
        assert not self.index.is_relevant(ResourceKind.SERVICE, self.services[1])

    def test_secrets(self) -> None:
        assert self.index.is_relevant(ResourceKind.SECRET, make_secret("web-tls"))
        assert self.index.is_relevant(ResourceKind.SECRET, make_secret("default-tls", "kube-system"))
        assert not self.index.is_relevant(ResourceKind.SECRET, make_secret("other-tls"))
        assert not self.index.is_relevant(ResourceKind.SECRET, make_secret("unrelated"))

    def test_pods_matching_referenced_service_selector(self) -> None:
        assert self.index.is_relevant(ResourceKind.POD, make_pod("web-1", labels={"app": "web"}))
        assert self.index.is_relevant(
            ResourceKind.POD, make_pod("d-1", namespace="kube-system", labels={"app": "default"})
        )
        assert not self.index.is_relevant(
            ResourceKind.POD, make_pod("other-1", labels={"app": "other"})
        )
        assert not self.index.is_relevant(ResourceKind.POD, make_pod("bare", labels=None))

    def test_default_service_selector_only_matches_its_own_namespace(self) -> None:
        assert not self.index.is_relevant(
            ResourceKind.POD, make_pod("d-2", namespace="elsewhere", labels={"app": "default"})
        )

    def test_configmap_matches_configured_identity_only(self) -> None:
        assert self.index.is_relevant(
            ResourceKind.CONFIGMAP, make_config_map("nghttpx-config", "kube-system", {})
        )
        assert not self.index.is_relevant(
            ResourceKind.CONFIGMAP, make_config_map("nghttpx-config", "default", {})
        )


def test_lookup_failure_is_not_relevant() -> None:
    class BrokenStore:
        def list(self) -> list[Any]:
            raise RuntimeError("cache unavailable")

        def get_by_key(self, key: str) -> Any:
            raise RuntimeError("cache unavailable")

    index = ReferenceIndex(
        ingresses=BrokenStore(),  # type: ignore[arg-type]
        services=BrokenStore(),  # type: ignore[arg-type]
        default_backend_service="kube-system/default-http-backend",
        ingress_class="nghttpx",
    )

    assert index.is_relevant(ResourceKind.ENDPOINTS, make_endpoints("web")) is False
    assert index.is_relevant(ResourceKind.POD, make_pod("web-1", labels={"app": "web"})) is False
