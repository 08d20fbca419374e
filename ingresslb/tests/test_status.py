from __future__ import annotations

import threading
import time
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException

from ingresslb.src.events import ResourceKind
from ingresslb.src.status import (
    LoadBalancerAddress,
    StatusReconciler,
    node_address,
    sort_and_dedup_addresses,
    status_addresses,
)
from ingresslb.tests.builders import (
    make_ingress,
    make_lb_status,
    make_node,
    make_pod,
    make_service,
    make_store,
)

LABELS = {"app": "nghttpx-ingress"}


class FakeCoreApi:
    def __init__(
        self,
        pods: list[Any] | None = None,
        nodes: list[Any] | None = None,
        services: list[Any] | None = None,
    ) -> None:
        self.pods = {(p.metadata.namespace, p.metadata.name): p for p in pods or []}
        self.nodes = {n.metadata.name: n for n in nodes or []}
        self.services = {(s.metadata.namespace, s.metadata.name): s for s in services or []}
        self.selectors: list[str] = []
        self.request_timeouts: list[float | None] = []

    def read_namespaced_pod(self, name: str, namespace: str, _request_timeout: float | None = None) -> Any:
        self.request_timeouts.append(_request_timeout)
        try:
            return self.pods[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def list_namespaced_pod(self, namespace: str, label_selector: str) -> SimpleNamespace:
        self.selectors.append(label_selector)
        wanted = dict(pair.split("=", 1) for pair in label_selector.split(","))
        items = [
            pod
            for (ns, _), pod in sorted(self.pods.items())
            if ns == namespace
            and all((pod.metadata.labels or {}).get(k) == v for k, v in wanted.items())
        ]
        return SimpleNamespace(items=items)

    def read_node(self, name: str, _request_timeout: float | None = None) -> Any:
        self.request_timeouts.append(_request_timeout)
        try:
            return self.nodes[name]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None

    def read_namespaced_service(self, name: str, namespace: str) -> Any:
        try:
            return self.services[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found") from None


class FakeNetworkingApi:
    """Keeps Ingress status server side, the way the API server would."""

    def __init__(self, statuses: dict[tuple[str, str], list[dict[str, str]]] | None = None) -> None:
        self.statuses = dict(statuses or {})
        self.patches: list[tuple[str, str, list[dict[str, str]]]] = []
        self.patch_failures = 0
        self.request_timeouts: list[float | None] = []

    def patch_namespaced_ingress_status(
        self, name: str, namespace: str, body: dict[str, Any], _request_timeout: float | None = None
    ) -> None:
        self.request_timeouts.append(_request_timeout)
        if (namespace, name) not in self.statuses:
            raise ApiException(status=404, reason="Not Found")
        if self.patch_failures > 0:
            self.patch_failures -= 1
            raise ApiException(status=500, reason="boom")
        entries = body["status"]["loadBalancer"]["ingress"]
        self.statuses[(namespace, name)] = entries
        self.patches.append((namespace, name, entries))

    def read_namespaced_ingress_status(
        self, name: str, namespace: str, _request_timeout: float | None = None
    ) -> Any:
        self.request_timeouts.append(_request_timeout)
        if (namespace, name) not in self.statuses:
            raise ApiException(status=404, reason="Not Found")
        return SimpleNamespace(status=make_lb_status(self.statuses[(namespace, name)]))


def _replicas(count: int = 3) -> tuple[list[Any], list[Any]]:
    pods = [
        make_pod(f"nghttpx-{i}", "ingress", labels=LABELS, node_name=f"node-{i}")
        for i in range(count)
    ]
    nodes = [
        make_node(f"node-{i}", [("InternalIP", f"10.0.0.{i + 1}"), ("ExternalIP", f"203.0.113.{i + 1}")])
        for i in range(count)
    ]
    return pods, nodes


def _reconciler(
    core_api: FakeCoreApi,
    networking_api: FakeNetworkingApi,
    ingresses: list[Any],
    pod_name: str = "nghttpx-1",
    **kwargs: Any,
) -> StatusReconciler:
    return StatusReconciler(
        core_api=core_api,
        networking_api=networking_api,
        ingresses=make_store(ResourceKind.INGRESS, ingresses),
        pod_name=pod_name,
        pod_namespace="ingress",
        ingress_class="nghttpx",
        removal_poll_interval_seconds=0.01,
        **kwargs,
    )


class TestNodeAddress:
    def test_prefers_external_ip(self) -> None:
        node = make_node("n", [("InternalIP", "10.0.0.1"), ("ExternalIP", "203.0.113.1")])
        assert node_address(node) == "203.0.113.1"

    def test_internal_ip_only_when_allowed(self) -> None:
        node = make_node("n", [("InternalIP", "10.0.0.1")])
        assert node_address(node) is None
        assert node_address(node, allow_internal_ip=True) == "10.0.0.1"

    def test_legacy_host_ip_accepted(self) -> None:
        node = make_node("n", [("Hostname", "n"), ("LegacyHostIP", "198.51.100.7")])
        assert node_address(node) == "198.51.100.7"


def test_addresses_split_into_ip_and_hostname() -> None:
    assert LoadBalancerAddress.from_string("203.0.113.1").to_dict() == {"ip": "203.0.113.1"}
    assert LoadBalancerAddress.from_string("2001:db8::1").to_dict() == {"ip": "2001:db8::1"}
    assert LoadBalancerAddress.from_string("lb.example.com").to_dict() == {"hostname": "lb.example.com"}


def test_sort_and_dedup_addresses() -> None:
    addresses = [
        LoadBalancerAddress(ip="203.0.113.2"),
        LoadBalancerAddress(hostname="lb.example.com"),
        LoadBalancerAddress(ip="203.0.113.1"),
        LoadBalancerAddress(ip="203.0.113.2"),
    ]

    assert sort_and_dedup_addresses(addresses) == [
        LoadBalancerAddress(hostname="lb.example.com"),
        LoadBalancerAddress(ip="203.0.113.1"),
        LoadBalancerAddress(ip="203.0.113.2"),
    ]


class TestUpdateOnce:
    def test_publishes_every_replica_address(self) -> None:
        pods, nodes = _replicas()
        ingress = make_ingress("web", rules=[("a.com", "/", "web", 80)])
        networking = FakeNetworkingApi({("default", "web"): []})
        core = FakeCoreApi(pods, nodes)

        _reconciler(core, networking, [ingress]).update_once()

        assert networking.statuses[("default", "web")] == [
            {"ip": "203.0.113.1"},
            {"ip": "203.0.113.2"},
            {"ip": "203.0.113.3"},
        ]
        assert core.selectors == ["app=nghttpx-ingress"]

    def test_skips_ingress_already_up_to_date(self) -> None:
        pods, nodes = _replicas(1)
        ingress = make_ingress("web", status=[{"ip": "203.0.113.1"}])
        networking = FakeNetworkingApi({("default", "web"): [{"ip": "203.0.113.1"}]})

        _reconciler(FakeCoreApi(pods, nodes), networking, [ingress], pod_name="nghttpx-0").update_once()

        assert networking.patches == []

    def test_skips_ingress_of_other_class(self) -> None:
        pods, nodes = _replicas(1)
        ingress = make_ingress("web", annotations={"kubernetes.io/ingress.class": "nginx"})
        networking = FakeNetworkingApi({("default", "web"): []})

        _reconciler(FakeCoreApi(pods, nodes), networking, [ingress], pod_name="nghttpx-0").update_once()

        assert networking.patches == []

    def test_unresolvable_and_terminating_pods_are_skipped(self) -> None:
        pods, nodes = _replicas(3)
        pods[2].metadata.deletion_timestamp = "2026-01-01T00:00:00Z"
        nodes = nodes[:1] + [make_node("node-1", [("InternalIP", "10.0.0.2")])]
        ingress = make_ingress("web")
        networking = FakeNetworkingApi({("default", "web"): []})

        _reconciler(FakeCoreApi(pods, nodes), networking, [ingress], pod_name="nghttpx-0").update_once()

        assert networking.statuses[("default", "web")] == [{"ip": "203.0.113.1"}]

    def test_failed_patch_is_not_fatal(self) -> None:
        pods, nodes = _replicas(1)
        ingresses = [make_ingress("a"), make_ingress("b")]
        networking = FakeNetworkingApi({("default", "a"): [], ("default", "b"): []})
        networking.patch_failures = 1

        _reconciler(FakeCoreApi(pods, nodes), networking, ingresses, pod_name="nghttpx-0").update_once()

        assert networking.statuses[("default", "a")] == []
        assert networking.statuses[("default", "b")] == [{"ip": "203.0.113.1"}]

    def test_missing_self_pod_patches_nothing(self) -> None:
        ingress = make_ingress("web")
        networking = FakeNetworkingApi({("default", "web"): []})

        _reconciler(FakeCoreApi(), networking, [ingress]).update_once()

        assert networking.patches == []

    def test_publish_service_addresses(self) -> None:
        service = make_service(
            "nghttpx",
            "ingress",
            external_ips=["198.51.100.9"],
            status=[{"hostname": "lb.example.com"}, {"ip": "203.0.113.50"}],
        )
        ingress = make_ingress("web")
        networking = FakeNetworkingApi({("default", "web"): []})
        core = FakeCoreApi(services=[service])

        _reconciler(core, networking, [ingress], publish_service="ingress/nghttpx").update_once()

        assert networking.statuses[("default", "web")] == [
            {"hostname": "lb.example.com"},
            {"ip": "198.51.100.9"},
            {"ip": "203.0.113.50"},
        ]


class TestRemoveSelfAddress:
    def test_only_own_address_is_removed(self) -> None:
        pods, nodes = _replicas(3)
        all_three = [{"ip": "203.0.113.1"}, {"ip": "203.0.113.2"}, {"ip": "203.0.113.3"}]
        ingresses = [make_ingress("web", status=all_three), make_ingress("api", status=all_three)]
        networking = FakeNetworkingApi(
            {("default", "web"): list(all_three), ("default", "api"): list(all_three)}
        )

        _reconciler(FakeCoreApi(pods, nodes), networking, ingresses, pod_name="nghttpx-1").remove_self_address()

        for key in [("default", "web"), ("default", "api")]:
            assert networking.statuses[key] == [{"ip": "203.0.113.1"}, {"ip": "203.0.113.3"}]

    def test_uses_fresh_status_not_the_mirror(self) -> None:
        pods, nodes = _replicas(3)
        ingress = make_ingress("web", status=[])
        networking = FakeNetworkingApi(
            {("default", "web"): [{"ip": "203.0.113.2"}, {"ip": "203.0.113.3"}]}
        )

        _reconciler(FakeCoreApi(pods, nodes), networking, [ingress]).remove_self_address()

        assert networking.statuses[("default", "web")] == [{"ip": "203.0.113.3"}]

    def test_retries_failed_patch_within_window(self) -> None:
        pods, nodes = _replicas(2)
        ingress = make_ingress("web")
        networking = FakeNetworkingApi({("default", "web"): [{"ip": "203.0.113.1"}, {"ip": "203.0.113.2"}]})
        networking.patch_failures = 2

        _reconciler(FakeCoreApi(pods, nodes), networking, [ingress]).remove_self_address()

        assert networking.statuses[("default", "web")] == [{"ip": "203.0.113.1"}]

    def test_gives_up_after_window(self) -> None:
        pods, nodes = _replicas(2)
        ingress = make_ingress("web")
        networking = FakeNetworkingApi({("default", "web"): [{"ip": "203.0.113.2"}]})
        networking.patch_failures = 10_000
        reconciler = _reconciler(
            FakeCoreApi(pods, nodes), networking, [ingress], removal_timeout_seconds=0.05
        )

        reconciler.remove_self_address()

        assert networking.statuses[("default", "web")] == [{"ip": "203.0.113.2"}]

    def test_deleted_ingress_is_ignored(self) -> None:
        pods, nodes = _replicas(2)
        ingress = make_ingress("gone")
        networking = FakeNetworkingApi()

        _reconciler(FakeCoreApi(pods, nodes), networking, [ingress]).remove_self_address()

        assert networking.patches == []

    def test_publish_service_leaves_status_alone(self) -> None:
        ingress = make_ingress("web")
        networking = FakeNetworkingApi({("default", "web"): [{"ip": "203.0.113.2"}]})

        _reconciler(
            FakeCoreApi(), networking, [ingress], publish_service="ingress/nghttpx"
        ).remove_self_address()

        assert networking.patches == []


def test_run_forever_deregisters_on_shutdown() -> None:
    pods, nodes = _replicas(2)
    ingress = make_ingress("web")
    networking = FakeNetworkingApi({("default", "web"): [{"ip": "203.0.113.1"}, {"ip": "203.0.113.2"}]})
    reconciler = _reconciler(FakeCoreApi(pods, nodes), networking, [ingress], interval_seconds=3600)
    shutdown = threading.Event()
    shutdown.set()

    reconciler.run_forever(shutdown)

    assert networking.statuses[("default", "web")] == [{"ip": "203.0.113.1"}]


class StalledNetworkingApi(FakeNetworkingApi):
    """Reads hang far longer than the removal window."""

    def read_namespaced_ingress_status(
        self, name: str, namespace: str, _request_timeout: float | None = None
    ) -> Any:
        self.request_timeouts.append(_request_timeout)
        threading.Event().wait(timeout=5)
        return super().read_namespaced_ingress_status(name, namespace)


def test_removal_is_bounded_when_the_api_stalls() -> None:
    pods, nodes = _replicas(2)
    ingress = make_ingress("web")
    networking = StalledNetworkingApi({("default", "web"): [{"ip": "203.0.113.2"}]})
    reconciler = _reconciler(
        FakeCoreApi(pods, nodes), networking, [ingress], removal_timeout_seconds=0.2
    )

    started = time.monotonic()
    reconciler.remove_self_address()
    elapsed = time.monotonic() - started

    assert elapsed < 1.0
    assert networking.patches == []


def test_removal_calls_carry_request_timeouts_within_window() -> None:
    pods, nodes = _replicas(2)
    ingress = make_ingress("web")
    core = FakeCoreApi(pods, nodes)
    networking = FakeNetworkingApi({("default", "web"): [{"ip": "203.0.113.1"}, {"ip": "203.0.113.2"}]})

    _reconciler(core, networking, [ingress]).remove_self_address()

    timeouts = core.request_timeouts + networking.request_timeouts
    assert len(core.request_timeouts) == 2
    assert len(networking.request_timeouts) == 2
    assert all(t is not None and 0 < t <= 2.0 for t in timeouts)


def test_run_forever_publishes_before_first_interval() -> None:
    pods, nodes = _replicas(2)
    ingress = make_ingress("web")
    networking = FakeNetworkingApi({("default", "web"): []})
    reconciler = _reconciler(FakeCoreApi(pods, nodes), networking, [ingress], interval_seconds=3600)
    shutdown = threading.Event()
    runner = threading.Thread(target=reconciler.run_forever, args=(shutdown,), daemon=True)

    runner.start()
    deadline = time.monotonic() + 2
    while not networking.patches and time.monotonic() < deadline:
        time.sleep(0.01)
    shutdown.set()
    runner.join(timeout=5)

    assert networking.patches[0] == (
        "default",
        "web",
        [{"ip": "203.0.113.1"}, {"ip": "203.0.113.2"}],
    )
    assert not runner.is_alive()
    assert networking.statuses[("default", "web")] == [{"ip": "203.0.113.1"}]


def test_status_addresses_preserve_stored_order() -> None:
    ingress = make_ingress("web", status=[{"ip": "203.0.113.2"}, {"hostname": "a.example.com"}])

    assert status_addresses(ingress) == [
        LoadBalancerAddress(ip="203.0.113.2"),
        LoadBalancerAddress(hostname="a.example.com"),
    ]


@pytest.mark.parametrize("interval", [1, 30])
def test_next_interval_is_jittered_within_bounds(interval: int) -> None:
    reconciler = _reconciler(FakeCoreApi(), FakeNetworkingApi(), [], interval_seconds=interval)

    for _ in range(20):
        assert interval <= reconciler.next_interval() < 2 * interval
