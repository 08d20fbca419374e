from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any

from kubernetes.client import CoreV1Api, NetworkingV1Api

from ingresslb.src.config import ControllerConfig
from ingresslb.src.events import Added, Deleted, Event, ResourceKind, Updated
from ingresslb.src.kube import list_sources
from ingresslb.src.metrics import METRICS
from ingresslb.src.mirror import Informer, Store
from ingresslb.src.reference import ReferenceIndex
from ingresslb.src.resolver import ConfigResolver
from ingresslb.src.sink import ProxySink
from ingresslb.src.status import StatusReconciler
from ingresslb.src.tls import TLSCredResolver
from ingresslb.src.workqueue import SYNC_KEY, CoalescingWorkQueue, TokenBucketRateLimiter

CACHE_SYNC_POLL_SECONDS = 0.1
THREAD_JOIN_TIMEOUT_SECONDS = 30


class LoadBalancerController:
    """Keeps the proxy configuration and Ingress status in line with the cluster.

    Wiring, leaves first:

    - one :class:`Informer` per resource kind mirrors objects into a
      :class:`Store` and calls :meth:`handle_event`;
    - :meth:`handle_event` asks the :class:`ReferenceIndex` whether the
      change can matter and enqueues the single sync key if so;
    - one worker drains the :class:`CoalescingWorkQueue` through
      :meth:`sync`, which resolves a fresh :class:`IngressConfig` and hands
      it to the sink;
    - a :class:`StatusReconciler` publishes addresses on its own timer.

    The worker is the only caller of the sink, so resolution and reloads
    never overlap.
    """

    def __init__(
        self,
        config: ControllerConfig,
        core_api: CoreV1Api,
        networking_api: NetworkingV1Api,
        sink: ProxySink,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config
        self.sink = sink
        self.logger = logger or logging.getLogger(__name__)

        self.stores = {kind: Store(kind) for kind in ResourceKind}
        self.ingresses = self.stores[ResourceKind.INGRESS]

        self.references = ReferenceIndex(
            ingresses=self.ingresses,
            services=self.stores[ResourceKind.SERVICE],
            default_backend_service=config.default_backend_service,
            ingress_class=config.ingress_class,
            default_tls_secret=config.default_tls_secret,
            proxy_configmap=config.proxy_configmap,
        )
        self.resolver = ConfigResolver(
            services=self.stores[ResourceKind.SERVICE],
            endpoints=self.stores[ResourceKind.ENDPOINTS],
            pods=self.stores[ResourceKind.POD],
            configmaps=self.stores[ResourceKind.CONFIGMAP],
            tls_resolver=TLSCredResolver(
                self.stores[ResourceKind.SECRET], os.path.join(config.proxy_conf_dir, "tls")
            ),
            default_backend_service=config.default_backend_service,
            ingress_class=config.ingress_class,
            default_tls_secret=config.default_tls_secret,
            proxy_configmap=config.proxy_configmap,
        )
        self.queue = CoalescingWorkQueue(
            TokenBucketRateLimiter(config.reload_rate, config.reload_burst),
            logger=self.logger,
        )
        self.status = StatusReconciler(
            core_api=core_api,
            networking_api=networking_api,
            ingresses=self.ingresses,
            pod_name=config.pod_name,
            pod_namespace=config.pod_namespace,
            ingress_class=config.ingress_class,
            allow_internal_ip=config.allow_internal_ip,
            publish_service=config.publish_service,
            interval_seconds=config.status_update_interval_seconds,
        )
        self.informers = [
            Informer(
                kind,
                list_fn,
                self.stores[kind],
                self.handle_event,
                list_kwargs=kwargs,
                resync_seconds=config.resync_period_seconds,
                logger=self.logger,
            )
            for kind, (list_fn, kwargs) in list_sources(
                core_api, networking_api, config.watch_namespace, config.proxy_configmap
            ).items()
        ]

        self.ready = threading.Event()
        self._external_stop = threading.Event()
        self._status_stop = threading.Event()

    def stop(self) -> None:
        """Request shutdown.  Safe to call any number of times from any thread."""
        if not self._external_stop.is_set():
            self.logger.info("Shutting down controller")
        self._external_stop.set()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _is_relevant(self, kind: ResourceKind, event: Event) -> bool:
        match event:
            case Added(obj=obj):
                return self.references.is_relevant(kind, obj)
            case Updated(old=old, new=new):
                # Periodic resync replays unchanged objects; only Ingresses
                # are allowed through so the whole configuration is rebuilt.
                if kind is not ResourceKind.INGRESS and old == new:
                    return False
                return self.references.is_relevant(kind, new) or self.references.is_relevant(
                    kind, old
                )
            case Deleted():
                return self.references.is_relevant(kind, event.obj)
        return False

    def handle_event(self, kind: ResourceKind, event: Event) -> None:
        """Informer callback.  Never blocks beyond the reference lookup."""
        if not self._is_relevant(kind, event):
            return
        self.logger.debug("%s change is relevant: %s", kind.value, type(event).__name__)
        METRICS.enqueued_total.labels(kind=kind.value).inc()
        self.queue.enqueue(SYNC_KEY)

    def sync(self, key: str) -> None:
        """Resolve a fresh configuration and hand it to the sink.

        Raises on sink failure so the queue schedules a retry.
        """
        started = time.monotonic()
        try:
            model = self.resolver.resolve(self.ingresses.list())
            METRICS.upstreams.set(len(model.upstreams))
            METRICS.tls_credentials.set(
                len(model.sub_tls_creds) + (1 if model.default_tls_cred is not None else 0)
            )
            self.sink.read_config(model, dict(model.tuning_options))
            reloaded = self.sink.check_and_reload(model)
        except Exception:
            METRICS.syncs_total.labels(result="error").inc()
            raise
        finally:
            METRICS.sync_duration_seconds.observe(time.monotonic() - started)

        METRICS.syncs_total.labels(result="success").inc()
        if reloaded:
            METRICS.reloads_total.inc()
            self.logger.info(
                "Proxy configuration reloaded with %d upstreams", len(model.upstreams)
            )
        else:
            self.logger.debug("Sync of %s produced no configuration change", key)

    def _start_thread(self, name: str, target: Any, *args: Any) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, name=name, daemon=True)
        thread.start()
        return thread

    def _wait_for_caches(self, stop: threading.Event, threads: list[threading.Thread]) -> bool:
        while not self._should_stop(stop):
            pending = [inf for inf in self.informers if not inf.store.has_synced()]
            if not pending:
                return True
            for informer, thread in zip(self.informers, threads, strict=True):
                if not thread.is_alive() and not informer.store.has_synced():
                    self.logger.error(
                        "%s informer exited before its cache synced", informer.kind.value
                    )
                    return False
            stop.wait(timeout=CACHE_SYNC_POLL_SECONDS)
        return False

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Run until *shutdown_event* is set or :meth:`stop` is called.

        Shutdown order: stop taking work, let the in-flight sync finish,
        withdraw this replica from Ingress status, then stop the informers
        (status removal still reads the Ingress store).
        """
        stop = shutdown_event or threading.Event()
        self._status_stop.clear()

        informer_stop = threading.Event()
        informer_threads = [
            self._start_thread(f"informer-{inf.kind.value}", inf.run_forever, informer_stop)
            for inf in self.informers
        ]

        worker: threading.Thread | None = None
        status_thread: threading.Thread | None = None
        try:
            if self._wait_for_caches(stop, informer_threads):
                self.logger.info("All caches synced")
                self.ready.set()
                self.queue.enqueue(SYNC_KEY)
                worker = self._start_thread("sync-worker", self.queue.run, self.sync)
                status_thread = self._start_thread(
                    "status", self.status.run_forever, self._status_stop
                )
                while not self._should_stop(stop):
                    stop.wait(timeout=0.5)
        finally:
            self.ready.clear()
            self.queue.shut_down()
            if worker is not None:
                worker.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
            self._status_stop.set()
            if status_thread is not None:
                status_thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
            informer_stop.set()
            for informer in self.informers:
                informer.request_stop()
            for thread in informer_threads:
                thread.join(timeout=THREAD_JOIN_TIMEOUT_SECONDS)
            self.logger.info("Controller stopped")

