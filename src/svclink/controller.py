"""The periodic svclink sync loop.

Each cycle runs, strictly in order:

  1. ClusterRegistry.list_cluster_info()
  2. ServiceDiscoverer.discover_services()
  3. Local Service materialization, or the local-existence filter
  4. Per service: EndpointAggregator.aggregate() then SliceReconciler.reconcile()
  5. Sweep of managed slices whose service was not synced this cycle

Nothing survives between cycles except the ClusterLink status written to
the cluster and the last cycle report kept for the health endpoint.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any

from kubernetes import client, config

from svclink.aggregation.aggregator import EndpointAggregator
from svclink.clusterlink.registry import ClusterInfo, ClusterRegistry
from svclink.config import SvclinkConfig
from svclink.discovery.discoverer import ServiceDiscoverer
from svclink.errors import ListError, RegistryListError
from svclink.models import CycleReport, ServiceRecord
from svclink.reconcile.services import ServiceMaterializer
from svclink.reconcile.slices import SliceReconciler

logger = logging.getLogger(__name__)


class CycleCancelled(Exception):
    """Raised internally when shutdown is requested mid-cycle."""


def build_local_api_client(kubeconfig: str | None = None) -> Any:
    """API client for the local cluster: kubeconfig file if given, else in-cluster."""
    if kubeconfig:
        return config.new_client_from_config(config_file=kubeconfig)
    config.load_incluster_config()
    return client.ApiClient()


class Controller:
    """Runs sync cycles, one at a time."""

    def __init__(
        self,
        cfg: SvclinkConfig,
        registry: ClusterRegistry,
        discoverer: ServiceDiscoverer,
        aggregator: EndpointAggregator,
        reconciler: SliceReconciler,
        materializer: ServiceMaterializer,
        _clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._cfg = cfg
        self._registry = registry
        self._discoverer = discoverer
        self._aggregator = aggregator
        self._reconciler = reconciler
        self._materializer = materializer
        self._clock = _clock or (lambda: datetime.now(tz=UTC))
        self._cycle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._last_report: CycleReport | None = None

    @classmethod
    def from_config(cls, cfg: SvclinkConfig, api_client: Any = None) -> Controller:
        """Wire every component against the local cluster."""
        if api_client is None:
            api_client = build_local_api_client(cfg.kubeconfig)
        timeout = cfg.request_timeout
        core = client.CoreV1Api(api_client)
        discovery = client.DiscoveryV1Api(api_client)
        registry = ClusterRegistry(client.CustomObjectsApi(api_client), request_timeout=timeout)
        return cls(
            cfg,
            registry=registry,
            discoverer=ServiceDiscoverer(registry, request_timeout=timeout),
            aggregator=EndpointAggregator(request_timeout=timeout),
            reconciler=SliceReconciler(core, discovery, request_timeout=timeout),
            materializer=ServiceMaterializer(core, request_timeout=timeout),
        )

    @property
    def config(self) -> SvclinkConfig:
        return self._cfg

    @property
    def last_report(self) -> CycleReport | None:
        """Report of the most recent cycle that ran, or None before the first."""
        with self._state_lock:
            return self._last_report

    def run(self, stop: threading.Event) -> None:
        """Sync immediately, then every ``sync_interval`` until *stop* is set."""
        logger.info("Starting svclink controller (sync interval %.1fs)", self._cfg.sync_interval)
        while not stop.is_set():
            try:
                self.sync_once(stop)
            except Exception:
                logger.exception("Unexpected error in sync cycle")
            stop.wait(self._cfg.sync_interval)
        logger.info("Shutting down svclink controller")

    def sync_once(self, stop: threading.Event | None = None) -> CycleReport:
        """Run one cycle. A call overlapping a running cycle does nothing."""
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Previous sync cycle still running, skipping")
            now = self._clock()
            return CycleReport(started_at=now, finished_at=now, skipped=True)
        try:
            report = self._sync(stop or threading.Event())
        finally:
            self._cycle_lock.release()

        with self._state_lock:
            self._last_report = report
        return report

    # --- Private: cycle phases ---

    def _sync(self, stop: threading.Event) -> CycleReport:
        report = CycleReport(started_at=self._clock())
        logger.info("Starting sync cycle")

        try:
            infos = self._registry.list_cluster_info()
        except RegistryListError as e:
            logger.error("Failed to list cluster info: %s", e)
            report.errors.append(str(e))
            report.aborted = True
            report.finished_at = self._clock()
            return report

        report.clusters = len(infos)
        try:
            self._run_phases(infos, stop, report)
        except CycleCancelled:
            logger.info("Sync cycle cancelled")
            report.aborted = True
        finally:
            self._registry.close(infos)
            report.finished_at = self._clock()

        if report.errors:
            logger.error(
                "Sync cycle completed with %d errors: %s",
                len(report.errors), "; ".join(report.errors),
            )
        elif not report.aborted:
            logger.info("Sync cycle completed, processed %d services", report.services_synced)
        return report

    def _run_phases(
        self, infos: dict[str, ClusterInfo], stop: threading.Event, report: CycleReport,
    ) -> None:
        _check(stop)
        logger.info("Discovering services across clusters")
        services = self._discoverer.discover_services(infos, self._cfg.included_namespaces)
        report.services_discovered = len(services)

        _check(stop)
        if self._cfg.sync_services_to_local_cluster:
            logger.info("Syncing services to local cluster")
            errors = self._materializer.materialize(services)
            report.errors.extend(str(e) for e in errors)
        else:
            try:
                services = self._materializer.filter_existing(
                    services, self._cfg.included_namespaces,
                )
            except ListError as e:
                logger.error("Failed to filter services: %s", e)
                report.errors.append(str(e))
                report.aborted = True
                return

        _check(stop)
        logger.info("Aggregating endpoints and updating EndpointSlices")
        self._sync_services(services, infos, stop, report)

        _check(stop)
        errors = self._reconciler.cleanup_stale(set(services))
        report.errors.extend(str(e) for e in errors)

    def _sync_services(
        self,
        services: dict[str, ServiceRecord],
        infos: dict[str, ClusterInfo],
        stop: threading.Event,
        report: CycleReport,
    ) -> None:
        keys = sorted(services)
        if self._cfg.max_workers <= 1:
            for key in keys:
                _check(stop)
                self._collect(key, self._sync_service(services[key], infos), report)
            return

        pool = ThreadPoolExecutor(
            max_workers=self._cfg.max_workers, thread_name_prefix="svclink-sync",
        )
        try:
            futures = {key: pool.submit(self._sync_service, services[key], infos) for key in keys}
            for key in keys:
                _check(stop)
                self._collect(key, futures[key].result(), report)
        finally:
            pool.shutdown(wait=True, cancel_futures=True)

    def _sync_service(
        self, record: ServiceRecord, infos: dict[str, ClusterInfo],
    ) -> list[Exception]:
        logger.debug(
            "Syncing service %s from clusters: %s", record.key, ", ".join(record.clusters),
        )
        try:
            groups = self._aggregator.aggregate(
                record.namespace, record.name, record.clusters, infos,
            )
            return self._reconciler.reconcile(record.namespace, record.name, groups)
        except Exception as e:
            logger.exception("Unexpected error syncing service %s", record.key)
            return [e]

    @staticmethod
    def _collect(key: str, errors: list[Exception], report: CycleReport) -> None:
        report.services_synced += 1
        report.errors.extend(f"failed to sync service {key}: {e}" for e in errors)


def _check(stop: threading.Event) -> None:
    if stop.is_set():
        raise CycleCancelled
