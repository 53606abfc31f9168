"""Service discovery across remote clusters.

By default every service is synchronized except those in ``kube-system``
and the ``kubernetes`` service itself. Each ClusterLink narrows that with
its filter policy, and the controller can apply a global namespace
allow-list that is checked before any per-cluster rule.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from svclink.clusterlink.registry import ClusterInfo, ClusterRegistry
from svclink.config import DEFAULT_REQUEST_TIMEOUT
from svclink.errors import ListError
from svclink.models import ServiceRecord

logger = logging.getLogger(__name__)


class ServiceDiscoverer:
    """Computes the set of services to synchronize from all remote clusters."""

    def __init__(
        self,
        registry: ClusterRegistry,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._registry = registry
        self._request_timeout = request_timeout

    def discover_services(
        self,
        cluster_infos: dict[str, ClusterInfo],
        included_namespaces: Iterable[str] = (),
    ) -> dict[str, ServiceRecord]:
        """Union the services of every cluster, keyed by ``namespace/name``.

        Clusters are visited in name order, so a record's contributor list
        is sorted and its service snapshot comes from the lexicographically
        smallest contributing cluster.

        A cluster whose listing fails contributes nothing this cycle; the
        failure is written to its ClusterLink status. A successful listing
        clears any earlier error.
        """
        services: dict[str, ServiceRecord] = {}
        allowed = set(included_namespaces)

        for name in sorted(cluster_infos):
            info = cluster_infos[name]
            try:
                found = self._discover_in_cluster(info, allowed)
            except ListError as e:
                logger.error("Failed to discover services in cluster %s: %s", name, e)
                self._registry.record_sync_result(info, e)
                continue

            self._registry.record_sync_result(info, None)
            for key, svc in found.items():
                record = services.get(key)
                if record is None:
                    record = ServiceRecord(
                        namespace=svc.metadata.namespace,
                        name=svc.metadata.name,
                        service=svc,
                    )
                    services[key] = record
                record.clusters.append(name)

        logger.info(
            "Discovered %d services across %d remote clusters",
            len(services), len(cluster_infos),
        )
        return services

    def _discover_in_cluster(
        self, info: ClusterInfo, allowed: set[str],
    ) -> dict[str, Any]:
        """List the services of one cluster that pass every filter."""
        policy = info.link.spec
        excluded_ns = policy.excluded_namespace_set()
        included_ns = policy.included_namespace_set()
        excluded_keys = policy.excluded_service_set()
        excluded_names = policy.excluded_service_name_set()
        core = info.client.core

        try:
            ns_list = core.list_namespace(_request_timeout=self._request_timeout)
        except Exception as e:
            raise ListError(info.name, "namespaces", e) from e

        found: dict[str, Any] = {}
        for ns in ns_list.items:
            namespace = ns.metadata.name

            if allowed and namespace not in allowed:
                logger.debug("Namespace %s skipped as not in included namespaces", namespace)
                continue

            if policy.should_exclude_namespace(namespace, excluded_ns, included_ns):
                logger.debug("Namespace %s excluded from sync in cluster %s", namespace, info.name)
                continue

            try:
                svc_list = core.list_namespaced_service(
                    namespace, _request_timeout=self._request_timeout,
                )
            except Exception as e:
                raise ListError(info.name, f"services in namespace {namespace}", e) from e

            for svc in svc_list.items:
                name = svc.metadata.name
                if policy.should_exclude_service(namespace, name, excluded_keys, excluded_names):
                    logger.debug(
                        "Service %s/%s excluded from sync in cluster %s",
                        namespace, name, info.name,
                    )
                    continue
                found[f"{namespace}/{name}"] = svc
                logger.debug("Found service %s/%s in cluster %s", namespace, name, info.name)

        return found
