"""Endpoint aggregation from remote EndpointSlices.

Collects the ready endpoints of a service from every cluster that
contributes it. EndpointSlices that svclink itself wrote into a cluster
are never read back: a cluster running svclink would otherwise feed
mirrored endpoints into the next cluster's sync, and around again.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from svclink.clusterlink.registry import ClusterInfo
from svclink.config import (
    CLUSTER_LABEL,
    DEFAULT_REQUEST_TIMEOUT,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SERVICE_NAME_LABEL,
)
from svclink.errors import ListError
from svclink.models import EndpointGroup

logger = logging.getLogger(__name__)


def is_managed_slice(slice_: Any) -> bool:
    """True if the EndpointSlice carries svclink's own marker labels."""
    labels = (slice_.metadata.labels if slice_.metadata else None) or {}
    return CLUSTER_LABEL in labels or labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE


def is_ready(endpoint: Any) -> bool:
    """True only when the endpoint's ready condition is explicitly true."""
    conditions = endpoint.conditions
    return conditions is not None and conditions.ready is True


class EndpointAggregator:
    """Builds one :class:`EndpointGroup` per contributing cluster."""

    def __init__(self, request_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        self._request_timeout = request_timeout

    def aggregate(
        self,
        namespace: str,
        service: str,
        clusters: Iterable[str],
        cluster_infos: dict[str, ClusterInfo],
    ) -> list[EndpointGroup]:
        """Collect ready endpoints of *namespace*/*service* per cluster.

        Clusters missing from *cluster_infos* are skipped. A cluster with
        no ready endpoints, or whose listing fails, yields no group.
        """
        groups: list[EndpointGroup] = []
        for cluster in clusters:
            info = cluster_infos.get(cluster)
            if info is None:
                logger.debug("Cluster %s not found or not enabled, skipping", cluster)
                continue

            try:
                group = self._from_cluster(info, namespace, service)
            except ListError as e:
                logger.warning(
                    "Failed to get endpoints from cluster %s for service %s/%s: %s",
                    cluster, namespace, service, e,
                )
                continue

            if not group.endpoints:
                continue
            groups.append(group)
            logger.debug(
                "Aggregated %d endpoints from cluster %s for service %s/%s",
                len(group.endpoints), cluster, namespace, service,
            )
        return groups

    def _from_cluster(self, info: ClusterInfo, namespace: str, service: str) -> EndpointGroup:
        try:
            slices = info.client.discovery.list_namespaced_endpoint_slice(
                namespace,
                label_selector=f"{SERVICE_NAME_LABEL}={service}",
                _request_timeout=self._request_timeout,
            )
        except Exception as e:
            raise ListError(info.name, f"EndpointSlices for {namespace}/{service}", e) from e

        group = EndpointGroup(cluster=info.name)
        native: list[tuple[Any, list[Any]]] = []
        for slice_ in slices.items:
            if is_managed_slice(slice_):
                logger.debug(
                    "Skipping svclink managed EndpointSlice %s/%s in cluster %s",
                    namespace, slice_.metadata.name, info.name,
                )
                continue
            native.append((slice_, [ep for ep in slice_.endpoints or [] if is_ready(ep)]))

        # Mixed address families cannot share one EndpointSlice: the first
        # family with a ready endpoint wins.
        address_type = next(
            (s.address_type for s, ready in native if ready and s.address_type), None,
        )
        if address_type is None:
            address_type = group.address_type

        for slice_, ready in native:
            if slice_.address_type and slice_.address_type != address_type:
                logger.debug(
                    "Skipping %s EndpointSlice %s/%s in cluster %s (collecting %s)",
                    slice_.address_type, namespace, slice_.metadata.name, info.name, address_type,
                )
                continue
            group.endpoints.extend(ready)
            if not group.ports and slice_.ports:
                group.ports = list(slice_.ports)

        group.address_type = address_type
        return group
