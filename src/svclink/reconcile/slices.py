"""Reconciliation of managed EndpointSlices in the local cluster.

For every remote cluster contributing endpoints to a service, one
EndpointSlice named ``<service>-svclink-<cluster>`` is kept in the
service's namespace, owned by the local Service so that deleting the
Service garbage-collects its slices. Slices for clusters that stopped
contributing are deleted.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from svclink.config import (
    CLUSTER_LABEL,
    DEFAULT_REQUEST_TIMEOUT,
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    SERVICE_NAME_LABEL,
    SLICE_NAME_SEPARATOR,
)
from svclink.errors import ListError, MissingParentError, ReconcileWriteError
from svclink.models import EndpointGroup

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 63
_HASH_LENGTH = 10


def slice_name(service: str, cluster: str) -> str:
    """Deterministic name of the managed slice for (*service*, *cluster*).

    Names over 63 characters are shortened and suffixed with a hash of the
    full name, so two long pairs sharing a prefix never map to one slice.
    """
    name = f"{service}-{SLICE_NAME_SEPARATOR}-{cluster}"
    if len(name) <= MAX_NAME_LENGTH:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()[:_HASH_LENGTH]
    head = name[: MAX_NAME_LENGTH - _HASH_LENGTH - 1].rstrip("-.")
    return f"{head}-{digest}"


def managed_labels(service: str, cluster: str) -> dict[str, str]:
    return {
        SERVICE_NAME_LABEL: service,
        CLUSTER_LABEL: cluster,
        MANAGED_BY_LABEL: MANAGED_BY_VALUE,
    }


def orphan_selector(service: str) -> str:
    """Label selector matching every managed slice of *service*, any cluster."""
    return f"{SERVICE_NAME_LABEL}={service},{MANAGED_BY_LABEL}={MANAGED_BY_VALUE},{CLUSTER_LABEL}"


def _plain(items: list[Any] | None) -> list[Any]:
    return [item.to_dict() if hasattr(item, "to_dict") else item for item in items or []]


class SliceReconciler:
    """Creates, updates and garbage-collects managed EndpointSlices.

    Args:
        core_api: ``CoreV1Api`` for the local cluster (parent Service reads).
        discovery_api: ``DiscoveryV1Api`` for the local cluster.
        request_timeout: Timeout applied to every API call, in seconds.
    """

    def __init__(
        self,
        core_api: Any,
        discovery_api: Any,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> None:
        self._core = core_api
        self._discovery = discovery_api
        self._request_timeout = request_timeout

    def reconcile(
        self,
        namespace: str,
        service: str,
        groups: list[EndpointGroup],
    ) -> list[Exception]:
        """Converge the managed slices of *namespace*/*service* on *groups*.

        Returns every failure instead of raising, so one cluster's error
        never blocks another's update or the orphan cleanup.
        """
        errors: list[Exception] = []

        parent: Any = None
        parent_missing = False
        read_error: Exception | None = None
        if groups:
            try:
                parent = self._core.read_namespaced_service(
                    service, namespace, _request_timeout=self._request_timeout,
                )
            except ApiException as e:
                if e.status == 404:
                    parent_missing = True
                else:
                    read_error = ReconcileWriteError("get service", f"{namespace}/{service}", e)
            except Exception as e:
                read_error = ReconcileWriteError("get service", f"{namespace}/{service}", e)

        for group in groups:
            if parent_missing or read_error is not None:
                err = read_error or MissingParentError(namespace, service, group.cluster)
                logger.error(
                    "Failed to update EndpointSlice for cluster %s, service %s/%s: %s",
                    group.cluster, namespace, service, err,
                )
                errors.append(err)
                continue
            try:
                self._apply(namespace, service, group, parent)
            except ReconcileWriteError as e:
                logger.error(
                    "Failed to update EndpointSlice for cluster %s, service %s/%s: %s",
                    group.cluster, namespace, service, e,
                )
                errors.append(e)

        active = {group.cluster for group in groups}
        errors.extend(self._cleanup_orphans(namespace, service, active))
        return errors

    def _desired(
        self, namespace: str, service: str, group: EndpointGroup, parent: Any,
    ) -> Any:
        owner = client.V1OwnerReference(
            api_version="v1",
            kind="Service",
            name=parent.metadata.name,
            uid=parent.metadata.uid,
        )
        return client.V1EndpointSlice(
            api_version="discovery.k8s.io/v1",
            kind="EndpointSlice",
            metadata=client.V1ObjectMeta(
                name=slice_name(service, group.cluster),
                namespace=namespace,
                labels=managed_labels(service, group.cluster),
                owner_references=[owner],
            ),
            address_type=group.address_type,
            endpoints=list(group.endpoints),
            ports=list(group.ports) or None,
        )

    def _apply(self, namespace: str, service: str, group: EndpointGroup, parent: Any) -> None:
        desired = self._desired(namespace, service, group, parent)
        name = desired.metadata.name
        ref = f"EndpointSlice {namespace}/{name}"

        try:
            existing = self._discovery.read_namespaced_endpoint_slice(
                name, namespace, _request_timeout=self._request_timeout,
            )
        except ApiException as e:
            if e.status != 404:
                raise ReconcileWriteError("get", ref, e) from e
            existing = None
        except Exception as e:
            raise ReconcileWriteError("get", ref, e) from e

        if existing is not None and existing.address_type != desired.address_type:
            # addressType is immutable; the slice has to be replaced wholesale.
            self._delete(namespace, name)
            existing = None

        if existing is None:
            try:
                self._discovery.create_namespaced_endpoint_slice(
                    namespace, desired, _request_timeout=self._request_timeout,
                )
            except Exception as e:
                raise ReconcileWriteError("create", ref, e) from e
            logger.info(
                "Created EndpointSlice %s/%s for cluster %s with %d endpoints",
                namespace, name, group.cluster, len(group.endpoints),
            )
            return

        labels = dict(existing.metadata.labels or {})
        unchanged = (
            _plain(existing.endpoints) == _plain(desired.endpoints)
            and _plain(existing.ports) == _plain(desired.ports)
            and all(labels.get(k) == v for k, v in desired.metadata.labels.items())
        )
        if unchanged:
            logger.debug("EndpointSlice %s/%s is up to date", namespace, name)
            return

        labels.update(desired.metadata.labels)
        existing.metadata.labels = labels
        existing.endpoints = desired.endpoints
        existing.ports = desired.ports
        try:
            self._discovery.replace_namespaced_endpoint_slice(
                name, namespace, existing, _request_timeout=self._request_timeout,
            )
        except Exception as e:
            raise ReconcileWriteError("update", ref, e) from e
        logger.debug(
            "Updated EndpointSlice %s/%s for cluster %s with %d endpoints",
            namespace, name, group.cluster, len(group.endpoints),
        )

    def _cleanup_orphans(
        self, namespace: str, service: str, active: set[str],
    ) -> list[Exception]:
        """Delete managed slices of *service* whose cluster is not in *active*."""
        try:
            slices = self._discovery.list_namespaced_endpoint_slice(
                namespace,
                label_selector=orphan_selector(service),
                _request_timeout=self._request_timeout,
            )
        except Exception as e:
            logger.error(
                "Failed to cleanup orphaned slices for service %s/%s: %s", namespace, service, e,
            )
            return [ListError("local", f"managed EndpointSlices for {namespace}/{service}", e)]

        errors: list[Exception] = []
        for slice_ in slices.items:
            cluster = (slice_.metadata.labels or {}).get(CLUSTER_LABEL)
            if cluster is None or cluster in active:
                continue
            try:
                self._delete(namespace, slice_.metadata.name)
            except ReconcileWriteError as e:
                logger.error("%s", e)
                errors.append(e)
                continue
            logger.info(
                "Deleted orphaned EndpointSlice %s/%s for cluster %s",
                namespace, slice_.metadata.name, cluster,
            )
        return errors

    def cleanup_stale(self, synced: set[str]) -> list[Exception]:
        """Delete managed slices of services that were not synced this cycle.

        Covers services that no remote cluster offers any more, for
        example after their only contributing ClusterLink was disabled.
        *synced* holds ``namespace/name`` keys.
        """
        try:
            slices = self._discovery.list_endpoint_slice_for_all_namespaces(
                label_selector=f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE},{CLUSTER_LABEL}",
                _request_timeout=self._request_timeout,
            )
        except Exception as e:
            logger.error("Failed to list managed EndpointSlices: %s", e)
            return [ListError("local", "managed EndpointSlices", e)]

        errors: list[Exception] = []
        for slice_ in slices.items:
            meta = slice_.metadata
            service = (meta.labels or {}).get(SERVICE_NAME_LABEL)
            if service is None or f"{meta.namespace}/{service}" in synced:
                continue
            try:
                self._delete(meta.namespace, meta.name)
            except ReconcileWriteError as e:
                logger.error("%s", e)
                errors.append(e)
                continue
            logger.info(
                "Deleted EndpointSlice %s/%s as service %s is no longer synced",
                meta.namespace, meta.name, service,
            )
        return errors

    def _delete(self, namespace: str, name: str) -> None:
        """Delete a slice; an already-missing slice counts as deleted."""
        try:
            self._discovery.delete_namespaced_endpoint_slice(
                name, namespace, _request_timeout=self._request_timeout,
            )
        except ApiException as e:
            if e.status == 404:
                return
            raise ReconcileWriteError("delete", f"EndpointSlice {namespace}/{name}", e) from e
        except Exception as e:
            raise ReconcileWriteError("delete", f"EndpointSlice {namespace}/{name}", e) from e
