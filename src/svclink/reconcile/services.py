"""Local parent Services for synced endpoints.

Managed EndpointSlices must be owned by a local Service. Depending on
``sync_services_to_local_cluster`` the controller either creates missing
Services (and their namespaces) from a remote snapshot, or drops the
services that do not already exist locally.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Any

from kubernetes import client
from kubernetes.client.exceptions import ApiException

from svclink.config import DEFAULT_REQUEST_TIMEOUT, SYNC_ANNOTATION
from svclink.errors import ListError, ReconcileWriteError
from svclink.models import ServiceRecord

logger = logging.getLogger(__name__)


def _copy_ports(ports: list[Any] | None) -> list[Any] | None:
    """Copy service ports without the remote cluster's nodePort allocations."""
    if not ports:
        return None
    return [
        client.V1ServicePort(
            name=p.name,
            port=p.port,
            protocol=p.protocol,
            target_port=p.target_port,
            app_protocol=p.app_protocol,
        )
        for p in ports
    ]


class ServiceMaterializer:
    """Ensures discovered services have a local parent Service."""

    def __init__(self, core_api: Any, request_timeout: float = DEFAULT_REQUEST_TIMEOUT) -> None:
        self._core = core_api
        self._request_timeout = request_timeout

    def filter_existing(
        self,
        services: dict[str, ServiceRecord],
        included_namespaces: Iterable[str] = (),
    ) -> dict[str, ServiceRecord]:
        """Keep only the services that already exist in the local cluster.

        Raises:
            ListError: If local services cannot be listed.
        """
        try:
            svc_list = self._core.list_service_for_all_namespaces(
                _request_timeout=self._request_timeout,
            )
        except Exception as e:
            raise ListError("local", "services", e) from e

        allowed = set(included_namespaces)
        local: set[str] = set()
        for svc in svc_list.items:
            namespace = svc.metadata.namespace
            if allowed and namespace not in allowed:
                continue
            local.add(f"{namespace}/{svc.metadata.name}")

        filtered = {key: record for key, record in services.items() if key in local}
        dropped = len(services) - len(filtered)
        if dropped:
            logger.debug("Skipping %d services that do not exist in the local cluster", dropped)
        return filtered

    def materialize(self, services: dict[str, ServiceRecord]) -> list[Exception]:
        """Create missing namespaces and Services for every discovered record.

        Failures are collected per namespace or service and returned.
        """
        by_namespace: dict[str, list[ServiceRecord]] = defaultdict(list)
        for record in services.values():
            by_namespace[record.namespace].append(record)

        errors: list[Exception] = []
        for namespace in sorted(by_namespace):
            try:
                self._ensure_namespace(namespace)
                existing = self._existing_service_names(namespace)
            except (ListError, ReconcileWriteError) as e:
                logger.error("Failed to prepare namespace %s: %s", namespace, e)
                errors.append(e)
                continue

            for record in by_namespace[namespace]:
                if record.name in existing or record.service is None:
                    continue
                try:
                    self._create_service(record)
                except ReconcileWriteError as e:
                    logger.error("%s", e)
                    errors.append(e)
        return errors

    def _ensure_namespace(self, namespace: str) -> None:
        try:
            self._core.read_namespace(namespace, _request_timeout=self._request_timeout)
            return
        except ApiException as e:
            if e.status != 404:
                raise ReconcileWriteError("get namespace", namespace, e) from e
        except Exception as e:
            raise ReconcileWriteError("get namespace", namespace, e) from e

        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=namespace))
        try:
            self._core.create_namespace(body, _request_timeout=self._request_timeout)
        except ApiException as e:
            if e.status != 409:
                raise ReconcileWriteError("create namespace", namespace, e) from e
        except Exception as e:
            raise ReconcileWriteError("create namespace", namespace, e) from e
        else:
            logger.info("Created namespace %s as it does not exist in local cluster", namespace)

    def _existing_service_names(self, namespace: str) -> set[str]:
        try:
            svc_list = self._core.list_namespaced_service(
                namespace, _request_timeout=self._request_timeout,
            )
        except Exception as e:
            raise ListError("local", f"services in namespace {namespace}", e) from e
        return {svc.metadata.name for svc in svc_list.items}

    def _create_service(self, record: ServiceRecord) -> None:
        snapshot = record.service
        meta = snapshot.metadata
        annotations = dict(meta.annotations or {})
        annotations[SYNC_ANNOTATION] = "true"

        body = client.V1Service(
            metadata=client.V1ObjectMeta(
                name=record.name,
                namespace=record.namespace,
                labels=dict(meta.labels or {}) or None,
                annotations=annotations,
            ),
            spec=client.V1ServiceSpec(
                ports=_copy_ports(snapshot.spec.ports if snapshot.spec else None),
                selector=snapshot.spec.selector if snapshot.spec else None,
            ),
        )
        try:
            self._core.create_namespaced_service(
                record.namespace, body, _request_timeout=self._request_timeout,
            )
        except ApiException as e:
            if e.status == 409:
                return
            raise ReconcileWriteError("create service", record.key, e) from e
        except Exception as e:
            raise ReconcileWriteError("create service", record.key, e) from e
        logger.info("Created service %s as it exists in remote clusters", record.key)
