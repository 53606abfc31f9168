"""Core data models for svclink.

Defines the schemas for:
- ClusterLink descriptors (spec, filter policy, status and conditions)
- Service records produced by discovery
- Endpoint groups produced by aggregation
- Cycle reports produced by the controller
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from svclink.config import RESERVED_SERVICE_NAME, SYSTEM_NAMESPACE

# --- Enums ---


class ConditionType(enum.StrEnum):
    READY = "Ready"
    ERROR = "Error"


class ConditionStatus(enum.StrEnum):
    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class _CamelModel(BaseModel):
    """Base for models that round-trip through the Kubernetes API (camelCase keys)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- ClusterLink ---


class ClusterLinkCondition(_CamelModel):
    """One observation about a linked cluster."""

    type: ConditionType
    status: ConditionStatus
    last_transition_time: datetime | None = None
    reason: str = ""
    message: str = ""


class ClusterLinkStatus(_CamelModel):
    """Observed state of a ClusterLink. The only part svclink writes."""

    connected: bool = False
    last_connected: datetime | None = None
    error: str = ""
    version: str = ""
    conditions: list[ClusterLinkCondition] = Field(default_factory=list)


class FilterPolicy(_CamelModel):
    """Which namespaces and services of a remote cluster are synced.

    ``kube-system`` and the ``kubernetes`` service are always excluded,
    whatever the lists say. Exclusion wins over inclusion.
    """

    excluded_namespaces: list[str] = Field(default_factory=list)
    included_namespaces: list[str] = Field(default_factory=list)
    excluded_services: list[str] = Field(default_factory=list)
    """``namespace/name`` keys excluded from sync."""
    excluded_service_names: list[str] = Field(default_factory=list)
    """Service names excluded in every namespace."""

    def excluded_namespace_set(self) -> set[str]:
        return {*self.excluded_namespaces, SYSTEM_NAMESPACE}

    def included_namespace_set(self) -> set[str]:
        return set(self.included_namespaces)

    def excluded_service_set(self) -> set[str]:
        return set(self.excluded_services)

    def excluded_service_name_set(self) -> set[str]:
        return {*self.excluded_service_names, RESERVED_SERVICE_NAME}

    def should_exclude_namespace(
        self,
        namespace: str,
        excluded: set[str] | None = None,
        included: set[str] | None = None,
    ) -> bool:
        """Return True if *namespace* must not be synced.

        Pre-computed sets may be passed to avoid rebuilding them for
        every namespace of a cluster.
        """
        if excluded is None:
            excluded = self.excluded_namespace_set()
        if included is None:
            included = self.included_namespace_set()

        if namespace in excluded:
            return True
        return bool(included) and namespace not in included

    def should_exclude_service(
        self,
        namespace: str,
        name: str,
        excluded_keys: set[str] | None = None,
        excluded_names: set[str] | None = None,
    ) -> bool:
        """Return True if service *namespace*/*name* must not be synced."""
        if excluded_keys is None:
            excluded_keys = self.excluded_service_set()
        if excluded_names is None:
            excluded_names = self.excluded_service_name_set()

        if f"{namespace}/{name}" in excluded_keys:
            return True
        return name in excluded_names


class ClusterLinkSpec(FilterPolicy):
    """Desired state of a ClusterLink. Never modified by svclink."""

    enabled: bool = True
    kubeconfig: str = ""
    """Base64-encoded kubeconfig granting read access to the remote cluster."""


class ClusterLink(_CamelModel):
    """A remote cluster descriptor, parsed from the ClusterLink custom object."""

    name: str
    resource_version: str | None = None
    spec: ClusterLinkSpec
    status: ClusterLinkStatus = Field(default_factory=ClusterLinkStatus)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> ClusterLink:
        """Parse a custom object dict as returned by ``CustomObjectsApi``."""
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata.get("name", ""),
            resource_version=metadata.get("resourceVersion"),
            spec=ClusterLinkSpec.model_validate(obj.get("spec") or {}),
            status=ClusterLinkStatus.model_validate(obj.get("status") or {}),
        )

    def status_patch(self) -> dict[str, Any]:
        """Merge-patch body for the status subresource."""
        return {"status": self.status.model_dump(mode="json", by_alias=True)}


# --- Discovery and aggregation records ---


@dataclass
class ServiceRecord:
    """A service seen in one or more remote clusters during this cycle."""

    namespace: str
    name: str
    clusters: list[str] = field(default_factory=list)
    service: Any = None
    """``V1Service`` snapshot from the lexicographically first contributing cluster."""

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class EndpointGroup:
    """Ready endpoints of one service in one remote cluster."""

    cluster: str
    endpoints: list[Any] = field(default_factory=list)
    """``V1Endpoint`` entries, in listing order."""
    ports: list[Any] = field(default_factory=list)
    """``DiscoveryV1EndpointPort`` entries shared by all endpoints."""
    address_type: str = "IPv4"


# --- Cycle reporting ---


class CycleReport(BaseModel):
    """Outcome of one sync cycle, kept in memory for the health endpoint."""

    started_at: datetime
    finished_at: datetime | None = None
    clusters: int = 0
    services_discovered: int = 0
    services_synced: int = 0
    errors: list[str] = Field(default_factory=list)
    aborted: bool = False
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.errors
