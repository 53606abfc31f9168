"""Exception types raised by the svclink sync cycle.

Only ``RegistryListError`` is fatal to a cycle. Every other error is
scoped to one cluster or one service: it is recorded in the ClusterLink
status or in the cycle's error list, and sibling work carries on.
"""

from __future__ import annotations


class SvclinkError(Exception):
    """Base class for all svclink errors."""


class ConfigError(SvclinkError):
    """Raised when the controller configuration is invalid."""


class RegistryListError(SvclinkError):
    """Raised when the ClusterLink descriptors themselves cannot be listed."""


class CredentialDecodeError(SvclinkError):
    """Raised when a ClusterLink's embedded kubeconfig cannot be decoded."""


class ClientBuildError(SvclinkError):
    """Raised when a remote client cannot be built or the cluster does not answer."""


class ListError(SvclinkError):
    """Raised when listing namespaces, services or EndpointSlices fails."""

    def __init__(self, cluster: str, kind: str, cause: Exception) -> None:
        self.cluster = cluster
        self.kind = kind
        self.cause = cause
        super().__init__(f"failed to list {kind} in cluster {cluster}: {cause}")


class MissingParentError(SvclinkError):
    """Raised when the local Service owning a managed EndpointSlice is absent."""

    def __init__(self, namespace: str, service: str, cluster: str) -> None:
        self.namespace = namespace
        self.service = service
        self.cluster = cluster
        super().__init__(
            f"service {namespace}/{service} not found in local cluster "
            f"(endpoints from cluster {cluster} not synced)"
        )


class ReconcileWriteError(SvclinkError):
    """Raised when creating, updating or deleting a local resource fails."""

    def __init__(self, operation: str, name: str, cause: Exception) -> None:
        self.operation = operation
        self.name = name
        self.cause = cause
        super().__init__(f"failed to {operation} {name}: {cause}")
