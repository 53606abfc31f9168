"""svclink: mirror service endpoints from remote Kubernetes clusters into the local one."""

__version__ = "0.3.0"

from svclink.aggregation.aggregator import EndpointAggregator  # noqa: E402
from svclink.clusterlink.registry import ClusterInfo, ClusterRegistry  # noqa: E402
from svclink.config import SvclinkConfig, find_config, load_config  # noqa: E402
from svclink.controller import Controller  # noqa: E402
from svclink.discovery.discoverer import ServiceDiscoverer  # noqa: E402
from svclink.errors import (  # noqa: E402
    ClientBuildError,
    ConfigError,
    CredentialDecodeError,
    ListError,
    MissingParentError,
    ReconcileWriteError,
    RegistryListError,
    SvclinkError,
)
from svclink.models import (  # noqa: E402
    ClusterLink,
    ClusterLinkSpec,
    ClusterLinkStatus,
    CycleReport,
    EndpointGroup,
    FilterPolicy,
    ServiceRecord,
)
from svclink.reconcile.services import ServiceMaterializer  # noqa: E402
from svclink.reconcile.slices import SliceReconciler, slice_name  # noqa: E402

__all__ = [
    "ClientBuildError",
    "ClusterInfo",
    "ClusterLink",
    "ClusterLinkSpec",
    "ClusterLinkStatus",
    "ClusterRegistry",
    "ConfigError",
    "Controller",
    "CredentialDecodeError",
    "CycleReport",
    "EndpointAggregator",
    "EndpointGroup",
    "FilterPolicy",
    "find_config",
    "ListError",
    "load_config",
    "MissingParentError",
    "ReconcileWriteError",
    "RegistryListError",
    "ServiceDiscoverer",
    "ServiceMaterializer",
    "ServiceRecord",
    "SliceReconciler",
    "slice_name",
    "SvclinkConfig",
    "SvclinkError",
    "__version__",
]
