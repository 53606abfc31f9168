"""In-memory stand-ins for the kubernetes API objects used by svclink.

The fakes keep real ``kubernetes.client`` model objects, copy them on
every read and write like an API server would, and record each mutating
call in ``calls`` so tests can assert on writes.
"""

from __future__ import annotations

import base64
import copy
import uuid
from typing import Any
from unittest.mock import MagicMock

import yaml
from kubernetes import client
from kubernetes.client.exceptions import ApiException

from svclink.clusterlink.registry import ClusterInfo, RemoteClient
from svclink.models import ClusterLink, ClusterLinkSpec

# --- Model builders ---


def make_endpoint(address: str, ready: bool | None = True) -> client.V1Endpoint:
    return client.V1Endpoint(
        addresses=[address],
        conditions=client.V1EndpointConditions(ready=ready),
    )


def make_port(port: int = 80, name: str = "http") -> client.DiscoveryV1EndpointPort:
    return client.DiscoveryV1EndpointPort(name=name, port=port, protocol="TCP")


def make_slice(
    name: str,
    service: str,
    endpoints: list[client.V1Endpoint],
    namespace: str = "default",
    ports: list[Any] | None = None,
    labels: dict[str, str] | None = None,
    address_type: str = "IPv4",
) -> client.V1EndpointSlice:
    all_labels = {"kubernetes.io/service-name": service}
    all_labels.update(labels or {})
    return client.V1EndpointSlice(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=all_labels),
        address_type=address_type,
        endpoints=endpoints,
        ports=ports if ports is not None else [make_port()],
    )


def make_service(
    name: str,
    namespace: str = "default",
    labels: dict[str, str] | None = None,
    ports: list[client.V1ServicePort] | None = None,
) -> client.V1Service:
    return client.V1Service(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            uid=str(uuid.uuid4()),
            labels=labels,
        ),
        spec=client.V1ServiceSpec(
            ports=ports or [client.V1ServicePort(name="http", port=80)],
            selector={"app": name},
        ),
    )


def not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


def encode_kubeconfig(server: str = "https://east.example.com:6443") -> str:
    data = {
        "apiVersion": "v1",
        "kind": "Config",
        "clusters": [{"name": "remote", "cluster": {"server": server}}],
        "users": [{"name": "reader", "user": {"token": "t0ken"}}],
        "contexts": [{"name": "remote", "context": {"cluster": "remote", "user": "reader"}}],
        "current-context": "remote",
    }
    return base64.b64encode(yaml.safe_dump(data).encode("utf-8")).decode("ascii")


def clusterlink_object(
    name: str,
    enabled: bool = True,
    kubeconfig: str | None = None,
    **spec: Any,
) -> dict[str, Any]:
    return {
        "apiVersion": "svclink.cloudpilot.ai/v1alpha1",
        "kind": "ClusterLink",
        "metadata": {"name": name, "resourceVersion": "1"},
        "spec": {
            "enabled": enabled,
            "kubeconfig": encode_kubeconfig() if kubeconfig is None else kubeconfig,
            **spec,
        },
    }


# --- Selector matching ---


def _matches(labels: dict[str, str] | None, selector: str | None) -> bool:
    labels = labels or {}
    if not selector:
        return True
    for term in selector.split(","):
        if "=" in term:
            key, value = term.split("=", 1)
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False
    return True


# --- Fake APIs ---


class FakeDiscoveryApi:
    """Stands in for ``DiscoveryV1Api``."""

    def __init__(self, slices: list[client.V1EndpointSlice] | None = None) -> None:
        self.slices: dict[tuple[str, str], client.V1EndpointSlice] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_list = False
        for s in slices or []:
            self.slices[(s.metadata.namespace, s.metadata.name)] = copy.deepcopy(s)

    def list_namespaced_endpoint_slice(
        self, namespace: str, label_selector: str | None = None, **_: Any,
    ) -> client.V1EndpointSliceList:
        if self.fail_list:
            raise ApiException(status=500, reason="Internal Server Error")
        items = [
            copy.deepcopy(s) for (ns, _name), s in sorted(self.slices.items())
            if ns == namespace and _matches(s.metadata.labels, label_selector)
        ]
        return client.V1EndpointSliceList(items=items)

    def list_endpoint_slice_for_all_namespaces(
        self, label_selector: str | None = None, **_: Any,
    ) -> client.V1EndpointSliceList:
        items = [
            copy.deepcopy(s) for _key, s in sorted(self.slices.items())
            if _matches(s.metadata.labels, label_selector)
        ]
        return client.V1EndpointSliceList(items=items)

    def read_namespaced_endpoint_slice(
        self, name: str, namespace: str, **_: Any,
    ) -> client.V1EndpointSlice:
        try:
            return copy.deepcopy(self.slices[(namespace, name)])
        except KeyError:
            raise not_found() from None

    def create_namespaced_endpoint_slice(
        self, namespace: str, body: client.V1EndpointSlice, **_: Any,
    ) -> client.V1EndpointSlice:
        self.calls.append(("create", body.metadata.name))
        self.slices[(namespace, body.metadata.name)] = copy.deepcopy(body)
        return body

    def replace_namespaced_endpoint_slice(
        self, name: str, namespace: str, body: client.V1EndpointSlice, **_: Any,
    ) -> client.V1EndpointSlice:
        self.calls.append(("replace", name))
        self.slices[(namespace, name)] = copy.deepcopy(body)
        return body

    def delete_namespaced_endpoint_slice(self, name: str, namespace: str, **_: Any) -> None:
        self.calls.append(("delete", name))
        try:
            del self.slices[(namespace, name)]
        except KeyError:
            raise not_found() from None

    def writes(self) -> list[tuple[str, str]]:
        """Return and reset the recorded mutating calls."""
        calls, self.calls = self.calls, []
        return calls


class FakeCoreApi:
    """Stands in for ``CoreV1Api`` (namespaces and services)."""

    def __init__(
        self,
        services: list[client.V1Service] | None = None,
        namespaces: list[str] | None = None,
    ) -> None:
        self.services: dict[tuple[str, str], client.V1Service] = {}
        self.namespaces: set[str] = set(namespaces or [])
        self.calls: list[tuple[str, str]] = []
        self.fail_services_in: set[str] = set()
        for svc in services or []:
            self.services[(svc.metadata.namespace, svc.metadata.name)] = svc
            self.namespaces.add(svc.metadata.namespace)

    def list_namespace(self, **_: Any) -> client.V1NamespaceList:
        return client.V1NamespaceList(items=[
            client.V1Namespace(metadata=client.V1ObjectMeta(name=ns))
            for ns in sorted(self.namespaces)
        ])

    def read_namespace(self, name: str, **_: Any) -> client.V1Namespace:
        if name not in self.namespaces:
            raise not_found()
        return client.V1Namespace(metadata=client.V1ObjectMeta(name=name))

    def create_namespace(self, body: client.V1Namespace, **_: Any) -> client.V1Namespace:
        self.calls.append(("create_namespace", body.metadata.name))
        self.namespaces.add(body.metadata.name)
        return body

    def list_namespaced_service(self, namespace: str, **_: Any) -> client.V1ServiceList:
        if namespace in self.fail_services_in:
            raise ApiException(status=403, reason="Forbidden")
        return client.V1ServiceList(items=[
            copy.deepcopy(svc) for (ns, _name), svc in sorted(self.services.items())
            if ns == namespace
        ])

    def list_service_for_all_namespaces(self, **_: Any) -> client.V1ServiceList:
        return client.V1ServiceList(
            items=[copy.deepcopy(svc) for _key, svc in sorted(self.services.items())],
        )

    def read_namespaced_service(self, name: str, namespace: str, **_: Any) -> client.V1Service:
        try:
            return copy.deepcopy(self.services[(namespace, name)])
        except KeyError:
            raise not_found() from None

    def create_namespaced_service(
        self, namespace: str, body: client.V1Service, **_: Any,
    ) -> client.V1Service:
        self.calls.append(("create_service", f"{namespace}/{body.metadata.name}"))
        stored = copy.deepcopy(body)
        stored.metadata.uid = str(uuid.uuid4())
        self.services[(namespace, body.metadata.name)] = stored
        return stored


class FakeCustomObjectsApi:
    """Stands in for ``CustomObjectsApi`` serving ClusterLinks."""

    def __init__(self, objects: list[dict[str, Any]] | None = None) -> None:
        self.objects: dict[str, dict[str, Any]] = {
            obj["metadata"]["name"]: copy.deepcopy(obj) for obj in objects or []
        }
        self.status_patches: list[tuple[str, dict[str, Any]]] = []
        self.fail_list = False

    def list_cluster_custom_object(self, group: str, version: str, plural: str, **_: Any) -> dict:
        if self.fail_list:
            raise ApiException(status=503, reason="Service Unavailable")
        return {"items": [copy.deepcopy(obj) for _name, obj in sorted(self.objects.items())]}

    def patch_cluster_custom_object_status(
        self, group: str, version: str, plural: str, name: str, body: dict, **_: Any,
    ) -> dict:
        if name not in self.objects:
            raise not_found()
        self.status_patches.append((name, copy.deepcopy(body)))
        self.objects[name]["status"] = copy.deepcopy(body["status"])
        return self.objects[name]

    def status_of(self, name: str) -> dict[str, Any]:
        return self.objects[name].get("status", {})


# --- Cluster builders ---


def make_cluster_info(
    name: str,
    core: FakeCoreApi | None = None,
    discovery: FakeDiscoveryApi | None = None,
    **spec: Any,
) -> ClusterInfo:
    link = ClusterLink(name=name, spec=ClusterLinkSpec(kubeconfig="eA==", **spec))
    remote = RemoteClient(
        api_client=MagicMock(),
        core=core or FakeCoreApi(),
        discovery=discovery or FakeDiscoveryApi(),
        version="v1.30.2",
    )
    return ClusterInfo(name=name, link=link, client=remote)
