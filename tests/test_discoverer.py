"""Tests for ServiceDiscoverer."""

from __future__ import annotations

from unittest.mock import MagicMock

from helpers import FakeCoreApi, make_cluster_info, make_service

from svclink.discovery.discoverer import ServiceDiscoverer
from svclink.errors import ListError


def _discoverer() -> tuple[ServiceDiscoverer, MagicMock]:
    registry = MagicMock()
    return ServiceDiscoverer(registry, request_timeout=5), registry


def _core(*services: tuple[str, str], namespaces: list[str] | None = None) -> FakeCoreApi:
    return FakeCoreApi(
        services=[make_service(name, namespace) for namespace, name in services],
        namespaces=namespaces,
    )


class TestDefaultExclusions:
    def test_kube_system_and_kubernetes_never_discovered(self) -> None:
        core = _core(
            ("default", "kubernetes"),
            ("default", "web"),
            ("kube-system", "kube-dns"),
            ("payments", "kubernetes"),
        )
        discoverer, _ = _discoverer()
        services = discoverer.discover_services({"east": make_cluster_info("east", core=core)})
        assert list(services) == ["default/web"]

    def test_default_exclusions_survive_inclusion_list(self) -> None:
        core = _core(("kube-system", "kube-dns"), ("default", "kubernetes"), ("default", "web"))
        info = make_cluster_info(
            "east", core=core, included_namespaces=["kube-system", "default"],
        )
        discoverer, _ = _discoverer()
        assert list(discoverer.discover_services({"east": info})) == ["default/web"]


class TestClusterPolicy:
    def test_exclusion_precedence(self) -> None:
        core = _core(("payments", "api"), ("orders", "api"), ("default", "api"))
        info = make_cluster_info(
            "east", core=core,
            included_namespaces=["payments", "orders"],
            excluded_namespaces=["payments"],
        )
        discoverer, _ = _discoverer()
        assert list(discoverer.discover_services({"east": info})) == ["orders/api"]

    def test_excluded_services(self) -> None:
        core = _core(("default", "web"), ("default", "db"), ("other", "db"), ("other", "metrics"))
        info = make_cluster_info(
            "east", core=core,
            excluded_services=["default/db"],
            excluded_service_names=["metrics"],
        )
        discoverer, _ = _discoverer()
        assert sorted(discoverer.discover_services({"east": info})) == ["default/web", "other/db"]

    def test_policy_scoped_to_its_cluster(self) -> None:
        east = make_cluster_info("east", core=_core(("ops", "web")), excluded_namespaces=["ops"])
        west = make_cluster_info("west", core=_core(("ops", "web")))
        discoverer, _ = _discoverer()
        services = discoverer.discover_services({"east": east, "west": west})
        assert services["ops/web"].clusters == ["west"]


class TestGlobalAllowList:
    def test_restricts_all_clusters(self) -> None:
        east = make_cluster_info("east", core=_core(("a", "web"), ("b", "web")))
        west = make_cluster_info("west", core=_core(("a", "db"), ("c", "db")))
        discoverer, _ = _discoverer()
        services = discoverer.discover_services({"east": east, "west": west}, ("a",))
        assert sorted(services) == ["a/db", "a/web"]

    def test_checked_before_cluster_policy(self) -> None:
        info = make_cluster_info("east", core=_core(("a", "web"), ("b", "web")),
                                 included_namespaces=["b"])
        discoverer, _ = _discoverer()
        assert discoverer.discover_services({"east": info}, ("a",)) == {}


class TestUnion:
    def test_contributors_sorted_and_snapshot_from_first(self) -> None:
        zeta_core = _core(("default", "web"))
        alpha_core = _core(("default", "web"))
        infos = {
            "zeta": make_cluster_info("zeta", core=zeta_core),
            "alpha": make_cluster_info("alpha", core=alpha_core),
        }
        discoverer, _ = _discoverer()
        record = discoverer.discover_services(infos)["default/web"]

        assert record.clusters == ["alpha", "zeta"]
        expected_uid = alpha_core.services[("default", "web")].metadata.uid
        assert record.service.metadata.uid == expected_uid
        assert record.namespace == "default"
        assert record.name == "web"

    def test_distinct_services_merged(self) -> None:
        infos = {
            "east": make_cluster_info("east", core=_core(("default", "web"))),
            "west": make_cluster_info("west", core=_core(("default", "db"))),
        }
        discoverer, _ = _discoverer()
        services = discoverer.discover_services(infos)
        assert services["default/web"].clusters == ["east"]
        assert services["default/db"].clusters == ["west"]

    def test_no_clusters(self) -> None:
        discoverer, _ = _discoverer()
        assert discoverer.discover_services({}) == {}


class TestListFailures:
    def test_failing_cluster_contributes_nothing(self) -> None:
        broken = _core(("default", "web"), ("secure", "vault"))
        broken.fail_services_in.add("secure")
        infos = {
            "east": make_cluster_info("east", core=broken),
            "west": make_cluster_info("west", core=_core(("default", "db"))),
        }
        discoverer, registry = _discoverer()
        services = discoverer.discover_services(infos)

        assert list(services) == ["default/db"]
        calls = {c.args[0].name: c.args[1] for c in registry.record_sync_result.call_args_list}
        assert isinstance(calls["east"], ListError)
        assert calls["east"].cluster == "east"
        assert calls["west"] is None

    def test_namespace_listing_failure(self) -> None:
        core = MagicMock()
        core.list_namespace.side_effect = RuntimeError("connection reset")
        discoverer, registry = _discoverer()
        services = discoverer.discover_services({"east": make_cluster_info("east", core=core)})

        assert services == {}
        error = registry.record_sync_result.call_args.args[1]
        assert isinstance(error, ListError)
        assert "namespaces" in str(error)

    def test_success_recorded_for_every_cluster(self) -> None:
        infos = {name: make_cluster_info(name) for name in ("a", "b", "c")}
        discoverer, registry = _discoverer()
        discoverer.discover_services(infos)
        assert registry.record_sync_result.call_count == 3
