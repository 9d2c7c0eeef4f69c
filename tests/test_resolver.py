"""Tests for dependency resolution."""

from __future__ import annotations

import pytest

from brewhouse.core.errors import (
    CyclicDependency,
    DependencyConflict,
    PackageNotFoundError,
    UnsatisfiableVersion,
    UnsupportedArchitecture,
)
from brewhouse.core.metadata import InMemoryMetadataStore
from brewhouse.core.models import (
    Bottle,
    Dependency,
    Operation,
    PackageKind,
    Receipt,
    SourceBuild,
)
from brewhouse.core.resolver import DependencyGraph, DependencyResolver


def receipt(name: str, version: str = "1.0", deps=(), requested: bool = True) -> Receipt:
    return Receipt(
        name=name,
        kind=PackageKind.FORMULA,
        version=version,
        dependencies=list(deps),
        requested=requested,
    )


def resolver(packages, receipts=(), arch: str = "arm64") -> DependencyResolver:
    return DependencyResolver(
        InMemoryMetadataStore(packages), {r.name: r for r in receipts}, arch
    )


class TestDependencyGraph:
    """Tests for the arena-indexed graph."""

    def test_topological_dependencies_first(self) -> None:
        """Should order dependencies before dependents with name tie-break."""
        g = DependencyGraph()
        g.link("app", "zlib")
        g.link("app", "curl")
        g.link("curl", "zlib")

        assert g.topological() == ["zlib", "curl", "app"]
        assert g.topological(dependents_first=True) == ["app", "curl", "zlib"]

    def test_independent_nodes_sorted(self) -> None:
        g = DependencyGraph()
        for name in ("m", "b", "x"):
            g.add(name)

        assert g.topological() == ["b", "m", "x"]

    def test_find_cycle(self) -> None:
        """Should return the cycle as a closed path."""
        g = DependencyGraph()
        g.link("a", "b")
        g.link("b", "c")
        g.link("c", "a")

        assert g.find_cycle() == ["a", "b", "c", "a"]
        with pytest.raises(CyclicDependency):
            g.topological()


class TestResolveInstall:
    """Tests for install, upgrade and reinstall plans."""

    def test_chain_order(self, chain) -> None:
        """Should place c before b before a."""
        plan = resolver(chain).resolve_install(["a"])

        assert plan.names() == ["c", "b", "a"]
        assert plan.node("a").after == ("b",)
        assert plan.node("b").after == ("c",)
        assert plan.node("a").requested
        assert not plan.node("c").requested
        assert all(n.op is Operation.INSTALL for n in plan)
        assert all(isinstance(n.artifact, Bottle) for n in plan)

    def test_unknown_package(self, chain) -> None:
        with pytest.raises(PackageNotFoundError):
            resolver(chain).resolve_install(["nope"])

    def test_missing_dependency(self, formula) -> None:
        """Should fail when a dependency is not in the metadata store."""
        with pytest.raises(PackageNotFoundError):
            resolver([formula("a", deps=["ghost"])]).resolve_install(["a"])

    def test_conflicting_constraints(self, formula) -> None:
        """Should name both requesters when no version satisfies both."""
        packages = [
            formula("a", deps=["b@1"]),
            formula("d", deps=["b@>=2"]),
            formula("b", "1.0"),
            formula("b", "2.0"),
        ]

        with pytest.raises(DependencyConflict) as exc:
            resolver(packages).resolve_install(["a", "d"])

        assert exc.value.package == "b"
        assert exc.value.requesters == ("a", "d")

    def test_constraint_picks_older_version(self, formula) -> None:
        """Should fall back to an older version when the newest violates a constraint."""
        packages = [formula("a", deps=["b@<2"]), formula("b", "1.0"), formula("b", "2.0")]

        plan = resolver(packages).resolve_install(["a"])

        assert plan.node("b").package.version == "1.0"

    def test_unsatisfiable(self, formula) -> None:
        packages = [formula("a", deps=["b@>=3"]), formula("b", "1.0"), formula("b", "2.0")]

        with pytest.raises(UnsatisfiableVersion) as exc:
            resolver(packages).resolve_install(["a"])

        assert exc.value.context["package"] == "b"
        assert exc.value.context["requester"] == "a"

    def test_requested_constraint(self, formula) -> None:
        """Should honour name@version on the command line."""
        packages = [formula("b", "1.0"), formula("b", "2.0")]

        plan = resolver(packages).resolve_install(["b@1"])

        assert plan.node("b").package.version == "1.0"

    def test_cycle(self, formula) -> None:
        """Should report the cycle path."""
        packages = [formula("x", deps=["y"]), formula("y", deps=["x"])]

        with pytest.raises(CyclicDependency) as exc:
            resolver(packages).resolve_install(["x"])

        assert exc.value.cycle == ["x", "y", "x"]

    def test_deterministic(self, formula) -> None:
        """Should produce byte-identical plans regardless of request order."""
        packages = [
            formula("app", deps=["zlib", "curl"]),
            formula("curl", deps=["zlib", "openssl"]),
            formula("openssl"),
            formula("zlib"),
            formula("tool", deps=["zlib"]),
        ]

        first = resolver(packages).resolve_install(["app", "tool"]).to_json()
        second = resolver(list(reversed(packages))).resolve_install(["tool", "app"]).to_json()

        assert first == second

    def test_installed_dependency_skipped(self, chain) -> None:
        """Should skip nodes already installed at the selected version."""
        plan = resolver(chain, [receipt("c", requested=False)]).resolve_install(["a"])

        c = plan.node("c")
        assert c.skip
        assert c.artifact is None
        assert [n.name for n in plan.active] == ["b", "a"]
        assert plan.warnings == ()

    def test_installed_request_warns(self, chain) -> None:
        """Should warn and skip when the requested package is already installed."""
        receipts = [receipt("a", deps=["b@1.0"]), receipt("b", deps=["c@1.0"]), receipt("c")]

        plan = resolver(chain, receipts).resolve_install(["a"])

        assert plan.active == []
        assert plan.warnings == ("a 1.0 is already installed",)

    def test_prefers_installed_version(self, formula) -> None:
        """Should keep an installed dependency rather than pull a newer one."""
        packages = [formula("a", deps=["b"]), formula("b", "1.0"), formula("b", "2.0")]

        plan = resolver(packages, [receipt("b", "1.0")]).resolve_install(["a"])

        assert plan.node("b").skip
        assert plan.node("b").package.version == "1.0"

    def test_upgrade(self, formula) -> None:
        """Should move a requested package to its newest version."""
        packages = [formula("a", "1.0"), formula("a", "2.0")]
        installed = receipt("a", "1.0")

        plan = resolver(packages, [installed]).resolve_install(["a"], op=Operation.UPGRADE)

        node = plan.node("a")
        assert node.op is Operation.UPGRADE
        assert node.package.version == "2.0"
        assert node.previous is installed

    def test_upgrade_not_installed(self, formula) -> None:
        with pytest.raises(PackageNotFoundError):
            resolver([formula("a")]).resolve_install(["a"], op=Operation.UPGRADE)

    def test_upgrade_up_to_date(self, formula) -> None:
        plan = resolver([formula("a")], [receipt("a")]).resolve_install(["a"], op=Operation.UPGRADE)

        assert plan.node("a").skip
        assert plan.warnings == ("a 1.0 is already up to date",)

    def test_reinstall(self, chain) -> None:
        """Should reinstall only the requested package."""
        receipts = [receipt("a", deps=["b@1.0"]), receipt("b", deps=["c@1.0"]), receipt("c")]

        plan = resolver(chain, receipts).resolve_install(["a"], op=Operation.REINSTALL)

        assert [n.name for n in plan.active] == ["a"]
        assert plan.node("a").op is Operation.REINSTALL
        assert plan.node("a").previous is not None

    def test_unsupported_architecture(self, formula) -> None:
        packages = [formula("intel-only", arches=("x86_64",))]

        with pytest.raises(UnsupportedArchitecture):
            resolver(packages, arch="arm64").resolve_install(["intel-only"])

    def test_source_fallback(self, formula, make_source) -> None:
        """Should build from source when no bottle matches the architecture."""
        pkg = formula("x", bottle=False, source=make_source("x"))

        plan = resolver([pkg]).resolve_install(["x"])

        node = plan.node("x")
        assert node.build_from_source
        assert isinstance(node.artifact, SourceBuild)

    def test_build_from_source_pulls_build_dependencies(self, formula, make_source) -> None:
        """Should include build-only dependencies only for source builds."""
        pkg = formula("x", deps=[Dependency("cmake", build=True)], source=make_source("x"))
        packages = [pkg, formula("cmake")]

        assert resolver(packages).resolve_install(["x"]).names() == ["x"]
        plan = resolver(packages).resolve_install(["x"], build_from_source=["x"])
        assert plan.names() == ["cmake", "x"]
        assert plan.node("x").build_from_source

    def test_build_from_source_accepts_versioned_request(self, formula, make_source) -> None:
        pkg = formula("x", source=make_source("x"))

        plan = resolver([pkg]).resolve_install(["x@1.0"], build_from_source=["x@1.0"])

        assert plan.node("x").build_from_source
        assert isinstance(plan.node("x").artifact, SourceBuild)


class TestResolveUninstall:
    """Tests for uninstall plans."""

    @pytest.fixture
    def installed(self) -> list[Receipt]:
        return [
            receipt("a", deps=["b@1.0"]),
            receipt("b", deps=["c@1.0"], requested=False),
            receipt("c", requested=False),
        ]

    def test_dependents_first(self, chain, installed) -> None:
        plan = resolver(chain, installed).resolve_uninstall(["c", "a", "b"])

        assert plan.names() == ["a", "b", "c"]
        assert all(n.op is Operation.UNINSTALL for n in plan)
        assert plan.node("b").after == ("a",)
        assert plan.node("c").previous is not None

    def test_blocked_by_dependent(self, chain, installed) -> None:
        """Should refuse to remove a package others depend on."""
        with pytest.raises(DependencyConflict) as exc:
            resolver(chain, installed).resolve_uninstall(["c"])

        assert "required by b" in str(exc.value)

    def test_force(self, chain, installed) -> None:
        """Should downgrade the conflict to a warning with force."""
        plan = resolver(chain, installed).resolve_uninstall(["c"], force=True)

        assert plan.names() == ["c"]
        assert plan.warnings == ("c is still required by b",)

    def test_not_installed(self, chain, installed) -> None:
        with pytest.raises(PackageNotFoundError):
            resolver(chain, installed).resolve_uninstall(["zzz"])

    def test_metadata_gone(self, installed) -> None:
        """Should still plan removal when the definition was dropped."""
        plan = resolver([], installed).resolve_uninstall(["a"])

        assert plan.node("a").package.version == "1.0"
