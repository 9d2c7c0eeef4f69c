"""Dependency resolution: requested names plus installed state to an InstallPlan.

The graph is arena-indexed (name -> integer index, adjacency as index sets) so
cycle detection and topological sorting are plain index algorithms. Every
iteration is over sorted names, which makes the produced plan a pure function
of the requested names, the metadata and the receipts.
"""

from __future__ import annotations

import heapq
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from brewhouse.core.errors import (
    CyclicDependency,
    DependencyConflict,
    PackageNotFoundError,
    ResolutionError,
    UnsatisfiableVersion,
    UnsupportedArchitecture,
)
from brewhouse.core.logging import get_logger
from brewhouse.core.models import (
    Artifact,
    Dependency,
    InstallPlan,
    Operation,
    Package,
    PackageKind,
    PlanNode,
    Receipt,
)
from brewhouse.core.versions import compatible, parse_request, satisfies
from brewhouse.providers.base import MetadataStore

log = get_logger(__name__)

REQUESTED = "(requested)"
MAX_PASSES = 16

Requirement = Tuple[str, "str | None"]


@dataclass
class DependencyGraph:
    """Directed graph over package names; an edge means "depends on"."""

    names: List[str] = field(default_factory=list)
    index: Dict[str, int] = field(default_factory=dict)
    edges: List[Set[int]] = field(default_factory=list)

    def add(self, name: str) -> int:
        if name not in self.index:
            self.index[name] = len(self.names)
            self.names.append(name)
            self.edges.append(set())
        return self.index[name]

    def link(self, dependent: str, dependency: str) -> None:
        self.edges[self.add(dependent)].add(self.add(dependency))

    def dependencies(self, name: str) -> List[str]:
        return sorted(self.names[i] for i in self.edges[self.index[name]])

    def find_cycle(self) -> List[str] | None:
        """Return one cycle as a closed name path, or None if acyclic."""
        white, grey, black = 0, 1, 2
        color = [white] * len(self.names)
        order = sorted(range(len(self.names)), key=lambda i: self.names[i])

        for root in order:
            if color[root] != white:
                continue
            stack: List[Tuple[int, List[int]]] = [
                (root, sorted(self.edges[root], key=lambda i: self.names[i]))
            ]
            path = [root]
            color[root] = grey
            while stack:
                node, pending = stack[-1]
                if not pending:
                    color[node] = black
                    stack.pop()
                    path.pop()
                    continue
                nxt = pending.pop(0)
                if color[nxt] == grey:
                    cycle = path[path.index(nxt):] + [nxt]
                    return [self.names[i] for i in cycle]
                if color[nxt] == white:
                    color[nxt] = grey
                    path.append(nxt)
                    stack.append((nxt, sorted(self.edges[nxt], key=lambda i: self.names[i])))
        return None

    def topological(self, dependents_first: bool = False) -> List[str]:
        """Kahn's algorithm with lexicographic tie-break.

        By default dependencies come before their dependents; with
        ``dependents_first`` the order is reversed in the graph sense (not a
        reversed list), still breaking ties by name.
        """
        n = len(self.names)
        if dependents_first:
            succ = [sorted(e) for e in self.edges]
        else:
            succ = [[] for _ in range(n)]
            for a in range(n):
                for b in self.edges[a]:
                    succ[b].append(a)
        indegree = [0] * n
        for a in range(n):
            for b in succ[a]:
                indegree[b] += 1

        heap = [(self.names[i], i) for i in range(n) if indegree[i] == 0]
        heapq.heapify(heap)
        out: List[str] = []
        while heap:
            name, i = heapq.heappop(heap)
            out.append(name)
            for j in succ[i]:
                indegree[j] -= 1
                if indegree[j] == 0:
                    heapq.heappush(heap, (self.names[j], j))
        if len(out) != n:
            cycle = self.find_cycle() or sorted(set(self.names) - set(out))
            raise CyclicDependency(cycle)
        return out


def package_from_receipt(receipt: Receipt) -> Package:
    """Minimal Package for an installed receipt whose definition is gone."""
    return Package(
        name=receipt.name,
        version=receipt.version,
        revision=receipt.revision,
        kind=receipt.kind,
        dependencies=tuple(Dependency(name=d) for d in sorted(receipt.dependency_names)),
    )


class DependencyResolver:
    """Computes install and uninstall plans.

    Args:
        metadata: Store of package definitions.
        receipts: Installed receipts keyed by name (a ReceiptStore snapshot).
        arch: Architecture family packages must support.
    """

    def __init__(self, metadata: MetadataStore, receipts: Mapping[str, Receipt], arch: str) -> None:
        self.metadata = metadata
        self.receipts = dict(receipts)
        self.arch = arch
        self._installed_constraints = self._collect_installed_constraints()

    def _collect_installed_constraints(self) -> Dict[str, List[Requirement]]:
        """Constraints that installed packages place on their dependencies."""
        out: Dict[str, List[Requirement]] = defaultdict(list)
        for name in sorted(self.receipts):
            receipt = self.receipts[name]
            try:
                pkg = self.metadata.get(name, receipt.pkg_version)
            except PackageNotFoundError:
                continue
            for dep in pkg.dependencies:
                if dep.constraint and not dep.build:
                    out[dep.name].append((name, dep.constraint))
        return out

    ## Install ##

    def resolve_install(
        self,
        requests: Sequence[str],
        op: Operation = Operation.INSTALL,
        build_from_source: Iterable[str] = (),
    ) -> InstallPlan:
        """Resolve an install, upgrade or reinstall of ``requests``.

        Args:
            requests: Requested names, optionally ``name@constraint``.
            op: INSTALL, UPGRADE or REINSTALL for the requested names.
            build_from_source: Names to build from source instead of bottles.

        Returns:
            An InstallPlan with dependencies before dependents.

        Raises:
            ResolutionError: any resolution failure; nothing has been changed.
        """
        start = time.perf_counter()
        if op is Operation.UNINSTALL:
            raise ValueError("use resolve_uninstall for uninstall plans")

        known = self.metadata.names() | set(self.receipts)
        roots: Dict[str, str | None] = {}
        for text in requests:
            name, constraint = parse_request(text, known)
            if name not in known:
                raise PackageNotFoundError(package=name)
            if op is Operation.UPGRADE and name not in self.receipts:
                raise PackageNotFoundError(f"Package '{name}' is not installed", package=name)
            if name in roots and roots[name] not in (None, constraint) and constraint is not None:
                raise DependencyConflict(name, [REQUESTED])
            roots[name] = constraint if constraint is not None else roots.get(name)

        source_names = {parse_request(text, known)[0] for text in build_from_source}
        selection, graph, warnings = self._select(roots, op, source_names)

        cycle = graph.find_cycle()
        if cycle:
            log.error("resolve_cycle", cycle=" -> ".join(cycle))
            raise CyclicDependency(cycle)

        nodes: List[PlanNode] = []
        for name in graph.topological():
            pkg = selection[name]
            receipt = self.receipts.get(name)
            requested = name in roots
            from_source = self._needs_source(pkg, source_names)
            node_op = Operation.INSTALL
            skip = False
            previous = None

            if requested and op is Operation.REINSTALL and receipt is not None:
                node_op, previous = Operation.REINSTALL, receipt
            elif receipt is not None and receipt.pkg_version == pkg.pkg_version:
                skip = True
                if requested and op is Operation.INSTALL:
                    warnings.append(f"{name} {pkg.pkg_version} is already installed")
                elif requested and op is Operation.UPGRADE:
                    warnings.append(f"{name} {pkg.pkg_version} is already up to date")
            elif receipt is not None:
                node_op, previous = Operation.UPGRADE, receipt

            nodes.append(
                PlanNode(
                    package=pkg,
                    op=node_op,
                    artifact=None if skip else self._artifact(pkg, from_source),
                    skip=skip,
                    requested=requested,
                    after=tuple(graph.dependencies(name)),
                    previous=previous,
                    build_from_source=from_source and not skip,
                )
            )

        plan = InstallPlan(op=op, nodes=tuple(nodes), warnings=tuple(warnings))
        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "resolve_complete",
            op=op.value,
            requested=sorted(roots),
            nodes=len(plan),
            active=len(plan.active),
            duration_ms=duration_ms,
        )

        return plan

    def _select(
        self, roots: Dict[str, str | None], op: Operation, source_names: Set[str]
    ) -> Tuple[Dict[str, Package], DependencyGraph, List[str]]:
        """Pick one version per name, re-running until constraints are stable."""
        hints: Dict[str, List[Requirement]] = defaultdict(list)

        for _ in range(MAX_PASSES):
            selection: Dict[str, Package] = {}
            requirements: Dict[str, List[Requirement]] = defaultdict(list)
            graph = DependencyGraph()
            for name in sorted(roots):
                requirements[name].append((REQUESTED, roots[name]))

            queue = sorted(roots)
            while queue:
                name = queue.pop(0)
                if name in selection:
                    continue
                graph.add(name)
                reqs = requirements[name] + [h for h in hints[name] if h not in requirements[name]]
                pkg = self._choose(name, reqs, prefer_installed=not (name in roots and op is Operation.UPGRADE))
                selection[name] = pkg
                for dep in sorted(pkg.runtime_dependencies(self._needs_source(pkg, source_names)), key=lambda d: d.name):
                    requirements[dep.name].append((name, dep.constraint))
                    graph.link(name, dep.name)
                    if dep.name not in selection:
                        queue.append(dep.name)

            violated = sorted(
                name
                for name, pkg in selection.items()
                if any(not satisfies(pkg.pkg_version, c) for _, c in requirements[name])
            )
            if not violated:
                return selection, graph, []

            progressed = False
            for name in violated:
                for req in requirements[name]:
                    if req not in hints[name]:
                        hints[name].append(req)
                        progressed = True
            if not progressed:
                name = violated[0]
                self._raise_unsatisfied(name, requirements[name], self._candidates(name))

        raise ResolutionError("Resolution did not converge", context={"requested": ", ".join(sorted(roots))})

    def _candidates(self, name: str) -> List[Package]:
        candidates = self.metadata.candidates(name)
        receipt = self.receipts.get(name)
        if receipt is not None and all(c.pkg_version != receipt.pkg_version for c in candidates):
            candidates = candidates + [package_from_receipt(receipt)]
        if not candidates:
            raise PackageNotFoundError(package=name)
        return candidates

    def _choose(self, name: str, reqs: List[Requirement], prefer_installed: bool) -> Package:
        candidates = self._candidates(name)
        supported = [c for c in candidates if c.supports(self.arch)]
        if not supported:
            raise UnsupportedArchitecture(name, self.arch)

        receipt = self.receipts.get(name)
        all_reqs = list(reqs)
        if receipt is None or not prefer_installed:
            all_reqs += self._installed_constraints.get(name, [])
        else:
            all_reqs += [r for r in self._installed_constraints.get(name, []) if r[0] != name]

        matching = [c for c in supported if all(satisfies(c.pkg_version, con) for _, con in all_reqs)]
        if not matching:
            self._raise_unsatisfied(name, all_reqs, supported)

        if prefer_installed and receipt is not None:
            for c in matching:
                if c.pkg_version == receipt.pkg_version:
                    return c
        return matching[0]

    def _raise_unsatisfied(self, name: str, reqs: List[Requirement], candidates: List[Package]) -> None:
        versions = [c.pkg_version for c in candidates]
        constrained = sorted({(r, c) for r, c in reqs if c not in (None, "", "*")})

        for requester, constraint in constrained:
            if not any(satisfies(v, constraint) for v in versions):
                log.error("resolve_unsatisfiable", package=name, constraint=constraint, requester=requester)
                raise UnsatisfiableVersion(name, constraint, requester, versions)

        for i, (r1, c1) in enumerate(constrained):
            for r2, c2 in constrained[i + 1:]:
                if r1 != r2 and not compatible(c1, c2, versions):
                    log.error("resolve_conflict", package=name, requesters=[r1, r2])
                    raise DependencyConflict(name, [r1, r2])

        raise DependencyConflict(name, [r for r, _ in constrained])

    def _needs_source(self, pkg: Package, source_names: Set[str]) -> bool:
        if pkg.kind is PackageKind.CASK:
            return False
        if pkg.name in source_names:
            return True
        return pkg.bottle_for(self.arch) is None and pkg.source is not None

    def _artifact(self, pkg: Package, from_source: bool) -> Artifact:
        if pkg.kind is PackageKind.CASK:
            if pkg.cask is None:
                raise ResolutionError(f"Cask '{pkg.name}' has no artifact", context={"package": pkg.name})
            return pkg.cask
        if from_source:
            if pkg.source is None:
                raise ResolutionError(
                    f"'{pkg.name}' has no source to build from", context={"package": pkg.name}
                )
            return pkg.source
        bottle = pkg.bottle_for(self.arch)
        if bottle is None:
            raise UnsupportedArchitecture(pkg.name, self.arch)
        return bottle

    ## Uninstall ##

    def resolve_uninstall(self, names: Sequence[str], force: bool = False) -> InstallPlan:
        """Plan removal of installed packages, dependents first.

        Args:
            names: Installed package names.
            force: Downgrade "still required by" conflicts to warnings.

        Returns:
            An InstallPlan of UNINSTALL nodes.

        Raises:
            PackageNotFoundError: if a name is not installed.
            DependencyConflict: if other installed packages depend on a name.
        """
        removing = sorted(set(names))
        for name in removing:
            if name not in self.receipts:
                raise PackageNotFoundError(f"Package '{name}' is not installed", package=name)

        dependents: Dict[str, Set[str]] = defaultdict(set)
        for receipt in self.receipts.values():
            for dep in receipt.dependency_names:
                dependents[dep].add(receipt.name)

        warnings: List[str] = []
        for name in removing:
            blockers = sorted(dependents[name] - set(removing))
            if not blockers:
                continue
            if not force:
                log.error("uninstall_blocked", package=name, dependents=blockers)
                raise DependencyConflict(
                    name,
                    blockers,
                    message=f"Refusing to uninstall '{name}': required by {', '.join(blockers)}",
                )
            message = f"{name} is still required by {', '.join(blockers)}"
            log.warning("uninstall_forced", package=name, dependents=blockers)
            warnings.append(message)

        graph = DependencyGraph()
        for name in removing:
            graph.add(name)
            for dep in sorted(self.receipts[name].dependency_names):
                if dep in removing:
                    graph.link(name, dep)

        cycle = graph.find_cycle()
        if cycle:
            raise CyclicDependency(cycle)

        nodes: List[PlanNode] = []
        for name in graph.topological(dependents_first=True):
            receipt = self.receipts[name]
            try:
                pkg = self.metadata.get(name, receipt.pkg_version)
            except PackageNotFoundError:
                pkg = package_from_receipt(receipt)
            blockers = sorted(n for n in dependents[name] if n in removing)
            nodes.append(
                PlanNode(
                    package=pkg,
                    op=Operation.UNINSTALL,
                    requested=True,
                    after=tuple(blockers),
                    previous=receipt,
                )
            )

        log.info("resolve_uninstall_complete", requested=removing, nodes=len(nodes), forced=bool(warnings))
        return InstallPlan(op=Operation.UNINSTALL, nodes=tuple(nodes), warnings=tuple(warnings))
