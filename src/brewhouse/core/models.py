"""Data models for packages, plans, receipts and transactions."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum, Flag, auto
from typing import Any, Iterator, Union

from brewhouse.core.versions import pkg_version


class PackageKind(Enum):
    """Enumeration of package kinds."""

    FORMULA = "formula"
    CASK = "cask"


class PackageStatus(Flag):
    """Enumeration of installed package statuses."""

    NONE = 0
    OUTDATED = auto()
    NOT_LINKED = auto()
    FROM_SOURCE = auto()
    DEPENDENCY = auto()
    ORPHANED = auto()


class Operation(Enum):
    """Operation a plan node performs."""

    INSTALL = "install"
    UPGRADE = "upgrade"
    REINSTALL = "reinstall"
    UNINSTALL = "uninstall"


class NodeState(Enum):
    """Lifecycle of a single plan node inside a transaction."""

    PENDING = "pending"
    FETCHING = "fetching"
    STAGING = "staging"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"
    ABANDONED = "abandoned"


class TransactionState(Enum):
    """Lifecycle of a transaction."""

    PLANNED = "planned"
    RUNNING = "running"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    FATAL = "fatal"


class PrefixOutcome(Enum):
    """What a finished transaction did to the prefix."""

    CHANGED = "changed"
    UNCHANGED = "unchanged"
    REVERTED = "changed-but-reverted"
    INCONSISTENT = "changed-and-inconsistent"


class StanzaKind(Enum):
    """Cask stanza types."""

    APP = "app"
    BINARY = "binary"
    PKG = "pkg"
    FONT = "font"
    PLUGIN = "plugin"
    PREFLIGHT = "preflight"
    POSTFLIGHT = "postflight"
    UNINSTALL = "uninstall"
    ZAP = "zap"


PLACEMENT_STANZAS = (
    StanzaKind.APP,
    StanzaKind.BINARY,
    StanzaKind.PKG,
    StanzaKind.FONT,
    StanzaKind.PLUGIN,
)


@dataclass(frozen=True)
class Dependency:
    """Represents a package dependency."""

    name: str
    constraint: str | None = None
    build: bool = False

    def __str__(self) -> str:
        return f"{self.name}@{self.constraint}" if self.constraint else self.name


@dataclass(frozen=True)
class PackageId:
    """Name plus exact version of a package."""

    name: str
    version: str
    revision: int = 0

    @property
    def pkg_version(self) -> str:
        return pkg_version(self.version, self.revision)

    def __str__(self) -> str:
        return f"{self.name}@{self.pkg_version}"


@dataclass(frozen=True)
class Bottle:
    """Prebuilt binary archive for one architecture (or ``all``)."""

    url: str
    sha256: str
    arch: str = "all"

    destination = "cellar"


@dataclass(frozen=True)
class SourceBuild:
    """Source tarball plus the recipe handed to the external builder."""

    url: str
    sha256: str
    recipe: dict[str, Any] = field(default_factory=dict, hash=False)

    destination = "cellar"


@dataclass(frozen=True)
class Stanza:
    """One typed cask action.

    Placement stanzas use ``source``/``target``; script stanzas use ``args``;
    uninstall and zap stanzas carry ``directives`` such as
    ``{"delete": [...], "script": [...]}``.
    """

    kind: StanzaKind
    source: str | None = None
    target: str | None = None
    args: tuple[str, ...] = ()
    directives: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class CaskArtifact:
    """Downloaded cask container plus its stanzas in declared order."""

    url: str
    sha256: str
    stanzas: tuple[Stanza, ...] = ()

    destination = "caskroom"

    def of_kind(self, *kinds: StanzaKind) -> list[Stanza]:
        return [s for s in self.stanzas if s.kind in kinds]


Artifact = Union[Bottle, SourceBuild, CaskArtifact]


@dataclass(frozen=True)
class Package:
    """An immutable package definition from the metadata store."""

    name: str
    version: str
    kind: PackageKind = PackageKind.FORMULA
    revision: int = 0
    desc: str | None = None
    dependencies: tuple[Dependency, ...] = ()
    bottles: tuple[Bottle, ...] = ()
    source: SourceBuild | None = None
    cask: CaskArtifact | None = None
    arches: tuple[str, ...] = ()
    tap: str | None = None

    @property
    def id(self) -> PackageId:
        return PackageId(self.name, self.version, self.revision)

    @property
    def pkg_version(self) -> str:
        return pkg_version(self.version, self.revision)

    def runtime_dependencies(self, build_from_source: bool = False) -> list[Dependency]:
        """Dependencies needed for this install, build-only ones included on request."""
        return [d for d in self.dependencies if build_from_source or not d.build]

    def bottle_for(self, arch: str) -> Bottle | None:
        """Pick the bottle for ``arch``, falling back to an ``all`` bottle."""
        by_arch = {b.arch: b for b in self.bottles}
        return by_arch.get(arch) or by_arch.get("all")

    def supports(self, arch: str) -> bool:
        return not self.arches or arch in self.arches


@dataclass(frozen=True)
class InstalledPath:
    """One filesystem change made by a commit, with what is needed to undo it.

    Actions:
        created   new file, directory or keg; undo removes it
        moved     object moved from ``backup`` to ``path``; undo moves it back
        linked    symlink created or swapped; undo restores ``previous_target``
        unlinked  symlink removed; undo recreates it to ``previous_target``
        removed   object moved aside to ``backup``; undo moves it back
        mkdir     directory created; undo removes it if empty
        rmdir     empty directory removed; undo recreates it
        executed  external command ran; undo runs ``undo`` if given
    """

    path: str
    action: str
    backup: str | None = None
    previous_target: str | None = None
    undo: tuple[str, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"path": self.path, "action": self.action}
        if self.backup is not None:
            data["backup"] = self.backup
        if self.previous_target is not None:
            data["previous_target"] = self.previous_target
        if self.undo is not None:
            data["undo"] = list(self.undo)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstalledPath:
        undo = data.get("undo")
        return cls(
            path=data["path"],
            action=data["action"],
            backup=data.get("backup"),
            previous_target=data.get("previous_target"),
            undo=tuple(undo) if undo is not None else None,
        )


@dataclass
class Receipt:
    """Persisted record of one completed install."""

    name: str
    kind: PackageKind
    version: str
    revision: int = 0
    checksums: dict[str, str] = field(default_factory=dict)
    installed_paths: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    requested: bool = True
    built_from_source: bool = False
    arch: str | None = None
    installed_on: str | None = None
    uninstall: list[dict[str, Any]] = field(default_factory=list)
    zap: list[dict[str, Any]] = field(default_factory=list)

    @property
    def id(self) -> PackageId:
        return PackageId(self.name, self.version, self.revision)

    @property
    def pkg_version(self) -> str:
        return pkg_version(self.version, self.revision)

    @property
    def dependency_names(self) -> list[str]:
        return [d.rpartition("@")[0] or d for d in self.dependencies]

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "version": self.version,
            "revision": self.revision,
            "checksums": dict(sorted(self.checksums.items())),
            "installed_paths": list(self.installed_paths),
            "dependencies": sorted(self.dependencies),
            "requested": self.requested,
            "built_from_source": self.built_from_source,
            "arch": self.arch,
            "installed_on": self.installed_on,
            "uninstall": list(self.uninstall),
            "zap": list(self.zap),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Receipt:
        return cls(
            name=data["name"],
            kind=PackageKind(data.get("kind", "formula")),
            version=str(data["version"]),
            revision=int(data.get("revision", 0)),
            checksums=dict(data.get("checksums", {})),
            installed_paths=list(data.get("installed_paths", [])),
            dependencies=list(data.get("dependencies", [])),
            requested=bool(data.get("requested", True)),
            built_from_source=bool(data.get("built_from_source", False)),
            arch=data.get("arch"),
            installed_on=data.get("installed_on"),
            uninstall=list(data.get("uninstall", [])),
            zap=list(data.get("zap", [])),
        )


@dataclass(frozen=True)
class PlanNode:
    """One per-package operation in an install plan.

    ``after`` lists the names of plan nodes that must reach Done before this
    node may start. ``previous`` is the installed receipt this node replaces
    or removes.
    """

    package: Package
    op: Operation
    artifact: Artifact | None = None
    skip: bool = False
    requested: bool = False
    after: tuple[str, ...] = ()
    previous: Receipt | None = field(default=None, compare=False)
    build_from_source: bool = False

    @property
    def name(self) -> str:
        return self.package.name

    def describe(self) -> str:
        verb = "skip" if self.skip else self.op.value
        return f"{verb} {self.package.id}"

    def to_dict(self) -> dict[str, Any]:
        artifact = None
        if self.artifact is not None:
            artifact = {
                "type": type(self.artifact).__name__.lower(),
                "url": self.artifact.url,
                "sha256": self.artifact.sha256,
            }
        return {
            "package": str(self.package.id),
            "kind": self.package.kind.value,
            "op": self.op.value,
            "skip": self.skip,
            "requested": self.requested,
            "after": list(self.after),
            "artifact": artifact,
            "previous": str(self.previous.id) if self.previous else None,
            "build_from_source": self.build_from_source,
        }


@dataclass(frozen=True)
class InstallPlan:
    """Topologically ordered plan nodes."""

    op: Operation
    nodes: tuple[PlanNode, ...] = ()
    warnings: tuple[str, ...] = ()

    def __iter__(self) -> Iterator[PlanNode]:
        return iter(self.nodes)

    def __len__(self) -> int:
        return len(self.nodes)

    def names(self) -> list[str]:
        return [n.name for n in self.nodes]

    def node(self, name: str) -> PlanNode:
        for n in self.nodes:
            if n.name == name:
                return n
        raise KeyError(name)

    @property
    def active(self) -> list[PlanNode]:
        return [n for n in self.nodes if not n.skip]

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": self.op.value,
            "nodes": [n.to_dict() for n in self.nodes],
            "warnings": list(self.warnings),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=True)


@dataclass
class NodeOutcome:
    """Final state of one node and the error that stopped it, if any."""

    name: str
    op: Operation
    state: NodeState
    step: str | None = None
    error: BaseException | None = None


@dataclass
class TransactionResult:
    """Outcome of running one transaction."""

    id: str
    state: TransactionState
    prefix: PrefixOutcome
    nodes: dict[str, NodeOutcome] = field(default_factory=dict)
    error: BaseException | None = None
    inconsistent_paths: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is TransactionState.COMMITTED

    @property
    def failed_node(self) -> NodeOutcome | None:
        for outcome in self.nodes.values():
            if outcome.state is NodeState.FAILED:
                return outcome
        return None

    def describe(self) -> str:
        """Human readable one-paragraph summary of the outcome."""
        if self.ok:
            done = sum(1 for n in self.nodes.values() if n.state is NodeState.DONE)
            return f"Transaction {self.id} committed ({done} package(s) changed)"
        failed = self.failed_node
        where = f"{failed.name} failed during {failed.step}" if failed else "transaction failed"
        reason = str(self.error) if self.error else "unknown error"
        text = f"{where}: {reason}. Prefix {self.prefix.value}."
        if self.inconsistent_paths:
            text += " Inconsistent paths: " + ", ".join(self.inconsistent_paths)
        return text
