"""In-memory metadata store fed by the formula and cask providers."""

from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any, Iterable, List

from brewhouse.core.errors import PackageNotFoundError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import Package, PackageKind
from brewhouse.core.versions import Version
from brewhouse.providers import cask, formula

log = get_logger(__name__)


class InMemoryMetadataStore:
    """Metadata store holding already-loaded package definitions."""

    def __init__(self, packages: Iterable[Package] = ()) -> None:
        self._packages: dict[str, List[Package]] = {}
        for pkg in packages:
            self.add(pkg)

    def add(self, pkg: Package) -> None:
        versions = self._packages.setdefault(pkg.name, [])
        versions[:] = [p for p in versions if p.pkg_version != pkg.pkg_version]
        versions.append(pkg)
        versions.sort(key=lambda p: Version.parse(p.pkg_version), reverse=True)

    def names(self) -> set[str]:
        return set(self._packages)

    def all(self) -> List[Package]:
        return [p for name in sorted(self._packages) for p in self._packages[name]]

    def candidates(self, name: str) -> List[Package]:
        return list(self._packages.get(name, []))

    def get(self, name: str, version: str | None = None) -> Package:
        """Newest version of ``name``, or the one whose version matches exactly.

        Raises:
            PackageNotFoundError: if the name or version is unknown.
        """
        versions = self._packages.get(name)
        if not versions:
            raise PackageNotFoundError(package=name)
        if version is None:
            return versions[0]
        for pkg in versions:
            if version in (pkg.version, pkg.pkg_version):
                return pkg
        raise PackageNotFoundError(
            f"Package '{name}' has no version {version}", package=name
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InMemoryMetadataStore:
        """Load ``{"formulae": [...], "casks": [...]}`` definitions."""
        packages: List[Package] = []
        packages.extend(formula.parse_formula(f) for f in data.get("formulae", []))
        packages.extend(cask.parse_cask(c) for c in data.get("casks", []))
        return cls(packages)


def load_metadata(path: Path) -> InMemoryMetadataStore:
    """Load a metadata store from a JSON file or a directory of JSON files.

    Args:
        path: File or directory path.

    Returns:
        An InMemoryMetadataStore with every definition found.
    """
    start = time.perf_counter()
    path = Path(path)
    files = sorted(path.glob("*.json")) if path.is_dir() else [path]

    store = InMemoryMetadataStore()
    for f in files:
        data = json.loads(f.read_text())
        for pkg in InMemoryMetadataStore.from_dict(data).all():
            store.add(pkg)

    duration_ms = int((time.perf_counter() - start) * 1000)
    log.info(
        "metadata_loaded",
        path=str(path),
        formulae=sum(1 for p in store.all() if p.kind is PackageKind.FORMULA),
        casks=sum(1 for p in store.all() if p.kind is PackageKind.CASK),
        duration_ms=duration_ms,
    )

    return store
