"""Formula metadata provider.

Parses formula definitions shaped like ``brew info --json=v2`` output into
immutable Package objects. Dependency entries may be plain names or
``{"name": ..., "version": ">=1.2"}`` objects carrying a constraint.
"""

from __future__ import annotations

from typing import Any, List

from brewhouse.core.config import normalise_arch
from brewhouse.core.errors import PackageNotFoundError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import Bottle, Dependency, Package, PackageKind, SourceBuild

log = get_logger(__name__)

# macOS bottle tags without an arch prefix are Intel builds.
_INTEL_MACOS_TAGS = {"sonoma", "ventura", "monterey", "big_sur", "catalina", "sequoia"}


def arch_from_tag(tag: str) -> str:
    """Map a bottle tag such as ``arm64_sonoma`` or ``x86_64_linux`` to an arch family."""
    if tag == "all":
        return "all"
    if tag.startswith("arm64"):
        return "arm64"
    if tag.startswith("x86_64") or tag in _INTEL_MACOS_TAGS:
        return "x86_64"
    return normalise_arch(tag.split("_")[0])


def parse_dependencies(f: dict[str, Any]) -> List[Dependency]:
    """Collect runtime and build dependencies from a formula dict."""
    deps: List[Dependency] = []
    for build, key in ((False, "dependencies"), (True, "build_dependencies")):
        for item in f.get(key) or []:
            if isinstance(item, dict):
                deps.append(
                    Dependency(name=str(item["name"]), constraint=item.get("version"), build=build)
                )
            else:
                deps.append(Dependency(name=str(item), build=build))
    return deps


def parse_bottles(f: dict[str, Any]) -> List[Bottle]:
    files = (f.get("bottle") or {}).get("stable", {}).get("files", {})
    bottles: List[Bottle] = []
    for tag in sorted(files):
        spec = files[tag]
        bottles.append(Bottle(url=spec["url"], sha256=spec["sha256"], arch=arch_from_tag(tag)))
    return bottles


def parse_arches(f: dict[str, Any]) -> tuple[str, ...]:
    arches = [normalise_arch(a) for a in f.get("arches") or []]
    for req in f.get("requirements") or []:
        if req.get("name") == "arch" and req.get("version"):
            arches.append(normalise_arch(req["version"]))
    return tuple(sorted(set(arches)))


def parse_formula(f: dict[str, Any]) -> Package:
    """Build a Package from one formula dict.

    Args:
        f: Formula definition.

    Returns:
        An immutable Package instance.
    """
    if not f.get("name"):
        raise PackageNotFoundError("Formula definition has no name", kind="formula")

    versions = f.get("versions") or {}
    version = versions.get("stable") or versions.get("head") or f.get("version")
    if not version:
        raise PackageNotFoundError(
            f"Formula '{f['name']}' has no stable version", package=f["name"], kind="formula"
        )

    source = None
    stable_url = (f.get("urls") or {}).get("stable")
    if stable_url and stable_url.get("url"):
        source = SourceBuild(
            url=stable_url["url"],
            sha256=stable_url.get("checksum") or stable_url.get("sha256") or "",
            recipe=dict(f.get("build") or {}),
        )

    pkg = Package(
        name=f["name"],
        version=str(version),
        kind=PackageKind.FORMULA,
        revision=int(f.get("revision") or 0),
        desc=f.get("desc"),
        dependencies=tuple(parse_dependencies(f)),
        bottles=tuple(parse_bottles(f)),
        source=source,
        arches=parse_arches(f),
        tap=f.get("tap"),
    )
    log.debug("formula_parsed", package=pkg.name, version=pkg.pkg_version, bottles=len(pkg.bottles))

    return pkg
