"""Bottle installer: prebuilt keg archives poured into the Cellar."""

from __future__ import annotations

from pathlib import Path

from brewhouse.core.archive import safe_extract
from brewhouse.core.errors import InstallError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import PlanNode
from brewhouse.core.prefix import Prefix, atomic_symlink, move, relative_target

from .base import Recorder, StagedPaths, keg_links, link_keg

log = get_logger(__name__)


def unwrap(root: Path, name: str) -> Path:
    """Strip the ``<name>/<version>/`` wrapper bottles are packed with."""
    children = list(root.iterdir())
    if len(children) == 1 and children[0].is_dir() and children[0].name == name:
        inner = list(children[0].iterdir())
        if len(inner) == 1 and inner[0].is_dir() and not inner[0].is_symlink():
            return inner[0]
        return children[0]
    return root


def commit_keg(prefix: Prefix, staged: StagedPaths, recorder: Recorder) -> None:
    """Move staged content into the Cellar, swap ``opt`` and link the keg.

    The previous version of the package (upgrade or reinstall) is unlinked and
    moved aside only after the new keg is in place.
    """
    node = staged.node
    name = node.name
    keg = prefix.keg(name, node.package.pkg_version)
    previous = node.previous

    if keg.exists() or keg.is_symlink():
        recorder.backup(keg)
    recorder.mkdir(keg.parent, prefix.root)
    move(staged.root, keg)
    recorder.record(keg, "created")

    if previous is not None:
        for link in keg_links(prefix, previous):
            if prefix.keg_owner(link) == name:
                recorder.unlink(link)

    opt = prefix.opt_link(name)
    recorder.mkdir(opt.parent, prefix.root)
    old_target = atomic_symlink(relative_target(keg, opt), opt)
    recorder.record(opt, "linked", previous_target=old_target)

    link_keg(prefix, keg, name, recorder)

    if previous is not None and previous.pkg_version != node.package.pkg_version:
        old_keg = prefix.keg(name, previous.pkg_version)
        if old_keg.exists():
            recorder.backup(old_keg)


class BottleInstaller:
    """Stages a bottle by extracting it; commits it with :func:`commit_keg`."""

    def __init__(self, prefix: Prefix) -> None:
        self.prefix = prefix

    async def stage(self, node: PlanNode, archive: Path, workdir: Path) -> StagedPaths:
        extract_dir = workdir / "extract"
        safe_extract(archive, extract_dir)
        root = unwrap(extract_dir, node.name)
        if not any(root.iterdir()):
            raise InstallError("Bottle is empty", context={"package": node.name})
        log.debug("bottle_staged", package=node.name, root=str(root))
        return StagedPaths(node=node, root=root, workdir=workdir)

    async def commit(self, staged: StagedPaths, recorder: Recorder) -> None:
        commit_keg(self.prefix, staged, recorder)
