"""Shared installer types: staged content, change recording, linking and rollback."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, List, Protocol, TypeVar

from brewhouse.core.errors import InstallConflict, InstallError, RollbackFailure
from brewhouse.core.logging import get_logger
from brewhouse.core.models import InstalledPath, PlanNode, Receipt
from brewhouse.core.prefix import (
    LINK_DIRS,
    Prefix,
    atomic_symlink,
    move,
    relative_target,
    remove_path,
)
from brewhouse.core.shell import run_checked

log = get_logger(__name__)

A = TypeVar("A")


def artifact_of(node: PlanNode, kind: type[A]) -> A:
    """The node's artifact, if it is a ``kind``."""
    if not isinstance(node.artifact, kind):
        raise InstallError(
            f"{node.name} has no {kind.__name__} artifact",
            context={"package": node.name, "artifact": type(node.artifact).__name__},
        )
    return node.artifact


@dataclass
class StagedPaths:
    """Content prepared for one node outside the live prefix."""

    node: PlanNode
    root: Path
    workdir: Path
    checksums: dict[str, str] = field(default_factory=dict)


class Recorder:
    """Collects InstalledPath entries in the order changes are made.

    Anything that must be moved out of the way goes into ``backup_dir`` so
    that rollback can put it back.
    """

    def __init__(
        self, backup_dir: Path, on_record: Callable[[InstalledPath], None] | None = None
    ) -> None:
        self.backup_dir = backup_dir
        self.on_record = on_record
        self.paths: List[InstalledPath] = []

    def record(self, path: Path, action: str, **kw: Any) -> None:
        entry = InstalledPath(path=str(path), action=action, **kw)
        self.paths.append(entry)
        if self.on_record is not None:
            self.on_record(entry)

    def mkdir(self, directory: Path, stop: Path) -> None:
        """Create ``directory`` and missing parents below ``stop``, recording each."""
        missing = []
        d = directory
        while not d.exists() and d != stop and stop in d.parents:
            missing.append(d)
            d = d.parent
        for d in reversed(missing):
            d.mkdir()
            self.record(d, "mkdir")

    def backup(self, path: Path) -> Path:
        """Move ``path`` aside and record it as removed."""
        self.backup_dir.mkdir(parents=True, exist_ok=True)
        dest = self.backup_dir / f"{len(self.paths):04d}-{path.name}"
        move(path, dest)
        self.record(path, "removed", backup=str(dest))
        return dest

    def link(self, target: Path, link: Path, package: str, prefix: Prefix) -> None:
        """Symlink ``link`` to ``target``, replacing only links owned by ``package``."""
        self.mkdir(link.parent, prefix.root)
        if link.is_symlink() or link.exists():
            owner = prefix.keg_owner(link)
            if owner != package:
                raise InstallConflict(str(link), package=package, owner=owner)
            previous = atomic_symlink(relative_target(target, link), link)
            self.record(link, "linked", previous_target=previous)
            return
        os.symlink(relative_target(target, link), link)
        self.record(link, "linked")

    def unlink(self, link: Path) -> None:
        previous = os.readlink(link)
        link.unlink()
        self.record(link, "unlinked", previous_target=previous)

    def prune(self, directory: Path, stop: Path) -> None:
        """Remove ``directory`` and its parents below ``stop`` while they are empty."""
        d = directory
        while d != stop and stop in d.parents and d.is_dir() and not any(d.iterdir()):
            d.rmdir()
            self.record(d, "rmdir")
            d = d.parent


class InstallerStrategy(Protocol):
    """Contract every artifact kind implements."""

    async def stage(self, node: PlanNode, archive: Path, workdir: Path) -> StagedPaths:
        ...

    async def commit(self, staged: StagedPaths, recorder: Recorder) -> None:
        ...


def link_keg(prefix: Prefix, keg: Path, package: str, recorder: Recorder) -> None:
    """Link every file under the keg's bin, sbin, lib and include into the prefix."""
    for top in LINK_DIRS:
        src_root = keg / top
        if not src_root.is_dir():
            continue
        for dirpath, dirnames, filenames in os.walk(src_root):
            dirnames.sort()
            here = Path(dirpath)
            entries = sorted(filenames)
            # Symlinked directories are linked as a unit rather than walked.
            for d in list(dirnames):
                if (here / d).is_symlink():
                    dirnames.remove(d)
                    entries.append(d)
            for fname in sorted(entries):
                src = here / fname
                dst = prefix.root / top / src.relative_to(src_root)
                recorder.link(src, dst, package, prefix)


def keg_links(prefix: Prefix, receipt: Receipt) -> List[Path]:
    """Link-layer symlinks recorded by ``receipt`` that still exist."""
    roots = [prefix.root / top for top in LINK_DIRS]
    out = []
    for p in map(Path, receipt.installed_paths):
        if p.is_symlink() and any(r in p.parents for r in roots):
            out.append(p)
    return out


async def rollback(paths: List[InstalledPath], timeout: int | None = 600) -> None:
    """Undo ``paths`` in reverse order.

    Every entry is attempted even after a failure.

    Raises:
        RollbackFailure: listing each path that could not be restored.
    """
    failed: List[str] = []
    for entry in reversed(paths):
        path = Path(entry.path)
        try:
            match entry.action:
                case "created":
                    remove_path(path)
                case "moved":
                    move(path, Path(entry.backup))
                case "linked":
                    if entry.previous_target is not None:
                        atomic_symlink(entry.previous_target, path)
                    elif path.is_symlink():
                        path.unlink()
                case "unlinked":
                    if path.is_symlink():
                        path.unlink()
                    os.symlink(entry.previous_target, path)
                case "removed":
                    move(Path(entry.backup), path)
                case "mkdir":
                    if path.is_dir():
                        path.rmdir()
                case "rmdir":
                    path.mkdir(exist_ok=True)
                case "executed":
                    if entry.undo:
                        await run_checked(*entry.undo, timeout=timeout)
                    else:
                        log.warning("rollback_not_reversible", path=entry.path)
                case _:
                    raise ValueError(f"unknown action {entry.action}")
        except Exception as e:
            log.error("rollback_step_failed", path=entry.path, action=entry.action, error=str(e))
            failed.append(entry.path)

    if failed:
        raise RollbackFailure(failed)
    log.debug("rollback_complete", steps=len(paths))
