"""Installer boundary: the one place artifact kinds are told apart."""

from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, List

from brewhouse.core.config import BrewhouseConfig
from brewhouse.core.errors import InstallError, RollbackFailure
from brewhouse.core.logging import get_logger
from brewhouse.core.models import (
    Bottle,
    CaskArtifact,
    InstalledPath,
    PackageKind,
    PlanNode,
    Receipt,
    SourceBuild,
    StanzaKind,
)
from brewhouse.core.prefix import LINK_DIRS, Prefix

from .base import InstallerStrategy, Recorder, StagedPaths, keg_links, rollback
from .bottle import BottleInstaller
from .cask import CaskInstaller
from .source import Builder, SourceInstaller

log = get_logger(__name__)


class ArtifactInstaller:
    """Stages, commits, rolls back and retires packages.

    Args:
        prefix: Install root.
        config: Prefix configuration (cask targets, script timeouts).
        builder: External builder for source builds, or None to disable them.
    """

    def __init__(self, prefix: Prefix, config: BrewhouseConfig, builder: Builder | None = None) -> None:
        self.prefix = prefix
        self.config = config
        self.bottles = BottleInstaller(prefix)
        self.sources = SourceInstaller(prefix, builder)
        self.casks = CaskInstaller(prefix, config)

    def strategy_for(self, node: PlanNode) -> InstallerStrategy:
        match node.artifact:
            case Bottle():
                return self.bottles
            case SourceBuild():
                return self.sources
            case CaskArtifact():
                return self.casks
            case _:
                raise InstallError("Node has no installable artifact", context={"package": node.name})

    async def stage(self, node: PlanNode, archive: Path, workdir: Path) -> StagedPaths:
        """Prepare ``node`` in ``workdir``. Never writes to the live prefix."""
        start = time.perf_counter()
        workdir.mkdir(parents=True, exist_ok=True)
        staged = await self.strategy_for(node).stage(node, archive, workdir)
        staged.checksums = {node.artifact.url: node.artifact.sha256}
        log.info(
            "stage_complete",
            package=node.name,
            kind=node.package.kind.value,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return staged

    async def commit(
        self, staged: StagedPaths, backup_dir: Path, on_record: Callable[[InstalledPath], None] | None = None
    ) -> List[InstalledPath]:
        """Apply staged content to the prefix.

        On failure, whatever was already changed is rolled back before the
        error propagates.

        Returns:
            The changes made, in order.

        Raises:
            InstallError: commit failed and was reverted.
            RollbackFailure: commit failed and could not be reverted.
        """
        node = staged.node
        recorder = Recorder(backup_dir, on_record)
        try:
            await self.strategy_for(node).commit(staged, recorder)
        except BaseException as e:
            log.error("commit_failed", package=node.name, error=str(e), steps=len(recorder.paths))
            await self.rollback(recorder.paths, cause=e)
            raise
        log.info("commit_complete", package=node.name, version=node.package.pkg_version, steps=len(recorder.paths))
        return recorder.paths

    async def retire(
        self,
        receipt: Receipt,
        backup_dir: Path,
        zap: bool = False,
        on_record: Callable[[InstalledPath], None] | None = None,
    ) -> List[InstalledPath]:
        """Remove an installed package as recorded by its receipt."""
        recorder = Recorder(backup_dir, on_record)
        try:
            if receipt.kind is PackageKind.CASK:
                await self.casks.retire(receipt, recorder, zap=zap)
            else:
                self._retire_keg(receipt, recorder)
        except BaseException as e:
            log.error("retire_failed", package=receipt.name, error=str(e))
            await self.rollback(recorder.paths, cause=e)
            raise
        log.info("retire_complete", package=receipt.name, version=receipt.pkg_version, steps=len(recorder.paths))
        return recorder.paths

    def _retire_keg(self, receipt: Receipt, recorder: Recorder) -> None:
        links = [l for l in keg_links(self.prefix, receipt) if self.prefix.keg_owner(l) == receipt.name]
        for link in links:
            recorder.unlink(link)
        for link in links:
            top = self.prefix.root / link.relative_to(self.prefix.root).parts[0]
            recorder.prune(link.parent, top)

        opt = self.prefix.opt_link(receipt.name)
        if opt.is_symlink() and self.prefix.keg_owner(opt) == receipt.name:
            recorder.unlink(opt)

        keg = self.prefix.keg(receipt.name, receipt.pkg_version)
        if keg.exists():
            recorder.backup(keg)
        recorder.prune(keg.parent, self.prefix.cellar)

    async def rollback(self, paths: List[InstalledPath], cause: BaseException | None = None) -> None:
        """Undo ``paths``; a failure here is fatal."""
        try:
            await rollback(paths, timeout=self.config.script_timeout)
        except RollbackFailure as failure:
            if cause is not None:
                raise failure from cause
            raise

    def receipt_for(
        self, node: PlanNode, paths: List[InstalledPath], dependencies: List[str], installed_on: str
    ) -> Receipt:
        """Receipt for a node whose commit produced ``paths``."""
        pkg = node.package
        installed = [
            p.path for p in paths
            if p.action in ("created", "linked", "moved") and not self._is_link_dir(p.path)
        ]
        previous = node.previous
        requested = node.requested or (previous.requested if previous is not None else False)
        if previous is not None and previous.pkg_version == pkg.pkg_version and previous.installed_on:
            installed_on = previous.installed_on

        artifact = node.artifact
        uninstall, zap = [], []
        if isinstance(artifact, CaskArtifact):
            uninstall = [dict(s.directives) for s in artifact.of_kind(StanzaKind.UNINSTALL)]
            zap = [dict(s.directives) for s in artifact.of_kind(StanzaKind.ZAP)]

        return Receipt(
            name=pkg.name,
            kind=pkg.kind,
            version=pkg.version,
            revision=pkg.revision,
            checksums={artifact.url: artifact.sha256} if artifact is not None else {},
            installed_paths=sorted(set(installed)),
            dependencies=sorted(dependencies),
            requested=requested,
            built_from_source=node.build_from_source,
            arch=self.config.arch,
            installed_on=installed_on,
            uninstall=uninstall,
            zap=zap,
        )

    def _is_link_dir(self, path: str) -> bool:
        return Path(path) in {self.prefix.root / d for d in LINK_DIRS}
