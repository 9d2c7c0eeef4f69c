"""Cask installer: stanza-driven placement of application bundles."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, List, Mapping
from urllib.parse import unquote, urlparse

from brewhouse.core.archive import is_archive, safe_extract
from brewhouse.core.config import BrewhouseConfig
from brewhouse.core.errors import InstallConflict, InstallError
from brewhouse.core.logging import get_logger
from brewhouse.core.models import (
    PLACEMENT_STANZAS,
    CaskArtifact,
    PlanNode,
    Receipt,
    Stanza,
    StanzaKind,
)
from brewhouse.core.prefix import Prefix, move
from brewhouse.core.shell import run_checked

from .base import Recorder, StagedPaths, artifact_of

log = get_logger(__name__)

UNSUPPORTED_DIRECTIVES = ("launchctl", "quit", "signal", "login_item", "kext", "pkgutil")


def directive_script(value: Any) -> List[str]:
    """``script`` directive as argv: a list, a string, or ``{executable, args}``."""
    if isinstance(value, dict):
        return [str(value["executable"]), *map(str, value.get("args") or [])]
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value or []]


def _paths(value: Any) -> List[Path]:
    items = value if isinstance(value, list) else [value]
    return [Path(os.path.expanduser(str(v))) for v in items if v]


class CaskInstaller:
    """Stages the downloaded container and applies stanzas in declared order.

    Uninstall and zap stanzas are never executed here; they are copied into
    the receipt and run by :meth:`retire`.
    """

    def __init__(self, prefix: Prefix, config: BrewhouseConfig) -> None:
        self.prefix = prefix
        self.config = config

    async def stage(self, node: PlanNode, archive: Path, workdir: Path) -> StagedPaths:
        artifact = artifact_of(node, CaskArtifact)
        root = workdir / "extract"
        if is_archive(archive):
            safe_extract(archive, root)
        else:
            root.mkdir(parents=True, exist_ok=True)
            name = Path(unquote(urlparse(artifact.url).path)).name or archive.name
            shutil.copy2(archive, root / name)

        for stanza in artifact.of_kind(*PLACEMENT_STANZAS):
            if not (root / stanza.source).exists():
                raise InstallError(
                    f"Cask artifact '{stanza.source}' not found in download",
                    context={"package": node.name, "stanza": stanza.kind.value},
                )
        return StagedPaths(node=node, root=root, workdir=workdir)

    def _env(self, node: PlanNode, staged_dir: Path) -> dict[str, str]:
        return {
            "BREWHOUSE_CASK": node.name,
            "BREWHOUSE_VERSION": node.package.version,
            "BREWHOUSE_STAGED": str(staged_dir),
            "BREWHOUSE_PREFIX": str(self.prefix.root),
        }

    async def _script(self, argv: List[str], recorder: Recorder, cwd: Path, env: Mapping[str, str]) -> None:
        await run_checked(*argv, timeout=self.config.script_timeout, cwd=cwd, env=env)
        recorder.record(Path(argv[0]), "executed")

    def _unplace(self, receipt: Receipt, recorder: Recorder) -> None:
        """Take away everything ``receipt`` placed outside its Caskroom directory."""
        cask_root = self.prefix.caskroom / receipt.name
        for p in map(Path, reversed(receipt.installed_paths)):
            if cask_root == p or cask_root in p.parents:
                continue
            if p.is_symlink():
                recorder.unlink(p)
            elif p.exists():
                recorder.backup(p)

    async def commit(self, staged: StagedPaths, recorder: Recorder) -> None:
        node = staged.node
        artifact = artifact_of(node, CaskArtifact)
        cask_dir = self.prefix.cask_dir(node.name, node.package.version)
        env = self._env(node, staged.root)

        for stanza in artifact.of_kind(StanzaKind.PREFLIGHT):
            await self._script(list(stanza.args), recorder, staged.root, env)

        if node.previous is not None:
            self._unplace(node.previous, recorder)
        if cask_dir.exists():
            recorder.backup(cask_dir)
        recorder.mkdir(cask_dir.parent, self.prefix.root)
        move(staged.root, cask_dir)
        recorder.record(cask_dir, "created")
        env["BREWHOUSE_STAGED"] = str(cask_dir)

        for stanza in artifact.stanzas:
            if stanza.kind in PLACEMENT_STANZAS:
                await self._place(node, stanza, cask_dir, recorder)
            elif stanza.kind is StanzaKind.POSTFLIGHT:
                await self._script(list(stanza.args), recorder, cask_dir, env)

        if node.previous is not None and node.previous.version != node.package.version:
            old_dir = self.prefix.cask_dir(node.name, node.previous.version)
            if old_dir.exists():
                recorder.backup(old_dir)

    async def _place(self, node: PlanNode, stanza: Stanza, cask_dir: Path, recorder: Recorder) -> None:
        src = cask_dir / stanza.source
        name = stanza.target or Path(stanza.source).name

        match stanza.kind:
            case StanzaKind.BINARY:
                recorder.link(src, self.prefix.root / "bin" / name, node.name, self.prefix)
            case StanzaKind.PKG:
                argv = [a.format(pkg=str(src)) for a in self.config.pkg_installer_command]
                await self._script(argv, recorder, cask_dir, self._env(node, cask_dir))
            case StanzaKind.APP | StanzaKind.PLUGIN | StanzaKind.FONT:
                base = {
                    StanzaKind.APP: self.config.appdir,
                    StanzaKind.PLUGIN: self.config.plugindir,
                    StanzaKind.FONT: self.config.fontdir,
                }[stanza.kind]
                dst = Path(os.path.expanduser(name)) if os.path.isabs(name) else base / name
                if dst.exists() or dst.is_symlink():
                    raise InstallConflict(str(dst), package=node.name)
                dst.parent.mkdir(parents=True, exist_ok=True)
                if stanza.kind is StanzaKind.FONT:
                    shutil.copy2(src, dst)
                    recorder.record(dst, "created")
                else:
                    move(src, dst)
                    recorder.record(dst, "moved", backup=str(src))

        log.debug("cask_stanza_applied", package=node.name, stanza=stanza.kind.value, source=stanza.source)

    async def _directive(self, receipt: Receipt, directives: Mapping[str, Any], recorder: Recorder) -> None:
        for key, value in directives.items():
            if key in ("delete", "trash"):
                for p in _paths(value):
                    if p.exists() or p.is_symlink():
                        recorder.backup(p)
            elif key == "rmdir":
                for p in _paths(value):
                    if p.is_dir() and not any(p.iterdir()):
                        p.rmdir()
                        recorder.record(p, "rmdir")
            elif key == "script":
                argv = directive_script(value)
                if argv:
                    await run_checked(*argv, timeout=self.config.script_timeout)
                    recorder.record(Path(argv[0]), "executed")
            elif key in UNSUPPORTED_DIRECTIVES:
                log.warning("cask_directive_skipped", package=receipt.name, directive=key)
            else:
                log.warning("cask_directive_unknown", package=receipt.name, directive=key)

    async def retire(self, receipt: Receipt, recorder: Recorder, zap: bool = False) -> None:
        """Run uninstall (and optionally zap) directives, then remove placements."""
        for directives in receipt.uninstall:
            await self._directive(receipt, directives, recorder)
        if zap:
            for directives in receipt.zap:
                await self._directive(receipt, directives, recorder)

        self._unplace(receipt, recorder)
        cask_dir = self.prefix.cask_dir(receipt.name, receipt.version)
        if cask_dir.exists():
            recorder.backup(cask_dir)
        recorder.prune(cask_dir.parent, self.prefix.caskroom)
