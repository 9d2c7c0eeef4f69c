"""Prefix layout and the small set of filesystem primitives commits use.

    <prefix>/Cellar/<name>/<version>/    real content (kegs)
    <prefix>/opt/<name>                  -> active keg
    <prefix>/{bin,sbin,lib,include}/...  links into active kegs
    <prefix>/Caskroom/<token>/<version>/ staged cask containers
    <prefix>/var/brewhouse/              receipts, journal, locks, tmp
"""

from __future__ import annotations

import os
import shutil
import uuid
from pathlib import Path

from brewhouse.core.config import BrewhouseConfig

LINK_DIRS = ("bin", "sbin", "lib", "include")


class Prefix:
    """Paths of one install root."""

    def __init__(self, config: BrewhouseConfig) -> None:
        self.config = config
        self.root = Path(config.prefix)
        self.cellar = config.cellar
        self.caskroom = config.caskroom
        self.opt = config.opt
        self.state = self.root / "var" / "brewhouse"
        self.receipts_dir = self.state / "receipts"
        self.journal_dir = self.state / "journal"
        self.locks_dir = self.state / "locks"
        self.tmp_dir = self.state / "tmp"

    def ensure(self) -> None:
        """Create the fixed skeleton of the prefix."""
        for d in (
            self.cellar,
            self.caskroom,
            self.opt,
            *(self.root / d for d in LINK_DIRS),
            self.receipts_dir,
            self.journal_dir,
            self.locks_dir,
            self.tmp_dir,
        ):
            d.mkdir(parents=True, exist_ok=True)

    def keg(self, name: str, version: str) -> Path:
        return self.cellar / name / version

    def opt_link(self, name: str) -> Path:
        return self.opt / name

    def cask_dir(self, token: str, version: str) -> Path:
        return self.caskroom / token / version

    def tx_dir(self, tx_id: str) -> Path:
        return self.tmp_dir / tx_id

    def keg_owner(self, link: Path) -> str | None:
        """Package name whose keg ``link`` points into, if any."""
        if not link.is_symlink():
            return None
        target = Path(os.path.normpath(link.parent / os.readlink(link)))
        for root in (self.cellar, self.caskroom):
            try:
                rel = target.relative_to(root)
            except ValueError:
                continue
            return rel.parts[0] if rel.parts else None
        return None


def relative_target(target: Path, link: Path) -> str:
    """Symlink text pointing at ``target`` relative to ``link``'s directory."""
    return os.path.relpath(target, link.parent)


def atomic_symlink(target: str, link: Path) -> str | None:
    """Point ``link`` at ``target`` with a single rename.

    Returns:
        The previous target if ``link`` was a symlink, else None.
    """
    previous = os.readlink(link) if link.is_symlink() else None
    tmp = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}.tmp")
    os.symlink(target, tmp)
    try:
        os.replace(tmp, link)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
    return previous


def move(src: Path, dst: Path) -> None:
    """Rename ``src`` to ``dst``, copying across filesystems when needed."""
    dst.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.rename(src, dst)
    except OSError as e:
        if e.errno != 18:  # EXDEV
            raise
        shutil.move(str(src), str(dst))


def remove_path(path: Path) -> None:
    """Delete a file, symlink or directory tree. Missing paths are ignored."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path)
