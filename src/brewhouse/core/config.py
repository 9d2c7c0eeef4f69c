"""Configuration module for the Brewhouse environment."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

DEFAULT_PREFIX = Path("/opt/brewhouse")
DEFAULT_WORKERS = 4

# Machine names reported by platform.machine() mapped to the family tag
# used in bottle descriptors.
ARCH_FAMILIES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "arm64": "arm64",
    "aarch64": "arm64",
}


def normalise_arch(machine: str) -> str:
    """Map a machine name onto its architecture family."""
    return ARCH_FAMILIES.get(machine.lower(), machine.lower())


@dataclass
class BrewhouseConfig:
    """Configuration for a Brewhouse prefix."""

    prefix: Path
    cache_dir: Path
    appdir: Path
    fontdir: Path
    plugindir: Path
    workers: int = DEFAULT_WORKERS
    arch: str = field(default_factory=lambda: normalise_arch(platform.machine()))
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    http_timeout: float = 60.0
    channel_size: int = 256
    script_timeout: int = 600
    builder_command: list[str] = field(default_factory=list)
    pkg_installer_command: list[str] = field(
        default_factory=lambda: ["installer", "-pkg", "{pkg}", "-target", "/"]
    )

    @property
    def cellar(self) -> Path:
        return self.prefix / "Cellar"

    @property
    def caskroom(self) -> Path:
        return self.prefix / "Caskroom"

    @property
    def opt(self) -> Path:
        return self.prefix / "opt"

    @classmethod
    def for_prefix(cls, prefix: Path, **overrides) -> BrewhouseConfig:
        """Build a self-contained configuration rooted at ``prefix``.

        Cask targets and the download cache are placed next to the prefix
        so that nothing outside ``prefix.parent`` is touched.

        Args:
            prefix: Install root.
            **overrides: Any other BrewhouseConfig field.

        Returns:
            A BrewhouseConfig instance.
        """
        prefix = Path(prefix)
        values = {
            "prefix": prefix,
            "cache_dir": prefix.parent / f"{prefix.name}-cache",
            "appdir": prefix.parent / f"{prefix.name}-Applications",
            "fontdir": prefix.parent / f"{prefix.name}-Fonts",
            "plugindir": prefix.parent / f"{prefix.name}-Plugins",
        }
        values.update(overrides)
        return cls(**values)


def _default_prefix() -> Path:
    """Pick a default prefix, reusing Homebrew's when it is installed."""
    if shutil.which("brew") is None:
        return DEFAULT_PREFIX
    try:
        output = subprocess.check_output(["brew", "--prefix"], text=True).strip()
        return Path(output)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return DEFAULT_PREFIX


def discover_env(environ: Mapping[str, str] | None = None) -> BrewhouseConfig:
    """Discover the Brewhouse environment from environment variables.

    Args:
        environ: Mapping to read instead of ``os.environ``.

    Returns:
        A BrewhouseConfig instance.
    """
    env = os.environ if environ is None else environ
    home = Path.home()

    prefix = Path(env["BREWHOUSE_PREFIX"]) if env.get("BREWHOUSE_PREFIX") else _default_prefix()
    cache_dir = Path(env.get("BREWHOUSE_CACHE") or home / ".brewhouse" / "cache")
    appdir = Path(env.get("BREWHOUSE_APPDIR") or "/Applications")
    fontdir = Path(env.get("BREWHOUSE_FONTDIR") or home / "Library" / "Fonts")
    plugindir = Path(env.get("BREWHOUSE_PLUGINDIR") or home / "Library" / "Plug-Ins")
    workers = int(env.get("BREWHOUSE_WORKERS") or DEFAULT_WORKERS)
    arch = normalise_arch(env.get("BREWHOUSE_ARCH") or platform.machine())
    builder = env.get("BREWHOUSE_BUILDER", "").split()

    return BrewhouseConfig(
        prefix=prefix,
        cache_dir=cache_dir,
        appdir=appdir,
        fontdir=fontdir,
        plugindir=plugindir,
        workers=max(1, workers),
        arch=arch,
        builder_command=builder,
    )
