"""Shared pytest fixtures for brewhouse tests."""

from __future__ import annotations

import io
import os
import tarfile
import tempfile
from pathlib import Path
from typing import Callable, Dict, Iterable, Mapping

import pytest

os.environ.setdefault("BREWHOUSE_LOG_DIR", tempfile.mkdtemp(prefix="brewhouse-logs-"))

from brewhouse.core.cache import sha256_file  # noqa: E402
from brewhouse.core.config import BrewhouseConfig  # noqa: E402
from brewhouse.core.engine import Engine  # noqa: E402
from brewhouse.core.metadata import InMemoryMetadataStore  # noqa: E402
from brewhouse.core.models import Bottle, Dependency, Package, SourceBuild  # noqa: E402
from brewhouse.core.versions import parse_request  # noqa: E402


def write_tar(path: Path, files: Mapping[str, bytes | str], mode: int = 0o755) -> Path:
    """Write a gzipped tarball holding ``files`` (member name -> content)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(path, "w:gz") as tar:
        for name, content in sorted(files.items()):
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return path


def dependencies(deps: Iterable[str | Dependency]) -> tuple[Dependency, ...]:
    """``"b"`` or ``"b@>=2"`` strings to Dependency objects."""
    out = []
    for d in deps:
        if isinstance(d, Dependency):
            out.append(d)
        else:
            name, constraint = parse_request(d)
            out.append(Dependency(name=name, constraint=constraint))
    return tuple(out)


@pytest.fixture
def config(tmp_path: Path) -> BrewhouseConfig:
    """Self-contained prefix configuration inside tmp_path."""
    return BrewhouseConfig.for_prefix(
        tmp_path / "prefix",
        workers=2,
        arch="arm64",
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        script_timeout=30,
    )


@pytest.fixture
def artifacts_dir(tmp_path: Path) -> Path:
    d = tmp_path / "artifacts"
    d.mkdir()
    return d


@pytest.fixture
def make_bottle(artifacts_dir: Path) -> Callable[..., Bottle]:
    """Factory building a ``name/version/...`` bottle tarball.

    By default the bottle ships one executable, ``bin/<name>tool``.
    """

    def _make(
        name: str,
        version: str = "1.0",
        files: Mapping[str, str] | None = None,
        arch: str = "all",
    ) -> Bottle:
        files = files or {f"bin/{name}tool": f"#!/bin/sh\necho {name} {version}\n"}
        path = write_tar(
            artifacts_dir / f"{name}-{version}.{arch}.bottle.tar.gz",
            {f"{name}/{version}/{rel}": content for rel, content in files.items()},
        )
        return Bottle(url=path.as_uri(), sha256=sha256_file(path), arch=arch)

    return _make


@pytest.fixture
def make_source(artifacts_dir: Path) -> Callable[..., SourceBuild]:
    """Factory building a ``name-version/`` source tarball with a build recipe."""

    def _make(
        name: str,
        version: str = "1.0",
        files: Mapping[str, str] | None = None,
        recipe: Dict | None = None,
    ) -> SourceBuild:
        files = files or {"tool.sh": f"#!/bin/sh\necho {name} {version} from source\n"}
        path = write_tar(
            artifacts_dir / f"{name}-{version}.src.tar.gz",
            {f"{name}-{version}/{rel}": content for rel, content in files.items()},
        )
        return SourceBuild(url=path.as_uri(), sha256=sha256_file(path), recipe=dict(recipe or {}))

    return _make


@pytest.fixture
def formula(make_bottle) -> Callable[..., Package]:
    """Factory for formula Packages with an ``all`` bottle unless told otherwise."""

    def _formula(
        name: str,
        version: str = "1.0",
        deps: Iterable[str | Dependency] = (),
        *,
        bottle: bool = True,
        files: Mapping[str, str] | None = None,
        **kw,
    ) -> Package:
        bottles = (make_bottle(name, version, files),) if bottle else ()
        return Package(
            name=name,
            version=version,
            dependencies=dependencies(deps),
            bottles=bottles,
            **kw,
        )

    return _formula


@pytest.fixture
def chain(formula) -> list[Package]:
    """a depends on b, b depends on c."""
    return [formula("a", deps=["b"]), formula("b", deps=["c"]), formula("c")]


@pytest.fixture
def make_engine(config: BrewhouseConfig) -> Callable[..., Engine]:
    """Factory for an Engine over the test prefix and the given packages."""

    def _make(*packages: Package, **kw) -> Engine:
        return Engine(config, InMemoryMetadataStore(packages), **kw)

    return _make


@pytest.fixture
def snapshot() -> Callable[[Path], Dict[str, str]]:
    """Capture a tree as ``relative path -> content digest, link target or 'dir'``.

    Lock files are skipped; they outlive transactions.
    """

    def _snapshot(root: Path) -> Dict[str, str]:
        out: Dict[str, str] = {}
        locks = root / "var" / "brewhouse" / "locks"
        for dirpath, dirnames, filenames in os.walk(root):
            here = Path(dirpath)
            dirnames[:] = sorted(d for d in dirnames if here / d != locks)
            for name in dirnames + sorted(filenames):
                p = here / name
                rel = str(p.relative_to(root))
                if p.is_symlink():
                    out[rel] = "link:" + os.readlink(p)
                elif p.is_dir():
                    out[rel] = "dir"
                else:
                    out[rel] = "file:" + sha256_file(p)
        return out

    return _snapshot
