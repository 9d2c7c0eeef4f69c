"""Source builds: the external builder's output directory becomes the keg."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping

from brewhouse.core.archive import safe_extract
from brewhouse.core.config import BrewhouseConfig
from brewhouse.core.errors import BrewError, BuildError, TransactionCancelled
from brewhouse.core.logging import get_logger
from brewhouse.core.models import PlanNode, SourceBuild
from brewhouse.core.prefix import Prefix
from brewhouse.core.shell import run_checked

from .base import Recorder, StagedPaths, artifact_of
from .bottle import commit_keg

log = get_logger(__name__)

# (node, recipe, source_dir, dest_dir) -> directory holding the built keg
Builder = Callable[[PlanNode, Mapping[str, Any], Path, Path], Awaitable[Path]]


class CommandBuilder:
    """Runs an external build command.

    The recipe's ``command`` wins over ``config.builder_command``. Arguments
    may use ``{source}``, ``{dest}``, ``{prefix}``, ``{name}`` and
    ``{version}`` placeholders; the same values are exported as
    ``BREWHOUSE_*`` environment variables.
    """

    def __init__(self, config: BrewhouseConfig) -> None:
        self.config = config

    async def __call__(
        self, node: PlanNode, recipe: Mapping[str, Any], source_dir: Path, dest_dir: Path
    ) -> Path:
        command = list(recipe.get("command") or self.config.builder_command)
        if not command:
            raise BuildError(
                "No builder configured for source builds", context={"package": node.name}
            )
        values = {
            "source": str(source_dir),
            "dest": str(dest_dir),
            "prefix": str(self.config.prefix),
            "name": node.name,
            "version": node.package.version,
        }
        argv = [arg.format(**values) for arg in command]
        env = {f"BREWHOUSE_{k.upper()}": v for k, v in values.items()}
        env.update({str(k): str(v) for k, v in (recipe.get("env") or {}).items()})

        dest_dir.mkdir(parents=True, exist_ok=True)
        await run_checked(*argv, timeout=self.config.script_timeout, cwd=source_dir, env=env)
        return dest_dir


def source_root(extract_dir: Path) -> Path:
    """Tarballs usually hold one ``name-version/`` directory; build inside it."""
    children = list(extract_dir.iterdir())
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return extract_dir


class SourceInstaller:
    """Extracts sources, hands them to the builder and commits the result as a keg."""

    def __init__(self, prefix: Prefix, builder: Builder | None) -> None:
        self.prefix = prefix
        self.builder = builder

    async def stage(self, node: PlanNode, archive: Path, workdir: Path) -> StagedPaths:
        artifact = artifact_of(node, SourceBuild)
        if self.builder is None:
            raise BuildError("No builder configured for source builds", context={"package": node.name})

        src = source_root(safe_extract(archive, workdir / "src"))
        dest = workdir / "out"
        log.info("build_start", package=node.name, version=node.package.version)
        try:
            out = await self.builder(node, artifact.recipe, src, dest)
        except TransactionCancelled:
            raise
        except BrewError as e:
            log.error("build_failed", package=node.name, error=str(e))
            raise BuildError(
                f"Build of {node.name} failed: {e}", context={"package": node.name, **e.context}
            ) from e

        out = Path(out)
        if not out.is_dir() or not any(out.iterdir()):
            raise BuildError("Builder produced no output", context={"package": node.name, "path": str(out)})
        log.info("build_complete", package=node.name, output=str(out))
        return StagedPaths(node=node, root=out, workdir=workdir)

    async def commit(self, staged: StagedPaths, recorder: Recorder) -> None:
        commit_keg(self.prefix, staged, recorder)
