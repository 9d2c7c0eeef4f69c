"""Safe archive extraction.

Every member of an archive is validated before the first byte is written:
absolute names, ``..`` components, members written through one of the
archive's own symlinks, links resolving outside the extraction root (links
are followed through the archive's link set, so chains are caught), and
special files reject the whole archive with ArchiveTraversal.
"""

from __future__ import annotations

import os
import stat
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, NamedTuple

from brewhouse.core.errors import ArchiveTraversal, InstallError
from brewhouse.core.logging import get_logger

log = get_logger(__name__)

MAX_LINK_HOPS = 40

FILE, DIR, SYMLINK, HARDLINK = "file", "dir", "symlink", "hardlink"


class Entry(NamedTuple):
    name: str
    kind: str
    target: str | None = None


def _parts(path: str) -> List[str]:
    return [p for p in path.split("/") if p not in ("", ".")]


def _resolve(parts: List[str], links: Mapping[str, str]) -> List[str] | None:
    """Walk ``parts`` from the root, following archive symlinks.

    Returns the resolved components, or None when the walk leaves the root
    or does not terminate.
    """
    todo = list(parts)
    resolved: List[str] = []
    hops = 0
    while todo:
        part = todo.pop(0)
        if part in ("", "."):
            continue
        if part == "..":
            if not resolved:
                return None
            resolved.pop()
            continue
        target = links.get("/".join(resolved + [part]))
        if target is None:
            resolved.append(part)
            continue
        hops += 1
        if hops > MAX_LINK_HOPS or os.path.isabs(target):
            return None
        todo[:0] = target.split("/")
    return resolved


def check_member_name(name: str) -> None:
    if not name:
        raise ArchiveTraversal(name, "empty name")
    if name.startswith(("/", "\\")) or PurePosixPath(name).is_absolute() or (
        len(name) > 1 and name[1] == ":"
    ):
        raise ArchiveTraversal(name, "absolute path")
    if ".." in name.split("/"):
        raise ArchiveTraversal(name, "path escapes archive root")


def check_link(name: str, target: str, links: Mapping[str, str], hard: bool = False) -> None:
    """Validate a symlink (relative to its directory) or hardlink (relative to root)."""
    if not target or os.path.isabs(target):
        raise ArchiveTraversal(name, f"link to absolute path {target}")
    base = [] if hard else _parts(name)[:-1]
    if _resolve(base + target.split("/"), links) is None:
        raise ArchiveTraversal(name, f"link target {target} escapes archive root")


def validate_entries(entries: List[Entry]) -> None:
    """Reject the archive if any entry could land outside the root."""
    links: Dict[str, str] = {}
    for entry in entries:
        check_member_name(entry.name)
        if entry.kind == SYMLINK:
            key = "/".join(_parts(entry.name))
            if key in links:
                raise ArchiveTraversal(entry.name, "duplicate link")
            links[key] = entry.target or ""

    for entry in entries:
        parts = _parts(entry.name)
        for depth in range(1, len(parts)):
            parent = "/".join(parts[:depth])
            if parent in links:
                raise ArchiveTraversal(entry.name, f"path passes through link {parent}")
        if entry.kind != SYMLINK and "/".join(parts) in links:
            raise ArchiveTraversal(entry.name, "member overwrites a link")
        if entry.kind in (SYMLINK, HARDLINK):
            check_link(entry.name, entry.target or "", links, hard=entry.kind == HARDLINK)


def _tar_entry(m: tarfile.TarInfo) -> Entry:
    if m.issym():
        return Entry(m.name, SYMLINK, m.linkname)
    if m.islnk():
        return Entry(m.name, HARDLINK, m.linkname)
    if m.isdir():
        return Entry(m.name, DIR)
    if m.isreg():
        return Entry(m.name, FILE)
    raise ArchiveTraversal(m.name, "special file")


def validate_tar(tar: tarfile.TarFile) -> List[tarfile.TarInfo]:
    members = tar.getmembers()
    validate_entries([_tar_entry(m) for m in members])
    return members


def _zip_symlink_target(zf: zipfile.ZipFile, info: zipfile.ZipInfo) -> str | None:
    mode = info.external_attr >> 16
    if stat.S_ISLNK(mode):
        return zf.read(info).decode()
    return None


def validate_zip(zf: zipfile.ZipFile) -> List[zipfile.ZipInfo]:
    infos = zf.infolist()
    entries = []
    for info in infos:
        target = _zip_symlink_target(zf, info)
        if target is not None:
            entries.append(Entry(info.filename.rstrip("/"), SYMLINK, target))
        else:
            entries.append(Entry(info.filename, DIR if info.is_dir() else FILE))
    validate_entries(entries)
    return infos


def _extract_tar(archive: Path, dest: Path) -> None:
    with tarfile.open(archive, "r:*") as tar:
        members = validate_tar(tar)
        dest.mkdir(parents=True, exist_ok=True)
        if not hasattr(tarfile, "data_filter"):
            tar.extractall(dest, members=members)
            return
        try:
            tar.extractall(dest, members=members, filter="data")
        except tarfile.FilterError as e:
            raise ArchiveTraversal(e.tarinfo.name, str(e)) from e


def _extract_zip(archive: Path, dest: Path) -> None:
    with zipfile.ZipFile(archive) as zf:
        infos = validate_zip(zf)
        dest.mkdir(parents=True, exist_ok=True)
        for info in infos:
            target = _zip_symlink_target(zf, info)
            out = dest / info.filename
            if target is not None:
                out.parent.mkdir(parents=True, exist_ok=True)
                os.symlink(target, out)
            else:
                zf.extract(info, dest)
                mode = (info.external_attr >> 16) & 0o777
                if mode and not info.is_dir():
                    os.chmod(out, mode | 0o600)


def is_archive(path: Path) -> bool:
    return tarfile.is_tarfile(path) or zipfile.is_zipfile(path)


def safe_extract(archive: Path, dest: Path) -> Path:
    """Extract ``archive`` into ``dest`` after validating every member.

    Args:
        archive: Tar (any compression) or zip file.
        dest: Extraction root; created if missing.

    Returns:
        ``dest``.

    Raises:
        ArchiveTraversal: if any member is unsafe. Nothing has been written.
        InstallError: if the file is not a supported archive.
    """
    archive = Path(archive)
    if tarfile.is_tarfile(archive):
        extract = _extract_tar
    elif zipfile.is_zipfile(archive):
        extract = _extract_zip
    else:
        raise InstallError("Unsupported archive format", context={"archive": str(archive)})

    try:
        extract(archive, dest)
    except ArchiveTraversal as e:
        log.error(
            "archive_rejected",
            archive=str(archive),
            member=e.context.get("member"),
            reason=e.context.get("reason")
        )
        raise
    except (tarfile.TarError, zipfile.BadZipFile, OSError) as e:
        raise InstallError(
            "Failed to extract archive", context={"archive": str(archive), "error": str(e)}
        ) from e

    log.debug("archive_extracted", archive=str(archive), dest=str(dest))
    return dest
