"""Content-addressed download cache."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from urllib.parse import urlparse

from brewhouse.core.errors import CacheError
from brewhouse.core.logging import get_logger

log = get_logger(__name__)

NO_CHECK = "no_check"
_CHUNK = 1 << 16


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def cache_key(url: str, sha256: str) -> str:
    """Key for an artifact: its checksum, or a hash of the URL for ``no_check``."""
    if sha256 and sha256 != NO_CHECK:
        return sha256.lower()
    return "url-" + hashlib.sha256(url.encode()).hexdigest()


class DownloadCache:
    """Artifacts stored as ``<key>--<filename>`` under one directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CacheError(path=str(self.root), operation="init") from e
        log.debug("cache_initialized", path=str(self.root))

    def path_for(self, url: str, sha256: str) -> Path:
        name = Path(urlparse(url).path).name or "download"
        return self.root / f"{cache_key(url, sha256)}--{name}"

    def partial_for(self, url: str, sha256: str) -> Path:
        final = self.path_for(url, sha256)
        return final.with_name(f".{final.name}.{os.getpid()}.part")

    def lookup(self, url: str, sha256: str) -> Path | None:
        """Return the cached file if present and still matching its checksum.

        A cached file whose content no longer matches is deleted so the
        caller downloads it again.
        """
        path = self.path_for(url, sha256)
        if not path.exists():
            return None
        if sha256 and sha256 != NO_CHECK:
            actual = sha256_file(path)
            if actual != sha256.lower():
                log.warning(
                    "cache_corrupted", key=cache_key(url, sha256), path=str(path), actual=actual
                )
                path.unlink(missing_ok=True)
                return None
        log.info("cache_hit", key=cache_key(url, sha256), path=str(path))
        return path

    def store(self, partial: Path, url: str, sha256: str) -> Path:
        """Move a verified partial download into place."""
        final = self.path_for(url, sha256)
        try:
            os.replace(partial, final)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise CacheError(
                key=cache_key(url, sha256), path=str(final), operation="store"
            ) from e
        log.info("cache_set", key=cache_key(url, sha256), path=str(final))
        return final
