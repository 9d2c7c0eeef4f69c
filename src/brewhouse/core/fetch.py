"""Artifact fetch pipeline: cache lookup, bounded parallel download, retry, verify."""

from __future__ import annotations

import asyncio
import hashlib
import time
from contextlib import aclosing
from pathlib import Path
from typing import Dict, Iterable, Tuple
from urllib.parse import urlparse
from urllib.request import url2pathname

import httpx

from brewhouse.core.cache import NO_CHECK, DownloadCache
from brewhouse.core.cancel import CancelToken
from brewhouse.core.channel import EventKind, ProgressChannel
from brewhouse.core.config import BrewhouseConfig
from brewhouse.core.errors import (
    ChecksumMismatch,
    FetchError,
    NetworkPermanent,
    NetworkTransient,
    call_with_retry,
)
from brewhouse.core.logging import get_logger

log = get_logger(__name__)

TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}
_CHUNK = 1 << 16


class Fetcher:
    """Downloads artifacts into the checksum-keyed cache.

    At most ``config.workers`` downloads run at once. Transient failures are
    retried with exponential backoff; permanent ones and checksum mismatches
    are raised immediately. Nothing is written outside the cache directory.
    """

    def __init__(
        self,
        config: BrewhouseConfig,
        cache: DownloadCache | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        channel: ProgressChannel | None = None,
    ) -> None:
        self.config = config
        self.cache = cache or DownloadCache(config.cache_dir)
        self.channel = channel
        self._client = client
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(max(1, config.workers))

    def _emit(self, kind: EventKind, node: str, **data) -> None:
        if self.channel is not None:
            self.channel.emit(kind, node, **data)

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.http_timeout, follow_redirects=True
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(
        self, node: str, url: str, sha256: str, cancel: CancelToken | None = None
    ) -> Path:
        """Return a local path to the verified artifact.

        Args:
            node: Plan node name, used for progress events and error context.
            url: ``http(s)://`` or ``file://`` URL.
            sha256: Expected checksum, or ``no_check``.
            cancel: Cancellation token checked between chunks.

        Returns:
            Path of the artifact inside the download cache.

        Raises:
            NetworkPermanent: for not-found and other non-retryable failures.
            NetworkTransient: once retries are exhausted.
            ChecksumMismatch: if the content does not match ``sha256``.
        """
        cached = self.cache.lookup(url, sha256)
        if cached is not None:
            self._emit(EventKind.DOWNLOAD_CACHED, node, url=url, size_bytes=cached.stat().st_size)
            return cached

        async with self._semaphore:
            if cancel is not None:
                cancel.check()
            start = time.perf_counter()
            self._emit(EventKind.DOWNLOAD_STARTED, node, url=url)
            log.debug("download_start", package=node, url=url)
            try:
                path = await call_with_retry(
                    self._download,
                    node,
                    url,
                    sha256,
                    cancel,
                    max_retries=self.config.max_retries,
                    base_delay=self.config.retry_base_delay,
                    max_delay=self.config.retry_max_delay,
                )
            except FetchError as e:
                self._emit(EventKind.DOWNLOAD_FAILED, node, url=url, error=str(e))
                log.error("download_failed", package=node, url=url, error=str(e))
                raise e.with_context(package=node)

        size = path.stat().st_size
        duration_ms = int((time.perf_counter() - start) * 1000)
        self._emit(EventKind.DOWNLOAD_FINISHED, node, url=url, path=str(path), size_bytes=size)
        log.info("download_complete", package=node, url=url, size_bytes=size, duration_ms=duration_ms)

        return path

    async def fetch_all(
        self,
        items: Iterable[Tuple[str, str, str]],
        cancel: CancelToken | None = None,
    ) -> Dict[str, Path]:
        """Fetch ``(node, url, sha256)`` triples concurrently."""
        items = list(items)
        paths = await asyncio.gather(
            *(self.fetch(node, url, sha, cancel) for node, url, sha in items)
        )
        return {node: path for (node, _, _), path in zip(items, paths)}

    async def _download(
        self, node: str, url: str, sha256: str, cancel: CancelToken | None
    ) -> Path:
        partial = self.cache.partial_for(url, sha256)
        digest = hashlib.sha256()
        try:
            with open(partial, "wb") as out:
                async with aclosing(self._stream(url)) as stream:
                    async for chunk, so_far, total in stream:
                        if cancel is not None:
                            cancel.check()
                        out.write(chunk)
                        digest.update(chunk)
                        self._emit(
                            EventKind.DOWNLOAD_PROGRESS, node, bytes_so_far=so_far, total_size=total
                        )
        except BaseException:
            partial.unlink(missing_ok=True)
            raise

        actual = digest.hexdigest()
        if sha256 == NO_CHECK:
            log.warning("checksum_skipped", package=node, url=url)
        elif actual != sha256.lower():
            partial.unlink(missing_ok=True)
            log.error("checksum_mismatch", package=node, url=url, expected=sha256, actual=actual)
            raise ChecksumMismatch(expected=sha256, actual=actual, url=url)

        return self.cache.store(partial, url, sha256)

    async def _stream(self, url: str):
        scheme = urlparse(url).scheme
        if scheme == "file":
            async for item in self._stream_file(url):
                yield item
            return
        if scheme not in ("http", "https"):
            raise NetworkPermanent(f"Unsupported URL scheme '{scheme}'", url=url)

        try:
            async with self._http().stream("GET", url) as response:
                if response.status_code in TRANSIENT_STATUS:
                    raise NetworkTransient(url=url, status=response.status_code)
                if response.status_code >= 400:
                    raise NetworkPermanent(url=url, status=response.status_code)
                total = response.headers.get("content-length")
                total_size = int(total) if total and total.isdigit() else None
                so_far = 0
                async for chunk in response.aiter_bytes(_CHUNK):
                    so_far += len(chunk)
                    yield chunk, so_far, total_size
        except httpx.UnsupportedProtocol as e:
            raise NetworkPermanent(str(e), url=url) from e
        except httpx.TransportError as e:
            raise NetworkTransient(f"{type(e).__name__}: {e}", url=url) from e

    async def _stream_file(self, url: str):
        path = Path(url2pathname(urlparse(url).path))
        if not path.is_file():
            raise NetworkPermanent("File not found", url=url, status=404)
        total = path.stat().st_size
        so_far = 0
        with open(path, "rb") as fh:
            for chunk in iter(lambda: fh.read(_CHUNK), b""):
                so_far += len(chunk)
                yield chunk, so_far, total
                await asyncio.sleep(0)
