"""Prefix-wide and per-package locks backed by lock files."""

from __future__ import annotations

import asyncio
import fcntl
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Callable

from brewhouse.core.errors import PrefixLockedError
from brewhouse.core.logging import get_logger

log = get_logger(__name__)

_POLL_INTERVAL = 0.05


class PrefixLock:
    """Exclusive ownership of a prefix for the lifetime of one transaction.

    ``flock`` locks belong to the open file description, so a second
    PrefixLock on the same prefix fails even inside the same process.
    """

    def __init__(self, path: Path, prefix: str) -> None:
        self.path = path
        self.prefix = prefix
        self._fd: int | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            log.warning("prefix_locked", prefix=self.prefix)
            raise PrefixLockedError(self.prefix)
        self._fd = fd
        log.debug("prefix_lock_acquired", prefix=self.prefix)

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None
        log.debug("prefix_lock_released", prefix=self.prefix)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> PrefixLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()


class PackageLocks:
    """One lock per package identity.

    An asyncio.Lock per instance serialises the workers of one transaction;
    a flock on a file under ``locks_dir`` serialises every other holder,
    including other instances in this process (flock locks belong to the
    open file, not the process). The file lock is polled so a waiting
    worker keeps honouring cancellation.
    """

    def __init__(self, locks_dir: Path) -> None:
        self.locks_dir = locks_dir
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = self._locks[name] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def hold(
        self, name: str, check: Callable[[], None] | None = None
    ) -> AsyncIterator[None]:
        """Hold the lock for ``name``; ``check`` runs between polls."""
        async with self._lock_for(name):
            self.locks_dir.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.locks_dir / f"{name}.lock", os.O_RDWR | os.O_CREAT, 0o644)
            try:
                while True:
                    try:
                        fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if check is not None:
                            check()
                        await asyncio.sleep(_POLL_INTERVAL)
                try:
                    yield
                finally:
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)
