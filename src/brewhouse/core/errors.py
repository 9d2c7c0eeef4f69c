"""Module defining custom exceptions for Brewhouse."""

from __future__ import annotations

import asyncio
import functools
import time
from typing import Any, Awaitable, Callable, Iterable, Iterator, Self, TypeVar

from brewhouse.core.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

# Exit Codes
EXIT_SUCCESS = 0
EXIT_RESOLUTION_ERROR = 1
EXIT_FETCH_ERROR = 2
EXIT_INSTALL_ERROR = 3
EXIT_FATAL_ERROR = 4


class BrewError(Exception):
    """Base exception class with context propagation.

    All exceptions in Brewhouse should inherit from this class.
    Context is a dictionary that accumulates relevant information
    as the exception propagates up the call stack.

    Example:
        raise BrewError("An error occurred", context={"package": "foo"})

        # Or with context propagation
        try:
            ...
        except BrewError as e:
            raise e.with_context(step="stage", transaction=tx.id)
    """

    exit_code = EXIT_INSTALL_ERROR

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        self.message = message
        self.context = context or {}
        super().__init__(message)

    def with_context(self, **new_context: Any) -> Self:
        """Merge extra context into the exception and return it.

        Args:
            **new_context: Additional context to add to the exception.

        Returns:
            The same exception instance with merged context.
        """
        self.context.update(new_context)
        return self

    def __str__(self) -> str:
        """String representation of the exception including context."""
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} [{context_str}]"
        return self.message


class TransientError(BrewError):
    """Errors that should be retried.

    These errors are typically due to temporary conditions such as
    network issues or resource unavailability.

    Operations raising this exception should be idempotent.
    """
    pass


class UserError(BrewError):
    """Errors caused by user actions or inputs.

    These errors indicate that the user has made a mistake or provided
    invalid input, and should not be retried without correction.
    """

    exit_code = EXIT_RESOLUTION_ERROR


class SystemError(BrewError):
    """Errors due to system-level issues.

    File system errors, permission issues, or other unexpected conditions
    that may require user intervention.
    """
    pass


## Resolution ##

class ResolutionError(UserError):
    """Plan could not be computed. Always raised before any mutation."""

    exit_code = EXIT_RESOLUTION_ERROR


class PackageNotFoundError(ResolutionError):
    """Requested package is not in the metadata store or not installed."""

    def __init__(
        self,
        message: str | None = None,
        package: str | None = None,
        kind: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if package:
            ctx["package"] = package
        if kind:
            ctx["kind"] = kind

        if message is None:
            kind_str = f" {kind}" if kind else ""
            message = f"Package{kind_str} '{package or 'unknown'}' not found"

        super().__init__(message, context=ctx)


class CyclicDependency(ResolutionError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: list[str], context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["cycle"] = " -> ".join(cycle)
        self.cycle = list(cycle)
        super().__init__(f"Dependency cycle detected: {ctx['cycle']}", context=ctx)


class DependencyConflict(ResolutionError):
    """Requesters disagree about a shared package, or dependents block removal."""

    def __init__(
        self,
        package: str,
        requesters: Iterable[str],
        message: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        self.package = package
        self.requesters = tuple(sorted(set(requesters)))
        ctx = context or {}
        ctx["package"] = package
        ctx["requesters"] = ", ".join(self.requesters)

        if message is None:
            message = (
                f"Conflicting requirements for '{package}' "
                f"from {', '.join(self.requesters)}"
            )

        super().__init__(message, context=ctx)


class UnsatisfiableVersion(ResolutionError):
    """No available version of a package satisfies a constraint."""

    def __init__(
        self,
        package: str,
        constraint: str,
        requester: str | None = None,
        available: Iterable[str] = (),
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        ctx["package"] = package
        ctx["constraint"] = constraint
        if requester:
            ctx["requester"] = requester
        available = list(available)
        if available:
            ctx["available"] = ", ".join(available)

        super().__init__(f"No version of '{package}' satisfies '{constraint}'", context=ctx)


class UnsupportedArchitecture(ResolutionError):
    """Package cannot be installed on the configured CPU architecture."""

    def __init__(self, package: str, arch: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["package"] = package
        ctx["arch"] = arch
        super().__init__(f"'{package}' is not available for {arch}", context=ctx)


## Fetch ##

class FetchError(BrewError):
    """Artifact could not be obtained."""

    exit_code = EXIT_FETCH_ERROR


class NetworkTransient(FetchError, TransientError):
    """Temporary transport failure (timeouts, resets, 5xx). Retried."""

    def __init__(
        self,
        message: str | None = None,
        url: str | None = None,
        status: int | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if url:
            ctx["url"] = url
        if status is not None:
            ctx["status"] = status
        super().__init__(message or f"Temporary failure fetching {url}", context=ctx)


class NetworkPermanent(FetchError):
    """Permanent failure such as 404. Not retried."""

    def __init__(
        self,
        message: str | None = None,
        url: str | None = None,
        status: int | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if url:
            ctx["url"] = url
        if status is not None:
            ctx["status"] = status
        super().__init__(message or f"Failed to fetch {url}", context=ctx)


class ChecksumMismatch(FetchError):
    """Downloaded content does not match the declared sha256."""

    def __init__(
        self,
        expected: str,
        actual: str,
        url: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        ctx["expected"] = expected
        ctx["actual"] = actual
        if url:
            ctx["url"] = url
        super().__init__("Checksum mismatch", context=ctx)


## Install ##

class InstallError(BrewError):
    """A node failed while staging or committing."""

    exit_code = EXIT_INSTALL_ERROR


class ArchiveTraversal(InstallError):
    """Archive member would be written outside the extraction root."""

    def __init__(self, member: str, reason: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["member"] = member
        ctx["reason"] = reason
        super().__init__(f"Unsafe archive entry '{member}': {reason}", context=ctx)


class InstallConflict(InstallError):
    """Two packages claim the same destination path."""

    def __init__(
        self,
        path: str,
        package: str | None = None,
        owner: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        ctx["path"] = path
        if package:
            ctx["package"] = package
        if owner:
            ctx["owner"] = owner
        super().__init__(f"Path already exists: {path}", context=ctx)


class BuildError(InstallError):
    """External builder failed or is not configured."""
    pass


class CommandError(InstallError):
    """External command returned a non-zero exit code."""

    def __init__(
        self,
        message: str | None = None,
        command: str | None = None,
        returncode: int | None = None,
        error: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        if returncode is not None:
            ctx["returncode"] = returncode
        if error:
            ctx["error"] = error

        if message is None:
            message = f"Command failed with exit code {returncode if returncode is not None else 'unknown'}"

        super().__init__(message, context=ctx)


class CommandTimeoutError(InstallError):
    """External command timed out."""

    def __init__(
        self,
        message: str | None = None,
        command: str | None = None,
        timeout: int | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if command:
            ctx["command"] = command
        if timeout is not None:
            ctx["timeout"] = timeout

        if message is None:
            message = f"Command timed out after {timeout or 'unknown'}s"

        super().__init__(message, context=ctx)


class PrefixLockedError(InstallError, UserError):
    """Another transaction owns the prefix."""

    def __init__(self, prefix: str, context: dict[str, Any] | None = None) -> None:
        ctx = context or {}
        ctx["prefix"] = prefix
        super().__init__(f"Another transaction is running against {prefix}", context=ctx)


class TransactionCancelled(InstallError):
    """Worker unwound because the transaction was cancelled."""
    pass


## Fatal ##

class RollbackFailure(SystemError):
    """Rollback could not restore the prefix. Manual intervention required."""

    exit_code = EXIT_FATAL_ERROR

    def __init__(
        self,
        paths: Iterable[str],
        message: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        self.paths = sorted(set(paths))
        ctx = context or {}
        ctx["paths"] = ", ".join(self.paths)
        super().__init__(message or "Rollback failed; prefix left inconsistent", context=ctx)


class CacheError(SystemError):
    """Download cache could not be read or written."""

    def __init__(
        self,
        message: str | None = None,
        key: str | None = None,
        path: str | None = None,
        operation: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if key:
            ctx["key"] = key
        if path:
            ctx["path"] = path
        if operation:
            ctx["operation"] = operation

        if message is None:
            message = f"Cache {operation or ''} operation failed".replace("  ", " ")

        super().__init__(message, context=ctx)


class ReceiptStoreError(SystemError):
    """Receipt could not be read or written."""

    def __init__(
        self,
        message: str | None = None,
        package: str | None = None,
        path: str | None = None,
        context: dict[str, Any] | None = None
    ) -> None:
        ctx = context or {}
        if package:
            ctx["package"] = package
        if path:
            ctx["path"] = path
        super().__init__(message or "Receipt store operation failed", context=ctx)


def exit_code_for(error: BaseException | None) -> int:
    """Map an exception onto the process exit code for its failure class."""
    if error is None:
        return EXIT_SUCCESS
    if isinstance(error, BrewError):
        return error.exit_code
    return EXIT_FATAL_ERROR


def _attempts(
    max_retries: int, base_delay: float, backoff: float, max_delay: float
) -> Iterator[tuple[int, float | None]]:
    """Yield (attempt, delay before the next one); the last attempt has no delay."""
    total = max(1, max_retries)
    for attempt in range(1, total + 1):
        if attempt == total:
            yield attempt, None
        else:
            yield attempt, min(max_delay, base_delay * backoff ** (attempt - 1))


def _give_up_or_wait(name: str, attempt: int, delay: float | None, error: TransientError) -> float:
    if delay is None:
        log.error("retry_exhausted", function=name, attempts=attempt, error=str(error), context=error.context)
        raise error
    log.warning(
        "retry_attempt",
        function=name,
        attempt=attempt,
        delay_seconds=delay,
        error=str(error),
        context=error.context,
    )
    return delay


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 30.0,
    **kwargs: Any,
) -> T:
    """Await ``func``, retrying on TransientError with exponential backoff.

    ``max_retries`` counts every attempt, so 3 means at most two sleeps
    (``base_delay`` then ``base_delay * backoff``, each capped at ``max_delay``).
    Any other exception propagates from the first attempt.
    """
    name = getattr(func, "__name__", repr(func))
    for attempt, delay in _attempts(max_retries, base_delay, backoff, max_delay):
        try:
            return await func(*args, **kwargs)
        except TransientError as e:
            wait = _give_up_or_wait(name, attempt, delay, e)
        await asyncio.sleep(wait)
    raise AssertionError("unreachable")


def retry_on_transient(
    max_retries: int = 3,
    base_delay: float = 1.0,
    backoff: float = 2.0,
    max_delay: float = 30.0,
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator form of call_with_retry for sync or async callables.

        @retry_on_transient(max_retries=5, base_delay=2.0)
        async def download(url): ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> T:
                return await call_with_retry(
                    func,
                    *args,
                    max_retries=max_retries,
                    base_delay=base_delay,
                    backoff=backoff,
                    max_delay=max_delay,
                    **kwargs,
                )

            return async_wrapper  # type: ignore

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> T:
            for attempt, delay in _attempts(max_retries, base_delay, backoff, max_delay):
                try:
                    return func(*args, **kwargs)
                except TransientError as e:
                    wait = _give_up_or_wait(func.__name__, attempt, delay, e)
                time.sleep(wait)
            raise AssertionError("unreachable")

        return sync_wrapper

    return decorator


# CLI Error Message Templates

ERROR_TEMPLATES = {
    PackageNotFoundError: (
        "❌ Package Not Found: {package}\n"
        "   Check the spelling or refresh your metadata and try again"
    ),
    CyclicDependency: (
        "❌ Dependency cycle: {cycle}"
    ),
    DependencyConflict: (
        "❌ {message}"
    ),
    UnsatisfiableVersion: (
        "❌ No version of {package} satisfies '{constraint}'"
    ),
    UnsupportedArchitecture: (
        "❌ {package} is not available for {arch}"
    ),
    ChecksumMismatch: (
        "⚠️ Checksum mismatch for {url}\n"
        "   Expected: {expected}\n"
        "   Actual:   {actual}"
    ),
    NetworkTransient: (
        "⚠️ Temporary failure: {message}\n"
        "   This may resolve itself - try again in a moment"
    ),
    NetworkPermanent: (
        "❌ Download failed: {url}"
    ),
    ArchiveTraversal: (
        "❌ Refusing to extract unsafe archive entry: {member}\n"
        "   Reason: {reason}"
    ),
    InstallConflict: (
        "❌ Path already exists: {path}"
    ),
    CommandError: (
        "⚠️ Command failed: {command}\n"
        "   Exit Code: {returncode}"
    ),
    CommandTimeoutError: (
        "⚠️ Command timed out after {timeout}s: {command}"
    ),
    PrefixLockedError: (
        "❌ {message}\n"
        "   Wait for the other operation to finish and try again"
    ),
    RollbackFailure: (
        "💥 Rollback failed. These paths need manual attention:\n"
        "   {paths}"
    ),
    CacheError: (
        "⚠️ Cache error: {message}\n"
        "   Location: {path}"
    ),
    TransientError: (
        "⚠️ Temporary failure: {message}\n"
        "   This may resolve itself - try again in a moment"
    ),
    UserError: (
        "❌ {message}"
    ),
    SystemError: (
        "⚠️ System error: {message}\n"
        "   Please check your system configuration and try again"
    ),
    BrewError: (
        "❌ {message}"
    ),
}


def format_error_message(error: BrewError) -> str:
    """Formats an error message for CLI display based on the error type.

    Args:
        error: The BrewError instance to format.

    Returns:
        A formatted string message for CLI display.
    """
    template = ERROR_TEMPLATES.get(type(error), ERROR_TEMPLATES[BrewError])
    try:
        return template.format(message=error.message, **error.context)
    except KeyError:
        return f"❌ {error.message}"
