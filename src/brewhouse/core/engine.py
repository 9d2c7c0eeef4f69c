"""Engine module: one entry point per verb over a single prefix."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence

from brewhouse.analysis.status import derive_status, latest_version
from brewhouse.core.channel import EventKind, ProgressChannel, ProgressEvent
from brewhouse.core.config import BrewhouseConfig
from brewhouse.core.errors import (
    EXIT_SUCCESS,
    PrefixLockedError,
    ReceiptStoreError,
    ResolutionError,
    exit_code_for,
)
from brewhouse.core.fetch import Fetcher
from brewhouse.core.journal import Journal
from brewhouse.core.logging import get_logger
from brewhouse.core.models import (
    InstallPlan,
    Operation,
    PackageKind,
    PackageStatus,
    Receipt,
    TransactionResult,
)
from brewhouse.core.prefix import Prefix
from brewhouse.core.receipts import ReceiptStore
from brewhouse.core.resolver import DependencyResolver
from brewhouse.core.transaction import ReconcileReport, Transaction, reconcile
from brewhouse.installers.artifact import ArtifactInstaller
from brewhouse.installers.source import Builder, CommandBuilder
from brewhouse.providers.base import MetadataStore

log = get_logger(__name__)


class OperationStatus(Enum):
    """Overall outcome of one verb."""

    SUCCESS = "success"
    PARTIAL = "partial"
    FAILURE = "failure"


@dataclass
class OperationResult:
    """Structured result of one verb.

    PARTIAL means the operation committed but did not do everything that was
    asked: a requested package was skipped (already installed or up to date)
    or a dependency conflict was overridden with ``force``.
    """

    verb: str
    status: OperationStatus
    exit_code: int
    plan: InstallPlan | None = None
    transaction: TransactionResult | None = None
    error: BaseException | None = None
    warnings: List[str] = field(default_factory=list)
    events: List[ProgressEvent] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is not OperationStatus.FAILURE

    def describe(self) -> str:
        if self.transaction is not None:
            return self.transaction.describe()
        if self.error is not None:
            return f"{self.verb} failed: {self.error}. Prefix unchanged."
        return f"{self.verb}: nothing to do"


@dataclass
class InstalledPackage:
    """A receipt with its derived status, for listing."""

    receipt: Receipt
    status: PackageStatus
    latest: str | None = None

    @property
    def name(self) -> str:
        return self.receipt.name


class Engine:
    """Resolves, fetches and installs packages into one prefix.

    Args:
        config: Prefix configuration.
        metadata: Package definitions.
        receipts: Receipt store; defaults to the one inside the prefix.
        fetcher: Fetch pipeline; defaults to an httpx-backed Fetcher.
        builder: External source builder; defaults to ``config.builder_command``.
    """

    def __init__(
        self,
        config: BrewhouseConfig,
        metadata: MetadataStore,
        *,
        receipts: ReceiptStore | None = None,
        fetcher: Fetcher | None = None,
        builder: Builder | None = None,
    ) -> None:
        self.config = config
        self.metadata = metadata
        self.prefix = Prefix(config)
        self.prefix.ensure()
        self.receipts = receipts or ReceiptStore(self.prefix.receipts_dir)
        self.fetcher = fetcher or Fetcher(config)
        self.installer = ArtifactInstaller(self.prefix, config, builder or CommandBuilder(config))

    async def aclose(self) -> None:
        await self.fetcher.aclose()

    async def __aenter__(self) -> Engine:
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    def resolver(self) -> DependencyResolver:
        return DependencyResolver(self.metadata, self.receipts.all(), self.config.arch)

    ## Planning ##

    def plan(
        self,
        op: Operation,
        names: Sequence[str],
        *,
        build_from_source: bool = False,
        force: bool = False,
    ) -> InstallPlan:
        """Resolve a plan without executing it.

        Raises:
            ResolutionError: if no consistent plan exists.
        """
        resolver = self.resolver()
        if op is Operation.UNINSTALL:
            return resolver.resolve_uninstall(names, force=force)
        source = list(names) if build_from_source else []
        return resolver.resolve_install(names, op=op, build_from_source=source)

    def outdated(self) -> List[str]:
        return [
            p.name for p in self.list_installed()
            if PackageStatus.OUTDATED in p.status
        ]

    ## Verbs ##

    async def install(
        self,
        names: Sequence[str],
        *,
        build_from_source: bool = False,
        channel: ProgressChannel | None = None,
    ) -> OperationResult:
        """Install packages and their dependencies."""
        return await self._execute(
            "install",
            lambda: self.plan(Operation.INSTALL, names, build_from_source=build_from_source),
            channel,
        )

    async def reinstall(
        self,
        names: Sequence[str],
        *,
        build_from_source: bool = False,
        channel: ProgressChannel | None = None,
    ) -> OperationResult:
        """Replace installed packages with a fresh copy of the same version."""
        return await self._execute(
            "reinstall",
            lambda: self.plan(Operation.REINSTALL, names, build_from_source=build_from_source),
            channel,
        )

    async def upgrade(
        self,
        names: Sequence[str] = (),
        *,
        all_: bool = False,
        channel: ProgressChannel | None = None,
    ) -> OperationResult:
        """Upgrade the named packages, or every outdated one with ``all_``."""
        if all_:
            names = self.outdated()
            if not names:
                log.info("upgrade_nothing_outdated")
                return OperationResult(
                    "upgrade", OperationStatus.SUCCESS, EXIT_SUCCESS,
                    warnings=["Everything is up to date"],
                )
        return await self._execute("upgrade", lambda: self.plan(Operation.UPGRADE, names), channel)

    async def uninstall(
        self,
        names: Sequence[str],
        *,
        force: bool = False,
        zap: bool = False,
        channel: ProgressChannel | None = None,
    ) -> OperationResult:
        """Remove installed packages. Dependents block removal unless ``force``."""
        return await self._execute(
            "uninstall",
            lambda: self.plan(Operation.UNINSTALL, names, force=force),
            channel,
            zap=zap,
        )

    async def reconcile(self) -> ReconcileReport:
        """Recover from an interrupted transaction. See :func:`reconcile`."""
        return await reconcile(self.prefix, self.receipts, self.installer)

    def list_installed(self, kind: Optional[PackageKind] = None) -> List[InstalledPackage]:
        """Installed packages sorted by kind then name."""
        pkgs = [
            InstalledPackage(
                receipt=r,
                status=derive_status(r, self.metadata, self.prefix),
                latest=latest_version(r, self.metadata),
            )
            for r in self.receipts.all(kind).values()
        ]
        pkgs.sort(key=lambda p: (p.receipt.kind.value, p.name.lower()))
        return pkgs

    ## Execution ##

    async def _execute(
        self,
        verb: str,
        make_plan: Callable[[], InstallPlan],
        channel: ProgressChannel | None,
        zap: bool = False,
    ) -> OperationResult:
        start = time.perf_counter()
        channel = channel or ProgressChannel(self.config.channel_size)
        capture = channel.subscribe()
        warnings: List[str] = []
        log.info("operation_start", verb=verb, prefix=str(self.prefix.root))

        try:
            warnings.extend(await self._recover())
            plan = make_plan()
        except (ResolutionError, ReceiptStoreError, PrefixLockedError) as e:
            log.error("operation_failed", verb=verb, error=str(e), step="resolve")
            channel.close()
            return OperationResult(
                verb, OperationStatus.FAILURE, exit_code_for(e),
                error=e, warnings=warnings, events=capture.drain(),
            )

        warnings.extend(plan.warnings)
        channel.emit(EventKind.PLAN_RESOLVED, None, plan=plan.to_dict())
        for message in plan.warnings:
            channel.emit(EventKind.WARNING, None, message=message)

        self.fetcher.channel = channel
        tx = Transaction(
            plan,
            prefix=self.prefix,
            receipts=self.receipts,
            fetcher=self.fetcher,
            installer=self.installer,
            channel=channel,
            workers=self.config.workers,
            zap=zap,
        )
        try:
            result = await tx.run()
        except PrefixLockedError as e:
            log.error("operation_failed", verb=verb, error=str(e), step="lock")
            return OperationResult(
                verb, OperationStatus.FAILURE, exit_code_for(e),
                plan=plan, error=e, warnings=warnings, events=capture.drain(),
            )
        finally:
            self.fetcher.channel = None
            channel.close()

        if result.ok:
            status = OperationStatus.PARTIAL if plan.warnings else OperationStatus.SUCCESS
            exit_code = EXIT_SUCCESS
        else:
            status = OperationStatus.FAILURE
            exit_code = exit_code_for(result.error)

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "operation_complete",
            verb=verb,
            status=status.value,
            exit_code=exit_code,
            transaction=result.id,
            duration_ms=duration_ms,
        )
        return OperationResult(
            verb, status, exit_code,
            plan=plan, transaction=result, error=result.error,
            warnings=warnings, events=capture.drain(),
        )

    async def _recover(self) -> List[str]:
        """Reconcile first if an earlier transaction left a journal behind."""
        if not Journal.pending(self.prefix.journal_dir):
            return []
        log.warning("interrupted_transaction_found", prefix=str(self.prefix.root))
        report = await self.reconcile()
        messages = []
        if report.rolled_back:
            messages.append(f"Rolled back interrupted transaction(s): {', '.join(report.rolled_back)}")
        if report.rolled_forward:
            messages.append(f"Completed interrupted transaction(s): {', '.join(report.rolled_forward)}")
        if report.fatal:
            messages.append(f"Transaction(s) need manual repair: {', '.join(report.fatal)}")
        return messages
