"""Transactions: run a plan against the prefix, then commit or roll back.

State machine: PLANNED -> RUNNING -> COMMITTED | ROLLED_BACK | FATAL.

Filesystem changes are journaled as they happen. Receipts are only touched
after every node is done, as one logical unit; if that fails the receipt
files are restored from a snapshot and the filesystem is rolled back.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Awaitable, Dict, List, TypeVar

from structlog.contextvars import bound_contextvars

from brewhouse.core.cancel import CancelToken
from brewhouse.core.channel import EventKind, ProgressChannel
from brewhouse.core.errors import (
    BrewError,
    ReceiptStoreError,
    RollbackFailure,
    TransactionCancelled,
)
from brewhouse.core.fetch import Fetcher
from brewhouse.core.journal import FATAL, FINALIZING, RUNNING, Journal, JournalEntry
from brewhouse.core.locks import PackageLocks, PrefixLock
from brewhouse.core.logging import get_logger
from brewhouse.core.models import (
    InstallPlan,
    NodeOutcome,
    NodeState,
    Operation,
    PackageKind,
    PlanNode,
    PrefixOutcome,
    TransactionResult,
    TransactionState,
)
from brewhouse.core.prefix import Prefix, remove_path
from brewhouse.core.receipts import ReceiptStore
from brewhouse.core.scheduler import Scheduler
from brewhouse.installers.artifact import ArtifactInstaller

log = get_logger(__name__)

T = TypeVar("T")

TERMINAL = (NodeState.DONE, NodeState.FAILED, NodeState.SKIPPED, NodeState.ABANDONED)


def new_transaction_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def prefix_lock(prefix: Prefix) -> PrefixLock:
    return PrefixLock(prefix.locks_dir / "prefix.lock", str(prefix.root))


def apply_receipts(receipts: ReceiptStore, entries: List[JournalEntry]) -> None:
    """Write or delete the receipt each completed entry finalises with."""
    for entry in entries:
        if entry.remove_receipt:
            receipts.delete(entry.name)
        elif entry.receipt is not None:
            receipts.write(entry.receipt)


class Transaction:
    """One plan executed as a unit against one prefix.

    Args:
        plan: Resolved plan.
        prefix: Install root; its lock is held for the whole run.
        receipts: Receipt store updated on commit.
        fetcher: Fetch pipeline for artifacts.
        installer: Installer boundary.
        channel: Progress channel, optional.
        workers: Concurrent node limit.
        zap: Run cask zap directives on uninstall.
    """

    def __init__(
        self,
        plan: InstallPlan,
        *,
        prefix: Prefix,
        receipts: ReceiptStore,
        fetcher: Fetcher,
        installer: ArtifactInstaller,
        channel: ProgressChannel | None = None,
        workers: int = 4,
        zap: bool = False,
        cancel: CancelToken | None = None,
        tx_id: str | None = None,
    ) -> None:
        self.plan = plan
        self.prefix = prefix
        self.receipts = receipts
        self.fetcher = fetcher
        self.installer = installer
        self.channel = channel
        self.workers = workers
        self.zap = zap
        self.cancel = cancel or CancelToken()
        self.id = tx_id or new_transaction_id()
        self.state = TransactionState.PLANNED
        self.started = datetime.now(timezone.utc).isoformat(timespec="seconds")
        self.tx_dir = prefix.tx_dir(self.id)

        self.journal: Journal | None = None
        self._fetches: Dict[str, asyncio.Task] = {}
        self._steps: Dict[str, str] = {}
        self._inconsistent: List[str] = []
        self._touched = False

    def _emit(self, kind: EventKind, node: str | None = None, **data) -> None:
        if self.channel is not None:
            self.channel.emit(kind, node, **data)

    def _transition(self, state: TransactionState) -> None:
        log.info("transaction_state", transaction=self.id, old=self.state.value, new=state.value)
        self.state = state
        self._emit(EventKind.TRANSACTION_STATE, None, transaction=self.id, state=state.value)

    def _on_state(self, name: str, state: NodeState) -> None:
        if state not in TERMINAL:
            self._steps[name] = state.value
        log.debug("node_state", transaction=self.id, package=name, state=state.value)
        self._emit(EventKind.NODE_STATE, name, state=state.value)

    async def run(self) -> TransactionResult:
        """Run the plan.

        Returns:
            The TransactionResult. Node failures are reported in the result,
            not raised.

        Raises:
            PrefixLockedError: if another transaction owns the prefix.
        """
        start = time.perf_counter()
        with prefix_lock(self.prefix), bound_contextvars(transaction=self.id, op=self.plan.op.value):
            result = await self._run()
        log.info(
            "transaction_complete",
            transaction=self.id,
            state=result.state.value,
            prefix=result.prefix.value,
            duration_ms=int((time.perf_counter() - start) * 1000),
        )
        return result

    async def _run(self) -> TransactionResult:
        self._transition(TransactionState.RUNNING)
        self.prefix.ensure()
        self.journal = Journal.create(self.prefix.journal_dir, self.id, self.plan.op.value)
        self._start_fetches()

        scheduler = Scheduler(
            self.workers, PackageLocks(self.prefix.locks_dir), self.cancel, on_state=self._on_state
        )
        try:
            outcomes = await scheduler.run(self.plan, self._work)
        except asyncio.CancelledError:
            await self._settle_fetches()
            await self._rollback({}, TransactionCancelled("Transaction interrupted"))
            raise
        await self._settle_fetches()
        self._merge_fetch_failures(outcomes)

        for name, outcome in outcomes.items():
            if outcome.state in (NodeState.FAILED, NodeState.ABANDONED):
                outcome.step = self._steps.get(name)

        if all(o.state in (NodeState.DONE, NodeState.SKIPPED) for o in outcomes.values()):
            return await self._finalize(outcomes)

        failed = next((o for o in outcomes.values() if o.state is NodeState.FAILED), None)
        if failed is not None and failed.error is not None:
            error = failed.error
            if isinstance(error, BrewError):
                error = error.with_context(package=failed.name, step=failed.step or "pending")
        else:
            error = TransactionCancelled(
                "Transaction cancelled", context={"reason": self.cancel.reason or "cancelled"}
            )
        return await self._rollback(outcomes, error)

    ## Fetching ##

    def _start_fetches(self) -> None:
        for node in self.plan.active:
            if node.op is Operation.UNINSTALL or node.artifact is None:
                continue
            artifact = node.artifact
            task = asyncio.create_task(
                self.fetcher.fetch(node.name, artifact.url, artifact.sha256, self.cancel),
                name=f"fetch:{node.name}",
            )
            task.add_done_callback(partial(self._fetch_done, node.name))
            self._fetches[node.name] = task

    def _fetch_done(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not isinstance(error, TransactionCancelled):
            self.cancel.cancel(f"fetching {name} failed")

    async def _settle_fetches(self) -> None:
        pending = [t for t in self._fetches.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _merge_fetch_failures(self, outcomes: Dict[str, NodeOutcome]) -> None:
        """A failed download fails its node even if the node was never dispatched."""
        for name, task in self._fetches.items():
            if task.cancelled() or task.exception() is None:
                continue
            error = task.exception()
            outcome = outcomes[name]
            if isinstance(error, TransactionCancelled) or outcome.state is NodeState.FAILED:
                continue
            outcome.state = NodeState.FAILED
            outcome.error = error
            self._steps[name] = NodeState.FETCHING.value
            self._emit(EventKind.NODE_STATE, name, state=NodeState.FAILED.value)

    ## Node work ##

    def _dependency_ids(self, node: PlanNode) -> List[str]:
        names = set(self.plan.names())
        return [
            str(self.plan.node(d.name).package.id)
            for d in node.package.runtime_dependencies()
            if d.name in names
        ]

    async def _work(self, node: PlanNode) -> None:
        name = node.name
        backup_dir = self.tx_dir / "backup" / name

        if node.op is Operation.UNINSTALL:
            self._on_state(name, NodeState.COMMITTING)
            await self._commit(node, lambda on_record: self._until_cancelled(self.installer.retire(
                node.previous, backup_dir, zap=self.zap, on_record=on_record
            )))
            return

        self._on_state(name, NodeState.FETCHING)
        archive = await self._fetches[name]
        self.cancel.check()

        self._on_state(name, NodeState.STAGING)
        staged = await self._until_cancelled(
            self.installer.stage(node, archive, self.tx_dir / "stage" / name)
        )
        self.cancel.check()

        self._on_state(name, NodeState.COMMITTING)
        await self._commit(node, lambda on_record: self._until_cancelled(self.installer.commit(
            staged, backup_dir, on_record=on_record
        )))

    async def _until_cancelled(self, work: Awaitable[T]) -> T:
        """Await ``work``, cancelling it as soon as the transaction is cancelled.

        Builders and cask scripts see the cancellation inside their subprocess
        wait; the process is killed and the installer reverts its own changes.
        """
        task = asyncio.ensure_future(work)
        stop = asyncio.ensure_future(self.cancel.wait())
        try:
            await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not task.done():
                task.cancel()
                await asyncio.wait({task})
        if task.cancelled():
            self.cancel.check()
        return task.result()

    async def _commit(self, node: PlanNode, apply) -> None:
        entry = self.journal.begin(node.name, node.op.value)
        self._touched = True
        try:
            paths = await apply(partial(self.journal.record, entry))
        except RollbackFailure as e:
            self._inconsistent.extend(e.paths)
            self.journal.discard(entry)
            raise
        except BaseException:
            # The installer already reverted its own partial changes.
            self.journal.discard(entry)
            raise

        if node.op is Operation.UNINSTALL:
            self.journal.complete(entry, None, remove_receipt=True)
        else:
            receipt = self.installer.receipt_for(node, paths, self._dependency_ids(node), self.started)
            self.journal.complete(entry, receipt)

    ## Outcomes ##

    def _result(
        self,
        outcomes: Dict[str, NodeOutcome],
        prefix: PrefixOutcome,
        error: BaseException | None = None,
        inconsistent: List[str] | None = None,
    ) -> TransactionResult:
        return TransactionResult(
            id=self.id,
            state=self.state,
            prefix=prefix,
            nodes=outcomes,
            error=error,
            inconsistent_paths=sorted(set(inconsistent or [])),
        )

    def _cleanup(self) -> None:
        remove_path(self.tx_dir)
        self.journal.delete()

    async def _finalize(self, outcomes: Dict[str, NodeOutcome]) -> TransactionResult:
        journal = self.journal
        journal.set_state(FINALIZING)
        snapshot = self.receipts.snapshot([e.name for e in journal.entries])
        try:
            apply_receipts(self.receipts, journal.entries)
        except ReceiptStoreError as e:
            log.error("finalize_failed", transaction=self.id, error=str(e))
            try:
                self.receipts.restore(snapshot)
            except OSError as restore_error:
                log.error("receipt_restore_failed", transaction=self.id, error=str(restore_error))
                self._inconsistent.append(str(self.receipts.root))
            journal.set_state(RUNNING)
            return await self._rollback(outcomes, e)

        self._cleanup()
        self._transition(TransactionState.COMMITTED)
        changed = PrefixOutcome.CHANGED if journal.entries else PrefixOutcome.UNCHANGED
        return self._result(outcomes, changed)

    async def _rollback(self, outcomes: Dict[str, NodeOutcome], error: BaseException) -> TransactionResult:
        journal = self.journal
        failed_paths = list(self._inconsistent)
        log.warning(
            "transaction_rollback",
            transaction=self.id,
            nodes=[e.name for e in reversed(journal.entries)],
            error=str(error),
        )
        for entry in reversed(journal.entries):
            try:
                await self.installer.rollback(entry.paths)
            except RollbackFailure as e:
                failed_paths.extend(e.paths)

        if failed_paths:
            journal.set_state(FATAL, failed_paths)
            self._transition(TransactionState.FATAL)
            fatal = RollbackFailure(failed_paths, context={"transaction": self.id})
            fatal.__cause__ = error
            if isinstance(error, BrewError):
                for key in ("package", "step"):
                    if key in error.context:
                        fatal.context[key] = error.context[key]
            log.critical("rollback_failed", transaction=self.id, paths=sorted(set(failed_paths)))
            return self._result(outcomes, PrefixOutcome.INCONSISTENT, fatal, failed_paths)

        self._cleanup()
        self._transition(TransactionState.ROLLED_BACK)
        outcome = PrefixOutcome.REVERTED if self._touched else PrefixOutcome.UNCHANGED
        return self._result(outcomes, outcome, error)


## Crash reconciliation ##

@dataclass
class ReconcileReport:
    """What :func:`reconcile` found and did."""

    rolled_back: List[str] = field(default_factory=list)
    rolled_forward: List[str] = field(default_factory=list)
    fatal: List[str] = field(default_factory=list)
    orphaned_receipts: List[str] = field(default_factory=list)
    untracked: List[str] = field(default_factory=list)
    removed_tmp: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not any(
            (self.rolled_back, self.rolled_forward, self.fatal, self.orphaned_receipts, self.untracked)
        )


def _installed_dir(prefix: Prefix, receipt) -> Path:
    if receipt.kind is PackageKind.CASK:
        return prefix.cask_dir(receipt.name, receipt.version)
    return prefix.keg(receipt.name, receipt.pkg_version)


async def reconcile(prefix: Prefix, receipts: ReceiptStore, installer: ArtifactInstaller) -> ReconcileReport:
    """Repair what an interrupted transaction left behind.

    Running journals are rolled back, finalising ones rolled forward, fatal
    ones left alone and reported. Receipts whose package directory is gone
    are removed; package directories without a receipt are only reported.

    Raises:
        PrefixLockedError: if a transaction is running against the prefix.
    """
    report = ReconcileReport()
    with prefix_lock(prefix):
        keep_tmp = set()
        for path in Journal.pending(prefix.journal_dir):
            try:
                journal = Journal.load(path)
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                log.error("journal_corrupted", path=str(path), error=str(e))
                report.fatal.append(path.stem)
                keep_tmp.add(path.stem)
                continue

            if journal.state == FATAL:
                report.fatal.append(journal.id)
                keep_tmp.add(journal.id)
                continue

            if journal.state == FINALIZING:
                apply_receipts(receipts, [e for e in journal.entries if e.complete])
                report.rolled_forward.append(journal.id)
                log.info("reconcile_rolled_forward", transaction=journal.id, nodes=len(journal.entries))
            else:
                failed: List[str] = []
                for entry in reversed(journal.entries):
                    try:
                        await installer.rollback(entry.paths)
                    except RollbackFailure as e:
                        failed.extend(e.paths)
                if failed:
                    journal.set_state(FATAL, failed)
                    report.fatal.append(journal.id)
                    keep_tmp.add(journal.id)
                    log.critical("reconcile_rollback_failed", transaction=journal.id, paths=failed)
                    continue
                report.rolled_back.append(journal.id)
                log.info("reconcile_rolled_back", transaction=journal.id, nodes=len(journal.entries))

            remove_path(prefix.tx_dir(journal.id))
            journal.delete()

        if prefix.tmp_dir.is_dir():
            for stale in sorted(prefix.tmp_dir.iterdir()):
                if stale.name not in keep_tmp:
                    remove_path(stale)
                    report.removed_tmp.append(stale.name)

        installed = receipts.all()
        for name, receipt in installed.items():
            if not _installed_dir(prefix, receipt).exists():
                receipts.delete(name)
                report.orphaned_receipts.append(name)
                log.warning("reconcile_orphaned_receipt", package=name, version=receipt.pkg_version)

        for root, kind in ((prefix.cellar, PackageKind.FORMULA), (prefix.caskroom, PackageKind.CASK)):
            if not root.is_dir():
                continue
            for pkg_dir in sorted(p for p in root.iterdir() if p.is_dir()):
                receipt = installed.get(pkg_dir.name)
                for version_dir in sorted(p for p in pkg_dir.iterdir() if p.is_dir()):
                    if receipt is not None and receipt.kind is kind and version_dir == _installed_dir(prefix, receipt):
                        continue
                    report.untracked.append(str(version_dir.relative_to(prefix.root)))

    if report.untracked:
        log.warning("reconcile_untracked", paths=report.untracked)
    log.info(
        "reconcile_complete",
        rolled_back=len(report.rolled_back),
        rolled_forward=len(report.rolled_forward),
        fatal=len(report.fatal),
        orphaned=len(report.orphaned_receipts),
        untracked=len(report.untracked),
    )
    return report
