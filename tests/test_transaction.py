"""Tests for transaction locking, fatal rollback and crash reconciliation."""

from __future__ import annotations

import json
import os

import pytest

from brewhouse.core.engine import OperationStatus
from brewhouse.core.errors import (
    EXIT_FATAL_ERROR,
    EXIT_INSTALL_ERROR,
    PrefixLockedError,
    RollbackFailure,
)
from brewhouse.core.journal import FATAL, FINALIZING, Journal
from brewhouse.core.models import (
    InstalledPath,
    PackageKind,
    PrefixOutcome,
    Receipt,
    TransactionState,
)
from brewhouse.core.transaction import prefix_lock


def fail_remove(path) -> None:
    raise PermissionError(f"cannot remove {path}")


class TestPrefixLock:
    """Tests for one-transaction-per-prefix."""

    @pytest.mark.asyncio
    async def test_second_transaction_refused(self, make_engine, formula, snapshot, config) -> None:
        engine = make_engine(formula("a"))
        before = snapshot(config.prefix)

        with prefix_lock(engine.prefix):
            result = await engine.install(["a"])

        assert result.status is OperationStatus.FAILURE
        assert result.exit_code == EXIT_INSTALL_ERROR
        assert isinstance(result.error, PrefixLockedError)
        assert snapshot(config.prefix) == before

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, make_engine, formula) -> None:
        engine = make_engine(formula("a"), formula("b"))
        await engine.install(["a"])

        result = await engine.install(["b"])

        assert result.ok
        lock = prefix_lock(engine.prefix)
        lock.acquire()
        assert lock.held
        lock.release()

    @pytest.mark.asyncio
    async def test_reconcile_refused_while_locked(self, make_engine) -> None:
        engine = make_engine()

        with prefix_lock(engine.prefix):
            with pytest.raises(PrefixLockedError):
                await engine.reconcile()


class TestFatalRollback:
    """Tests for rollback that cannot restore the prefix."""

    @pytest.mark.asyncio
    async def test_rollback_failure_is_fatal(self, make_engine, formula, config, monkeypatch) -> None:
        """Should report inconsistent paths, exit 4 and keep the journal."""
        engine = make_engine(formula("q"))
        blocker = config.prefix / "bin" / "qtool"
        blocker.write_text("not a link")
        monkeypatch.setattr("brewhouse.installers.base.remove_path", fail_remove)

        result = await engine.install(["q"])

        assert result.status is OperationStatus.FAILURE
        assert result.exit_code == EXIT_FATAL_ERROR
        assert isinstance(result.error, RollbackFailure)
        assert result.error.context["package"] == "q"
        assert result.error.context["step"] == "committing"
        tx = result.transaction
        assert tx.state is TransactionState.FATAL
        assert tx.prefix is PrefixOutcome.INCONSISTENT
        keg = config.prefix / "Cellar" / "q" / "1.0"
        assert str(keg) in tx.inconsistent_paths
        assert "Inconsistent paths" in result.describe()

        [journal_path] = Journal.pending(engine.prefix.journal_dir)
        assert Journal.load(journal_path).state == FATAL
        assert engine.receipts.names() == []

    @pytest.mark.asyncio
    async def test_fatal_journal_reported_not_repaired(
        self, make_engine, formula, config, monkeypatch
    ) -> None:
        engine = make_engine(formula("q"), formula("r"))
        (config.prefix / "bin" / "qtool").write_text("not a link")
        monkeypatch.setattr("brewhouse.installers.base.remove_path", fail_remove)
        failed = await engine.install(["q"])
        monkeypatch.undo()

        result = await engine.install(["r"])

        assert result.ok
        assert any("need manual repair" in w and failed.transaction.id in w for w in result.warnings)
        assert (config.prefix / "Cellar" / "q" / "1.0").exists()
        assert len(Journal.pending(engine.prefix.journal_dir)) == 1


class TestReconcile:
    """Tests for crash reconciliation."""

    @pytest.mark.asyncio
    async def test_clean_prefix(self, make_engine, chain) -> None:
        engine = make_engine(*chain)
        await engine.install(["a"])

        report = await engine.reconcile()

        assert report.clean
        assert engine.receipts.names() == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_rolls_back_running_journal(self, make_engine, snapshot, config) -> None:
        """Should undo a transaction that crashed before finalising."""
        engine = make_engine()
        prefix = engine.prefix
        before = snapshot(config.prefix)

        journal = Journal.create(prefix.journal_dir, "crashed", "install")
        entry = journal.begin("z", "install")
        keg = prefix.keg("z", "1.0")
        keg.parent.mkdir()
        journal.record(entry, InstalledPath(str(keg.parent), "mkdir"))
        (keg / "bin").mkdir(parents=True)
        (keg / "bin" / "ztool").write_text("z")
        journal.record(entry, InstalledPath(str(keg), "created"))
        link = prefix.root / "bin" / "ztool"
        os.symlink("../Cellar/z/1.0/bin/ztool", link)
        journal.record(entry, InstalledPath(str(link), "linked"))
        prefix.tx_dir("crashed").mkdir()

        report = await engine.reconcile()

        assert report.rolled_back == ["crashed"]
        assert not report.fatal
        assert snapshot(config.prefix) == before

    @pytest.mark.asyncio
    async def test_rolls_forward_finalizing_journal(self, make_engine) -> None:
        """Should write the receipts of a transaction that crashed while finalising."""
        engine = make_engine()
        prefix = engine.prefix
        keg = prefix.keg("z", "1.0")
        keg.mkdir(parents=True)
        receipt = Receipt(name="z", kind=PackageKind.FORMULA, version="1.0", installed_paths=[str(keg)])

        journal = Journal.create(prefix.journal_dir, "finishing", "install")
        entry = journal.begin("z", "install")
        journal.record(entry, InstalledPath(str(keg), "created"))
        journal.complete(entry, receipt)
        journal.set_state(FINALIZING)

        report = await engine.reconcile()

        assert report.rolled_forward == ["finishing"]
        assert engine.receipts.get("z").to_json() == receipt.to_json()
        assert keg.exists()
        assert Journal.pending(prefix.journal_dir) == []

    @pytest.mark.asyncio
    async def test_orphaned_receipts_and_untracked_kegs(self, make_engine, formula, config) -> None:
        engine = make_engine(formula("a"))
        await engine.install(["a"])
        engine.receipts.write(Receipt(name="ghost", kind=PackageKind.FORMULA, version="0.1"))
        stray = config.prefix / "Cellar" / "stray" / "2.0"
        stray.mkdir(parents=True)
        (config.prefix / "Cellar" / "a" / "0.9").mkdir()

        report = await engine.reconcile()

        assert report.orphaned_receipts == ["ghost"]
        assert engine.receipts.names() == ["a"]
        assert report.untracked == ["Cellar/a/0.9", "Cellar/stray/2.0"]
        assert stray.exists()

    @pytest.mark.asyncio
    async def test_stale_tmp_removed(self, make_engine) -> None:
        engine = make_engine()
        stale = engine.prefix.tx_dir("old")
        (stale / "stage").mkdir(parents=True)

        report = await engine.reconcile()

        assert report.removed_tmp == ["old"]
        assert not stale.exists()
        assert report.clean

    @pytest.mark.asyncio
    async def test_corrupted_journal_is_fatal(self, make_engine) -> None:
        engine = make_engine()
        bad = engine.prefix.journal_dir / "broken.json"
        bad.write_text("{not json")

        report = await engine.reconcile()

        assert report.fatal == ["broken"]
        assert bad.exists()

    @pytest.mark.asyncio
    async def test_fatal_journal_left_alone(self, make_engine) -> None:
        engine = make_engine()
        journal = Journal.create(engine.prefix.journal_dir, "stuck", "install")
        journal.set_state(FATAL, ["/somewhere"])

        report = await engine.reconcile()

        assert report.fatal == ["stuck"]
        data = json.loads(journal.path.read_text())
        assert data["state"] == FATAL
        assert data["inconsistent_paths"] == ["/somewhere"]

    @pytest.mark.asyncio
    async def test_operation_reconciles_first(self, make_engine, formula, config) -> None:
        """Should roll back an interrupted transaction before the next one."""
        engine = make_engine(formula("a"))
        journal = Journal.create(engine.prefix.journal_dir, "crashed", "install")
        entry = journal.begin("a", "install")
        half = config.prefix / "Cellar" / "a" / "1.0"
        half.mkdir(parents=True)
        journal.record(entry, InstalledPath(str(half), "created"))

        result = await engine.install(["a"])

        assert result.ok
        assert result.warnings[0] == "Rolled back interrupted transaction(s): crashed"
        assert engine.receipts.get("a") is not None
        assert (half / "bin" / "atool").exists()
