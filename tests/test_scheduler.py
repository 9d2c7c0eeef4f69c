"""Tests for the node scheduler."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from brewhouse.core.cancel import CancelToken
from brewhouse.core.errors import InstallError
from brewhouse.core.locks import PackageLocks
from brewhouse.core.models import InstallPlan, NodeState, Operation, Package, PlanNode
from brewhouse.core.scheduler import Scheduler


def plan(*specs: tuple[str, tuple[str, ...]], skip: tuple[str, ...] = ()) -> InstallPlan:
    nodes = tuple(
        PlanNode(package=Package(name=name, version="1.0"), op=Operation.INSTALL, after=after, skip=name in skip)
        for name, after in specs
    )
    return InstallPlan(op=Operation.INSTALL, nodes=nodes)


class Recorder:
    """Work function logging start/finish order and peak concurrency."""

    def __init__(self, delay: float = 0.01, fail: tuple[str, ...] = ()) -> None:
        self.delay = delay
        self.fail = fail
        self.log: list[str] = []
        self.running = 0
        self.peak = 0

    async def __call__(self, node: PlanNode) -> None:
        self.running += 1
        self.peak = max(self.peak, self.running)
        self.log.append(f"start:{node.name}")
        try:
            await asyncio.sleep(self.delay)
            if node.name in self.fail:
                raise InstallError(f"{node.name} broke")
        finally:
            self.running -= 1
        self.log.append(f"done:{node.name}")


class TestScheduler:
    """Tests for Scheduler.run."""

    @pytest.mark.asyncio
    async def test_dependencies_complete_first(self) -> None:
        """Should never start a node before its predecessors are done."""
        work = Recorder()
        p = plan(("c", ()), ("b", ("c",)), ("a", ("b",)))

        outcomes = await Scheduler(4).run(p, work)

        assert work.log == ["start:c", "done:c", "start:b", "done:b", "start:a", "done:a"]
        assert all(o.state is NodeState.DONE for o in outcomes.values())

    @pytest.mark.asyncio
    async def test_bounded_parallelism(self) -> None:
        work = Recorder()
        p = plan(*((name, ()) for name in "abcdef"))

        await Scheduler(2).run(p, work)

        assert work.peak == 2
        assert len([e for e in work.log if e.startswith("done:")]) == 6

    @pytest.mark.asyncio
    async def test_independent_nodes_run_in_parallel(self) -> None:
        work = Recorder(delay=0.05)
        p = plan(("a", ()), ("b", ()), ("c", ()))

        await Scheduler(3).run(p, work)

        assert work.peak == 3

    @pytest.mark.asyncio
    async def test_skip_nodes_release_dependents(self) -> None:
        work = Recorder()
        p = plan(("c", ()), ("a", ("c",)), skip=("c",))

        outcomes = await Scheduler(2).run(p, work)

        assert outcomes["c"].state is NodeState.SKIPPED
        assert outcomes["a"].state is NodeState.DONE
        assert work.log == ["start:a", "done:a"]

    @pytest.mark.asyncio
    async def test_failure_abandons_the_rest(self) -> None:
        """Should cancel the token and never dispatch dependents of a failure."""
        cancel = CancelToken()
        work = Recorder(fail=("c",))
        p = plan(("c", ()), ("b", ("c",)), ("a", ("b",)))

        outcomes = await Scheduler(1, cancel=cancel).run(p, work)

        assert outcomes["c"].state is NodeState.FAILED
        assert isinstance(outcomes["c"].error, InstallError)
        assert outcomes["b"].state is NodeState.ABANDONED
        assert outcomes["a"].state is NodeState.ABANDONED
        assert cancel.cancelled
        assert "start:b" not in work.log

    @pytest.mark.asyncio
    async def test_in_flight_nodes_finish(self) -> None:
        """Should await running nodes after a failure rather than dropping them."""
        work = Recorder(fail=("a",))
        slow = Recorder(delay=0.05)

        async def mixed(node: PlanNode) -> None:
            await (work if node.name == "a" else slow)(node)

        p = plan(("a", ()), ("b", ()), ("c", ()))

        outcomes = await Scheduler(2).run(p, mixed)

        assert outcomes["a"].state is NodeState.FAILED
        assert outcomes["b"].state is NodeState.DONE
        assert outcomes["c"].state is NodeState.ABANDONED

    @pytest.mark.asyncio
    async def test_cancelled_worker_is_abandoned(self) -> None:
        """Should mark nodes that unwound on cancellation as abandoned."""
        cancel = CancelToken()

        async def work(node: PlanNode) -> None:
            if node.name == "a":
                await asyncio.sleep(0.01)
                raise InstallError("boom")
            await cancel.wait()
            cancel.check()

        p = plan(("a", ()), ("b", ()))

        outcomes = await Scheduler(2, cancel=cancel).run(p, work)

        assert outcomes["a"].state is NodeState.FAILED
        assert outcomes["b"].state is NodeState.ABANDONED

    @pytest.mark.asyncio
    async def test_external_cancel(self) -> None:
        """Should abandon everything when the run itself is cancelled."""
        states: dict[str, NodeState] = {}
        scheduler = Scheduler(2, on_state=lambda name, state: states.__setitem__(name, state))

        async def work(node: PlanNode) -> None:
            await scheduler.cancel.wait()
            scheduler.cancel.check()

        task = asyncio.create_task(scheduler.run(plan(("a", ()), ("b", ("a",))), work))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert states == {"a": NodeState.ABANDONED, "b": NodeState.ABANDONED}
        assert scheduler.cancel.cancelled

    @pytest.mark.asyncio
    async def test_package_locks(self, tmp_path: Path) -> None:
        """Should serialise holders of the same package lock."""
        locks = PackageLocks(tmp_path / "locks")
        order: list[str] = []

        async def hold(tag: str) -> None:
            async with locks.hold("zlib"):
                order.append(f"in:{tag}")
                await asyncio.sleep(0.01)
                order.append(f"out:{tag}")

        await asyncio.gather(hold("1"), hold("2"))

        assert order == ["in:1", "out:1", "in:2", "out:2"]
        assert (tmp_path / "locks" / "zlib.lock").exists()

    @pytest.mark.asyncio
    async def test_package_locks_across_instances(self, tmp_path: Path) -> None:
        """Separate instances keep their own asyncio locks but still exclude each other."""
        first, second = PackageLocks(tmp_path / "locks"), PackageLocks(tmp_path / "locks")
        order: list[str] = []

        async def hold(locks: PackageLocks, tag: str) -> None:
            async with locks.hold("zlib"):
                order.append(f"in:{tag}")
                await asyncio.sleep(0.05)
                order.append(f"out:{tag}")

        await asyncio.gather(hold(first, "1"), hold(second, "2"))

        assert order == ["in:1", "out:1", "in:2", "out:2"]
        assert first._lock_for("zlib") is not second._lock_for("zlib")
        assert first._lock_for("zlib") is first._lock_for("zlib")
