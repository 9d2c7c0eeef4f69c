"""Bounded worker pool that runs plan nodes after their predecessors."""

from __future__ import annotations

import asyncio
import heapq
import time
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Set

from brewhouse.core.cancel import CancelToken
from brewhouse.core.errors import TransactionCancelled
from brewhouse.core.locks import PackageLocks
from brewhouse.core.logging import get_logger
from brewhouse.core.models import InstallPlan, NodeOutcome, NodeState, PlanNode

log = get_logger(__name__)

NodeWork = Callable[[PlanNode], Awaitable[None]]
StateCallback = Callable[[str, NodeState], None]


class Scheduler:
    """Dispatches nodes as soon as every node in their ``after`` set is done.

    Skip nodes count as done without occupying a worker. The first failure
    cancels the shared token: nothing new is dispatched, nodes already running
    are awaited, and undispatched nodes end up ABANDONED.
    """

    def __init__(
        self,
        workers: int,
        locks: PackageLocks | None = None,
        cancel: CancelToken | None = None,
        on_state: StateCallback | None = None,
    ) -> None:
        self.workers = max(1, workers)
        self.locks = locks
        self.cancel = cancel or CancelToken()
        self.on_state = on_state

    def _set(self, outcomes: Dict[str, NodeOutcome], name: str, state: NodeState) -> None:
        outcomes[name].state = state
        if self.on_state is not None:
            self.on_state(name, state)

    async def _execute(self, node: PlanNode, work: NodeWork) -> None:
        if self.locks is None:
            await work(node)
            return
        async with self.locks.hold(node.name, self.cancel.check):
            self.cancel.check()
            await work(node)

    async def run(self, plan: InstallPlan, work: NodeWork) -> Dict[str, NodeOutcome]:
        """Run ``work`` for every non-skip node of ``plan``.

        Returns:
            Outcome per node name, in plan order.
        """
        start = time.perf_counter()
        order = {n.name: i for i, n in enumerate(plan)}
        outcomes = {n.name: NodeOutcome(name=n.name, op=n.op, state=NodeState.PENDING) for n in plan}

        waiting: Dict[str, Set[str]] = {}
        dependents: Dict[str, List[str]] = defaultdict(list)
        for n in plan:
            preds = {p for p in n.after if p in order}
            waiting[n.name] = preds
            for p in preds:
                dependents[p].append(n.name)

        ready: List[tuple[int, str]] = [(order[n.name], n.name) for n in plan if not waiting[n.name]]
        heapq.heapify(ready)
        running: Dict[asyncio.Task, str] = {}

        def release(name: str) -> None:
            for d in dependents[name]:
                waiting[d].discard(name)
                if not waiting[d]:
                    heapq.heappush(ready, (order[d], d))

        try:
            while True:
                while ready and len(running) < self.workers and not self.cancel.cancelled:
                    _, name = heapq.heappop(ready)
                    node = plan.node(name)
                    if node.skip:
                        self._set(outcomes, name, NodeState.SKIPPED)
                        release(name)
                        continue
                    task = asyncio.create_task(self._execute(node, work), name=f"node:{name}")
                    running[task] = name

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in sorted(done, key=lambda t: order[running[t]]):
                    name = running.pop(task)
                    error = task.exception()
                    if error is None:
                        self._set(outcomes, name, NodeState.DONE)
                        release(name)
                    elif isinstance(error, TransactionCancelled) and self.cancel.cancelled:
                        outcomes[name].error = error
                        self._set(outcomes, name, NodeState.ABANDONED)
                    else:
                        outcomes[name].error = error
                        self._set(outcomes, name, NodeState.FAILED)
                        log.error("node_failed", package=name, error=str(error))
                        self.cancel.cancel(f"{name} failed")

        except asyncio.CancelledError:
            self.cancel.cancel("interrupted")
            if running:
                await asyncio.gather(*running, return_exceptions=True)
                for name in running.values():
                    self._set(outcomes, name, NodeState.ABANDONED)
            raise

        finally:
            for outcome in outcomes.values():
                if outcome.state is NodeState.PENDING:
                    self._set(outcomes, outcome.name, NodeState.ABANDONED)

        duration_ms = int((time.perf_counter() - start) * 1000)
        log.info(
            "schedule_complete",
            nodes=len(plan),
            done=sum(1 for o in outcomes.values() if o.state is NodeState.DONE),
            cancelled=self.cancel.cancelled,
            duration_ms=duration_ms,
        )
        return outcomes
