"""Stateful plan scheduler: readiness, claims and failure propagation."""

from __future__ import annotations

from enum import Enum

from buildtree import log
from buildtree.graph import ExecutionPlan
from buildtree.tasks.model import TaskState

REASON_UPSTREAM = "upstream failure"
REASON_CANCELLED = "cancelled"
REASON_FAIL_FAST = "fail-fast"
REASON_NOT_REQUESTED = "not requested"
REASON_STALLED = "stalled"


class NodeState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"


_FROM_TASK_STATE = {
    TaskState.EXECUTED: NodeState.EXECUTED,
    TaskState.FAILED: NodeState.FAILED,
    TaskState.SKIPPED: NodeState.SKIPPED,
}


class Scheduler:
    """Tracks per-node state for one execution plan.

    Usage::

        sched = Scheduler(plan)
        ready = sched.get_ready()       # pending tasks whose predecessors executed
        sched.start_task(path)          # pending -> running (claims the task)
        sched.complete_task(path)       # running -> executed
        sched.fail_task(path, exc)      # running -> failed, dependents skipped

    Only the engine's coordinating thread calls these methods. Every
    terminal transition is mirrored onto the underlying :class:`Task`.
    """

    def __init__(self, plan: ExecutionPlan) -> None:
        self._plan = plan
        self._state: dict[str, NodeState] = {}
        self._reasons: dict[str, str] = {}

        for path in plan.order:
            task = plan.task(path)
            self._state[path] = _FROM_TASK_STATE.get(task.state, NodeState.PENDING)
            if task.state == TaskState.SKIPPED:
                self._reasons[path] = task.skip_reason

        # Tasks that already failed or were skipped block their dependents.
        for path in plan.order:
            if self._state[path] == NodeState.PENDING and self.has_failed_deps(path):
                self._skip(path, REASON_UPSTREAM)

    # ── state queries ────────────────────────────────────────────

    def state(self, path: str) -> NodeState:
        return self._state.get(path, NodeState.PENDING)

    def reason(self, path: str) -> str:
        return self._reasons.get(path, "")

    def count(self, state: NodeState) -> int:
        return sum(1 for s in self._state.values() if s == state)

    def count_pending(self) -> int:
        return self.count(NodeState.PENDING)

    def count_running(self) -> int:
        return self.count(NodeState.RUNNING)

    def pending(self) -> list[str]:
        return [p for p, st in self._state.items() if st == NodeState.PENDING]

    # ── dependency checks ────────────────────────────────────────

    def deps_satisfied(self, path: str) -> bool:
        return all(
            self._state.get(dep) == NodeState.EXECUTED
            for dep in self._plan.dependencies.get(path, ())
        )

    def has_failed_deps(self, path: str) -> bool:
        """Check if any predecessor ended without executing."""
        return any(
            self._state.get(dep) in (NodeState.FAILED, NodeState.SKIPPED)
            for dep in self._plan.dependencies.get(path, ())
        )

    # ── ready tasks ──────────────────────────────────────────────

    def get_ready(self) -> list[str]:
        """Pending tasks with all predecessors executed, in plan order."""
        return [
            path
            for path, st in self._state.items()
            if st == NodeState.PENDING and self.deps_satisfied(path)
        ]

    # ── transitions ──────────────────────────────────────────────

    def start_task(self, path: str) -> bool:
        """pending -> running. Returns ``False`` if another runner claimed the task."""
        if self._state.get(path) != NodeState.PENDING:
            return False
        if not self._plan.task(path).claim():
            log.debug(f"Task {path}: already claimed elsewhere")
            return False
        self._state[path] = NodeState.RUNNING
        log.debug(f"Task {path}: pending -> running")
        return True

    def complete_task(self, path: str) -> None:
        self._state[path] = NodeState.EXECUTED
        self._plan.task(path).finish(TaskState.EXECUTED)
        log.debug(f"Task {path}: running -> executed")

    def fail_task(self, path: str, error: BaseException | None = None) -> list[str]:
        """running -> failed; skip every downstream task. Returns the skipped paths."""
        self._state[path] = NodeState.FAILED
        self._plan.task(path).finish(TaskState.FAILED, error=error)
        log.debug(f"Task {path}: running -> failed")

        skipped: list[str] = []
        for dep in self._plan.downstream(path):
            if self._state[dep] == NodeState.PENDING:
                self._skip(dep, REASON_UPSTREAM)
                skipped.append(dep)
        return skipped

    def skip_pending(self, reason: str) -> list[str]:
        """Skip every task that has not started yet."""
        skipped = self.pending()
        for path in skipped:
            self._skip(path, reason)
        return skipped

    def adopt_finished(self) -> list[str]:
        """Pick up tasks finished by another runner sharing the same registry."""
        adopted: list[str] = []
        for path in self._plan.order:
            if self._state[path] != NodeState.PENDING:
                continue
            task = self._plan.task(path)
            if not task.is_terminal:
                continue
            self._state[path] = _FROM_TASK_STATE[task.state]
            self._reasons[path] = task.skip_reason
            adopted.append(path)
            if task.state != TaskState.EXECUTED:
                for dep in self._plan.downstream(path):
                    if self._state[dep] == NodeState.PENDING:
                        self._skip(dep, REASON_UPSTREAM)
        return adopted

    def _skip(self, path: str, reason: str) -> None:
        self._state[path] = NodeState.SKIPPED
        self._reasons[path] = reason
        task = self._plan.task(path)
        # a task claimed by another runner is finished by that runner
        if task.claim():
            task.finish(TaskState.SKIPPED, reason=reason)
        log.debug(f"Task {path}: pending -> skipped ({reason})")

    # ── diagnostics ──────────────────────────────────────────────

    def check_stalled(self) -> bool:
        """Return ``True`` if pending tasks remain but none can ever start."""
        return (
            self.count_pending() > 0
            and self.count_running() == 0
            and len(self.get_ready()) == 0
        )

    def explain_block(self, path: str) -> str:
        """Human-readable explanation of why *path* is not ready."""
        blocked = [
            f"{dep} ({self.state(dep).value})"
            for dep in self._plan.dependencies.get(path, ())
            if self.state(dep) != NodeState.EXECUTED
        ]
        return f"dependsOn: {' '.join(blocked)}" if blocked else ""
