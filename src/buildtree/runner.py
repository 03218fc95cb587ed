"""Execution engine: runs an execution plan on a pool of worker threads."""

from __future__ import annotations

import signal
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait

from buildtree import log
from buildtree.config import Config
from buildtree.graph import ExecutionPlan
from buildtree.scheduler import (
    REASON_CANCELLED,
    REASON_FAIL_FAST,
    REASON_NOT_REQUESTED,
    REASON_STALLED,
    NodeState,
    Scheduler,
)
from buildtree.summary import BuildResult, TaskOutcome
from buildtree.tasks.model import TaskState


def _describe_error(exc: BaseException) -> str:
    msg = str(exc).strip()
    name = type(exc).__name__
    return f"{name}: {msg}" if msg else name


class Executor:
    """Runs every task of a plan once, in dependency order.

    Independent tasks run concurrently on up to ``cfg.max_workers`` threads.
    A failing task skips its dependents; with ``cfg.fail_fast`` it also
    skips everything that has not started yet. :meth:`cancel` (or SIGINT /
    SIGTERM on the main thread) skips everything not yet started and lets
    running tasks finish.
    """

    def __init__(self, plan: ExecutionPlan, cfg: Config | None = None) -> None:
        self.plan = plan
        self.cfg = cfg or Config()
        self.sched = Scheduler(plan)
        self._cancel = threading.Event()
        self._interrupt_count = 0
        self._orig_signal_handlers: dict[int, object] = {}
        self._durations: dict[str, float] = {}

    def cancel(self) -> None:
        """Request cancellation. Safe to call from any thread."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> BuildResult:
        """Execute the plan. Returns the per-task outcomes."""
        started = time.monotonic()
        workers = max(1, self.cfg.max_workers)
        log.info(f"Executing {len(self.plan)} task(s) (max {workers} worker(s))…")

        self._install_signal_handlers()
        try:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="buildtree") as pool:
                self._main_loop(pool, workers)
        finally:
            self._restore_signal_handlers()

        self._skip_excluded()
        return self._result(time.monotonic() - started)

    def _main_loop(self, pool: ThreadPoolExecutor, workers: int) -> None:
        running: dict[Future[BaseException | None], str] = {}
        idle_since: float | None = None

        while True:
            if self._cancel.is_set() and self.sched.count_pending():
                for path in self.sched.skip_pending(REASON_CANCELLED):
                    log.task_finished(path, "skipped", REASON_CANCELLED)

            if self.sched.adopt_finished():
                idle_since = None

            if self.sched.count_pending() == 0 and not running:
                break

            # Launch ready tasks into free worker slots
            slots = workers - len(running)
            if slots > 0 and not self._cancel.is_set():
                for path in self.sched.get_ready():
                    if slots == 0:
                        break
                    if not self.sched.start_task(path):
                        continue
                    log.task_started(path)
                    running[pool.submit(self._execute, path)] = path
                    slots -= 1

            if not running:
                if self.sched.check_stalled():
                    self._report_stall("No progress possible: pending tasks can never start")
                    break
                # pending tasks are claimed by another runner; wait for them
                now = time.monotonic()
                if idle_since is None:
                    idle_since = now
                elif now - idle_since >= self.cfg.stall_timeout:
                    self._report_stall(
                        f"No progress for {self.cfg.stall_timeout:g}s on tasks claimed by another runner"
                    )
                    break
                time.sleep(self.cfg.poll_interval)
                continue

            idle_since = None

            done, _ = wait(running, timeout=self.cfg.poll_interval, return_when=FIRST_COMPLETED)
            for fut in done:
                path = running.pop(fut)
                self._handle_finished(path, fut.result())

    def _execute(self, path: str) -> BaseException | None:
        """Worker-thread body. Returns the exception raised by the task, if any."""
        task = self.plan.task(path)
        t0 = time.monotonic()
        try:
            task.run_actions()
        except (KeyboardInterrupt, GeneratorExit):
            raise
        except BaseException as exc:  # noqa: BLE001
            # SystemExit from a script-style action is a task failure too
            return exc
        finally:
            self._durations[path] = time.monotonic() - t0
        return None

    def _handle_finished(self, path: str, error: BaseException | None) -> None:
        if error is None:
            self.sched.complete_task(path)
            log.task_finished(path, "executed")
            return

        skipped = self.sched.fail_task(path, error)
        log.task_finished(path, "failed", _describe_error(error))
        for dep in skipped:
            log.task_finished(dep, "skipped", self.sched.reason(dep))

        if self.cfg.fail_fast and self.sched.count_pending():
            log.warn(f"{path} failed; stopping (fail-fast)")
            for dep in self.sched.skip_pending(REASON_FAIL_FAST):
                log.task_finished(dep, "skipped", REASON_FAIL_FAST)

    def _report_stall(self, headline: str) -> None:
        log.error(headline)
        log.console.print("")
        log.console.print("[red]Blocked tasks:[/red]")
        for path in self.sched.pending():
            reason = self.sched.explain_block(path) or "claimed by another runner"
            log.console.print(f"  {path}: {reason}")
        for path in self.sched.skip_pending(REASON_STALLED):
            log.task_finished(path, "skipped", REASON_STALLED)

    def _skip_excluded(self) -> None:
        for task in self.plan.excluded:
            if task.state == TaskState.CONFIGURED and task.claim():
                task.finish(TaskState.SKIPPED, reason=REASON_NOT_REQUESTED)

    def _result(self, duration: float) -> BuildResult:
        outcomes: list[TaskOutcome] = []
        for path in self.plan.order:
            task = self.plan.task(path)
            state = self.sched.state(path)
            outcomes.append(
                TaskOutcome(
                    path=path,
                    state=state.value,
                    reason=self.sched.reason(path) if state == NodeState.SKIPPED else "",
                    error=_describe_error(task.error) if task.error is not None else "",
                    duration=self._durations.get(path, 0.0),
                )
            )
        return BuildResult(
            requested=list(self.plan.requested),
            outcomes=outcomes,
            cancelled=self._cancel.is_set(),
            duration=duration,
        )

    # ── signals ──────────────────────────────────────────────────

    def _install_signal_handlers(self) -> None:
        """Install handlers so Ctrl-C cancels tasks that have not started."""
        self._orig_signal_handlers = {}
        if threading.current_thread() is not threading.main_thread():
            return
        signals_to_handle = [signal.SIGINT]
        if hasattr(signal, "SIGBREAK"):
            signals_to_handle.append(signal.SIGBREAK)
        if hasattr(signal, "SIGTERM"):
            signals_to_handle.append(signal.SIGTERM)

        for sig in signals_to_handle:
            try:
                self._orig_signal_handlers[sig] = signal.getsignal(sig)
                signal.signal(sig, self._on_signal)
            except (OSError, RuntimeError, ValueError):
                continue

    def _restore_signal_handlers(self) -> None:
        for sig, handler in self._orig_signal_handlers.items():
            try:
                signal.signal(sig, handler)
            except (OSError, RuntimeError, ValueError, TypeError):
                continue
        self._orig_signal_handlers = {}

    def _on_signal(self, signum: int, _frame: object) -> None:
        self._interrupt_count += 1
        self.cancel()
        if self._interrupt_count == 1:
            log.warn(f"Interrupt received (signal {signum}). Letting running tasks finish...")
        else:
            log.warn(f"Interrupt received again (signal {signum}). Still waiting on running tasks...")
