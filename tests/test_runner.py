"""Tests for buildtree.runner: the execution engine."""

from __future__ import annotations

import signal
import sys
import threading
import time

import pytest

from buildtree.runner import Executor
from buildtree.scheduler import (
    REASON_CANCELLED,
    REASON_FAIL_FAST,
    REASON_NOT_REQUESTED,
    REASON_STALLED,
    REASON_UPSTREAM,
)
from buildtree.tasks.model import TaskState


def _fail(message: str = "boom"):
    def _raise(_task):
        raise RuntimeError(message)

    return _raise


# ── Scenario from the build docs ─────────────────────────────────────────────


class TestCompileFailureScenario:
    def test_compile_failure_skips_build(self, make_build, recorder):
        """:core:build depends on :core:compile; compile fails."""
        build = make_build(["core"])
        build.register(":core", "compile", lambda t: t.do(_fail("compiler exploded")))
        build.register(":core", "build", lambda t: (t.depends_on("compile"), t.do(recorder.action("build"))))

        result = build.run([":core:build"])

        assert result.states == {":core:compile": "failed", ":core:build": "skipped"}
        assert result.outcome(":core:build").reason == REASON_UPSTREAM
        assert "compiler exploded" in result.outcome(":core:compile").error
        assert result.exit_code != 0
        assert recorder.events == []

    def test_success_exit_code_zero(self, make_build, recorder):
        build = make_build(["core"])
        build.register(":core", "compile", lambda t: t.do(recorder.action("compile")))
        build.register(":core", "build", lambda t: (t.depends_on("compile"), t.do(recorder.action("build"))))

        result = build.run([":core:build"])

        assert result.success
        assert result.exit_code == 0
        assert recorder.events == ["compile", "build"]


# ── Action ordering ──────────────────────────────────────────────────────────


class TestActionOrdering:
    def test_pre_main_post_order(self, make_build, recorder):
        build = make_build()

        def _configure(task):
            task.do_last(recorder.action("post1"))
            task.do_first(recorder.action("pre1"))
            task.do(recorder.action("main"))
            task.do_first(recorder.action("pre2"))
            task.do_last(recorder.action("post2"))

        build.register(":core", "x", _configure)
        build.run([":core:x"])
        assert recorder.events == ["pre1", "pre2", "main", "post1", "post2"]

    def test_task_without_actions_executes(self, make_build):
        build = make_build()
        build.register(":core", "lifecycle")
        result = build.run([":core:lifecycle"])
        assert result.states == {":core:lifecycle": "executed"}

    def test_failing_pre_action_stops_task(self, make_build, recorder):
        build = make_build()
        build.register(
            ":core",
            "x",
            lambda t: (t.do_first(_fail()), t.do(recorder.action("main"))),
        )
        result = build.run([":core:x"])
        assert result.states == {":core:x": "failed"}
        assert recorder.events == []


# ── Exactly-once and ordering ────────────────────────────────────────────────


class TestExactlyOnce:
    def test_shared_dependency_runs_once(self, make_build, recorder):
        build = make_build(max_workers=4)
        build.register(":core", "compile", lambda t: t.do(recorder.action("compile")))
        for name in ["test", "jar", "docs"]:
            build.register(":core", name, lambda t, n=name: (t.depends_on("compile"), t.do(recorder.action(n))))

        result = build.run([":core:test", ":core:jar", ":core:docs"])

        assert recorder.events.count("compile") == 1
        assert recorder.index("compile") == 0
        assert sorted(recorder.events[1:]) == ["docs", "jar", "test"]
        assert len(result.executed) == 4

    def test_one_terminal_state_per_task(self, make_build):
        build = make_build(max_workers=3)
        build.register(":core", "a", lambda t: t.do(_fail()))
        build.register(":core", "b", lambda t: t.depends_on("a"))
        build.register(":core", "c")
        build.register(":core", "d", lambda t: t.depends_on("c"))
        result = build.run([":core:b", ":core:d"])

        assert len(result.outcomes) == 4
        assert {o.state for o in result.outcomes} <= {"executed", "failed", "skipped"}
        for path in [":core:a", ":core:b", ":core:c", ":core:d"]:
            assert build.registry.find(path).is_terminal

    def test_predecessors_finish_before_successors_start(self, make_build, recorder):
        build = make_build(["core", "ios"], max_workers=4)

        def _timed(name):
            def _act(_task):
                recorder.record(f"start:{name}")
                time.sleep(0.01)
                recorder.record(f"end:{name}")

            return _act

        edges = {"a": [], "b": ["a"], "c": ["a"], "d": ["b", "c"], "e": [], "f": ["e", "d"]}
        for name, deps in edges.items():
            build.register(":core", name, lambda t, n=name, d=deps: (t.depends_on(*d), t.do(_timed(n))))

        result = build.run([":core:f"])

        assert result.success
        for name, deps in edges.items():
            for dep in deps:
                assert recorder.index(f"end:{dep}") < recorder.index(f"start:{name}")

    def test_rerun_does_not_execute_again(self, make_build, recorder):
        build = make_build()
        build.register(":core", "x", lambda t: t.do(recorder.action("x")))
        first = build.run([":core:x"])
        second = build.run([":core:x"])
        assert recorder.events == ["x"]
        assert first.success and second.success


# ── Parallelism ──────────────────────────────────────────────────────────────


class TestParallelism:
    def test_independent_tasks_overlap(self, make_build):
        build = make_build(max_workers=2)
        barrier = threading.Barrier(2, timeout=5)
        build.register(":core", "left", lambda t: t.do(lambda _t: barrier.wait()))
        build.register(":core", "right", lambda t: t.do(lambda _t: barrier.wait()))

        result = build.run([":core:left", ":core:right"])
        assert result.success

    def test_worker_limit_respected(self, make_build):
        build = make_build(max_workers=2)
        lock = threading.Lock()
        active = [0]
        peak = [0]

        def _work(_task):
            with lock:
                active[0] += 1
                peak[0] = max(peak[0], active[0])
            time.sleep(0.02)
            with lock:
                active[0] -= 1

        names = [f"t{i}" for i in range(6)]
        for name in names:
            build.register(":core", name, lambda t: t.do(_work))
        result = build.run([f":core:{n}" for n in names])

        assert result.success
        assert peak[0] <= 2

    def test_sequential_follows_plan_order(self, make_build, recorder):
        build = make_build(sequential=True)
        for name in ["c", "a", "b"]:
            build.register(":core", name, lambda t, n=name: t.do(recorder.action(n)))
        build.run(["c", "a", "b"])
        assert recorder.events == ["c", "a", "b"]


# ── Failure policy ───────────────────────────────────────────────────────────


class TestFailurePolicy:
    def test_independent_branches_continue(self, make_build, recorder):
        build = make_build(max_workers=1)
        build.register(":core", "bad", lambda t: t.do(_fail()))
        build.register(":core", "after_bad", lambda t: (t.depends_on("bad"), t.do(recorder.action("after_bad"))))
        build.register(":core", "good", lambda t: t.do(recorder.action("good")))

        result = build.run([":core:after_bad", ":core:good"])

        assert result.states == {
            ":core:bad": "failed",
            ":core:after_bad": "skipped",
            ":core:good": "executed",
        }
        assert recorder.events == ["good"]
        assert result.exit_code == 1

    def test_system_exit_is_a_task_failure(self, make_build, recorder):
        """An action calling sys.exit fails its task; the engine keeps going."""
        build = make_build(max_workers=1)
        build.register(":core", "bad", lambda t: t.do(lambda _t: sys.exit(3)))
        build.register(":core", "after", lambda t: t.depends_on("bad"))
        build.register(":core", "good", lambda t: t.do(recorder.action("good")))

        result = build.run([":core:after", ":core:good"])

        assert result.states == {
            ":core:bad": "failed",
            ":core:after": "skipped",
            ":core:good": "executed",
        }
        assert "SystemExit: 3" in result.outcome(":core:bad").error
        assert build.registry.find(":core:bad").state == TaskState.FAILED
        assert result.exit_code == 1

    def test_fail_fast_skips_everything_not_started(self, make_build, recorder):
        build = make_build(max_workers=1, fail_fast=True)
        build.register(":core", "bad", lambda t: t.do(_fail()))
        build.register(":core", "good", lambda t: t.do(recorder.action("good")))
        build.register(":core", "after", lambda t: (t.depends_on("bad"), t.do(recorder.action("after"))))

        result = build.run([":core:bad", ":core:good", ":core:after"])

        assert result.outcome(":core:bad").state == "failed"
        assert result.outcome(":core:after").reason == REASON_UPSTREAM
        assert result.outcome(":core:good").state == "skipped"
        assert result.outcome(":core:good").reason == REASON_FAIL_FAST
        assert recorder.events == []

    def test_fail_fast_lets_running_tasks_finish(self, make_build, recorder):
        build = make_build(max_workers=2, fail_fast=True)
        started = threading.Event()

        def _slow(_task):
            started.set()
            time.sleep(0.05)
            recorder.record("slow")

        def _bad(_task):
            assert started.wait(5)
            raise RuntimeError("boom")

        build.register(":core", "slow", lambda t: t.do(_slow))
        build.register(":core", "bad", lambda t: t.do(_bad))
        result = build.run([":core:slow", ":core:bad"])

        assert recorder.events == ["slow"]
        assert result.outcome(":core:slow").state == "executed"
        assert result.outcome(":core:bad").state == "failed"


# ── Cancellation ─────────────────────────────────────────────────────────────


class TestCancellation:
    def test_cancel_skips_not_started_tasks(self, make_build, recorder):
        build = make_build(max_workers=1)
        holder: dict[str, Executor] = {}

        def _cancel(_task):
            holder["executor"].cancel()
            recorder.record("first")

        build.register(":core", "first", lambda t: t.do(_cancel))
        build.register(":core", "second", lambda t: t.do(recorder.action("second")))

        plan = build.plan([":core:first", ":core:second"])
        executor = Executor(plan, build.cfg)
        holder["executor"] = executor
        result = executor.run()

        assert recorder.events == ["first"]
        assert result.outcome(":core:first").state == "executed"
        assert result.outcome(":core:second").reason == REASON_CANCELLED
        assert result.cancelled
        assert result.exit_code == 1

    def test_interrupt_signal_cancels_remaining_tasks(self, make_build, recorder):
        build = make_build(max_workers=1)
        holder: dict[str, Executor] = {}
        handlers = []

        def _interrupt(_task):
            executor = holder["executor"]
            handlers.append(signal.getsignal(signal.SIGINT))
            executor._on_signal(signal.SIGINT, None)
            recorder.record("first")

        build.register(":core", "first", lambda t: t.do(_interrupt))
        build.register(":core", "second", lambda t: t.do(recorder.action("second")))
        build.register(":core", "third", lambda t: (t.depends_on("second"), t.do(recorder.action("third"))))

        original = signal.getsignal(signal.SIGINT)
        executor = Executor(build.plan([":core:first", ":core:third"]), build.cfg)
        holder["executor"] = executor
        result = executor.run()

        assert handlers == [executor._on_signal]
        assert signal.getsignal(signal.SIGINT) == original
        assert recorder.events == ["first"]
        assert result.outcome(":core:first").state == "executed"
        assert result.outcome(":core:second").reason == REASON_CANCELLED
        assert result.outcome(":core:third").reason == REASON_CANCELLED
        assert result.cancelled

    def test_cancel_before_run(self, make_build, recorder):
        build = make_build()
        build.register(":core", "x", lambda t: t.do(recorder.action("x")))
        executor = Executor(build.plan([":core:x"]), build.cfg)
        executor.cancel()
        result = executor.run()
        assert recorder.events == []
        assert result.states == {":core:x": "skipped"}


# ── Stalled runs ───────────────────────────────────────────────────────────────


class TestStalledRun:
    def test_task_claimed_elsewhere_never_finishing(self, make_build, recorder):
        """A task held by another runner that never finishes does not hang the run."""
        build = make_build(stall_timeout=0.05)
        held = build.register(":core", "held")
        build.register(":core", "after", lambda t: (t.depends_on("held"), t.do(recorder.action("after"))))
        build.register(":core", "free", lambda t: t.do(recorder.action("free")))
        assert held.realize().claim()

        started = time.monotonic()
        result = build.run([":core:after", ":core:free"])

        assert time.monotonic() - started < 5
        assert recorder.events == ["free"]
        assert result.outcome(":core:held").reason == REASON_STALLED
        assert result.outcome(":core:after").reason == REASON_STALLED
        assert result.outcome(":core:free").state == "executed"
        assert result.exit_code == 1

    def test_blocked_tasks_reported(self, make_build, capsys):
        build = make_build(stall_timeout=0.05)
        held = build.register(":core", "held")
        build.register(":core", "after", lambda t: t.depends_on("held"))
        held.realize().claim()

        build.run([":core:after"])
        out = capsys.readouterr()
        assert "Blocked tasks" in out.out
        assert ":core:after: dependsOn: :core:held (pending)" in out.out
        assert ":core:held: claimed by another runner" in out.out

    def test_task_finished_by_other_runner_is_adopted(self, make_build, recorder):
        build = make_build(stall_timeout=5)
        held = build.register(":core", "held")
        build.register(":core", "after", lambda t: (t.depends_on("held"), t.do(recorder.action("after"))))
        held.realize().claim()

        timer = threading.Timer(0.05, lambda: held.finish(TaskState.EXECUTED))
        timer.start()
        try:
            result = build.run([":core:after"])
        finally:
            timer.join()

        assert result.success
        assert recorder.events == ["after"]


# ── Tasks outside the plan ───────────────────────────────────────────────────


class TestExcludedTasks:
    def test_configured_unrequested_task_skipped(self, make_build):
        build = make_build()
        eager = build.register(":core", "eager", eager=True)
        lazy = build.register(":core", "lazy")
        build.register(":core", "wanted")

        result = build.run([":core:wanted"])

        assert eager.state == TaskState.SKIPPED
        assert eager.skip_reason == REASON_NOT_REQUESTED
        assert lazy.state == TaskState.UNREALIZED
        assert [o.path for o in result.outcomes] == [":core:wanted"]


def test_executor_default_config(make_build):
    build = make_build()
    build.register(":core", "x")
    executor = Executor(build.plan([":core:x"]))
    assert executor.cfg.max_workers >= 1
    assert executor.run().success


@pytest.mark.parametrize("workers", [1, 2, 8])
def test_large_fan_in(make_build, workers):
    build = make_build(max_workers=workers)
    for i in range(20):
        build.register(":core", f"leaf{i}")
    build.register(":core", "all", lambda t: t.depends_on(*[f"leaf{i}" for i in range(20)]))
    result = build.run([":core:all"])
    assert result.success
    assert len(result.executed) == 21
