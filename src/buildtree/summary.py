"""Run outcome, end-of-run summary, and JSON report."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from rich.markup import escape

from buildtree import log
from buildtree.io_utils import write_json


@dataclass
class TaskOutcome:
    path: str
    state: str
    reason: str = ""
    error: str = ""
    duration: float = 0.0


@dataclass
class BuildResult:
    """Terminal state of every planned task, in plan order."""

    requested: list[str] = field(default_factory=list)
    outcomes: list[TaskOutcome] = field(default_factory=list)
    cancelled: bool = False
    duration: float = 0.0

    def _with_state(self, state: str) -> list[TaskOutcome]:
        return [o for o in self.outcomes if o.state == state]

    @property
    def executed(self) -> list[TaskOutcome]:
        return self._with_state("executed")

    @property
    def failed(self) -> list[TaskOutcome]:
        return self._with_state("failed")

    @property
    def skipped(self) -> list[TaskOutcome]:
        return self._with_state("skipped")

    @property
    def states(self) -> dict[str, str]:
        return {o.path: o.state for o in self.outcomes}

    @property
    def success(self) -> bool:
        return not self.cancelled and all(o.state == "executed" for o in self.outcomes)

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def outcome(self, path: str) -> TaskOutcome:
        for o in self.outcomes:
            if o.path == path:
                return o
        raise KeyError(path)


def _format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.2f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m {secs}s"


def show_summary(result: BuildResult) -> None:
    """Print the final run summary."""
    log.console.print("")
    log.console.print("[bold]============================================[/bold]")
    if result.success:
        log.console.print(
            f"[green]BUILD SUCCESSFUL[/green] in {_format_duration(result.duration)}"
        )
    else:
        log.console.print(f"[red]BUILD FAILED[/red] in {_format_duration(result.duration)}")
    log.console.print(
        f"{len(result.outcomes)} task(s): {len(result.executed)} executed, "
        f"{len(result.failed)} failed, {len(result.skipped)} skipped"
    )
    log.console.print("[bold]============================================[/bold]")

    if result.failed:
        log.console.print("")
        log.console.print("[bold]>>> Failed[/bold]")
        for o in result.failed:
            log.console.print(f"  [red]✗[/red] {o.path}")
            if o.error:
                log.console.print(f"[dim]    Error: {escape(o.error)}[/dim]")

    if result.skipped:
        log.console.print("")
        log.console.print("[bold]>>> Skipped[/bold]")
        for o in result.skipped:
            log.console.print(f"  [yellow]-[/yellow] {o.path} [dim]({o.reason})[/dim]")

    if result.executed and log.is_verbose():
        log.console.print("")
        log.console.print("[bold]>>> Executed[/bold]")
        for o in result.executed:
            log.console.print(f"  [green]✓[/green] {o.path} [dim]{_format_duration(o.duration)}[/dim]")

    log.console.print("[bold]============================================[/bold]")


def write_report(result: BuildResult, path: str | Path) -> None:
    """Write a machine-readable report of *result* to *path*."""
    report = {
        "status": "success" if result.success else "failed",
        "requested": result.requested,
        "cancelled": result.cancelled,
        "durationSeconds": round(result.duration, 3),
        "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        "tasks": [
            {
                "path": o.path,
                "state": o.state,
                **({"reason": o.reason} if o.reason else {}),
                **({"errorMessage": o.error} if o.error else {}),
                "durationSeconds": round(o.duration, 3),
            }
            for o in result.outcomes
        ],
    }
    write_json(path, report)
    log.debug(f"Report written to {path}")
