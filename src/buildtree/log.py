"""Console logging with colored output via Rich."""

from __future__ import annotations

from rich.console import Console
from rich.markup import escape

console = Console(highlight=False)
_err_console = Console(highlight=False, stderr=True)

_verbose = False

_STATE_MARKS: dict[str, str] = {
    "executed": "[green]✓[/green]",
    "failed": "[red]✗[/red]",
    "skipped": "[yellow]-[/yellow]",
}


def set_verbose(enabled: bool) -> None:
    global _verbose
    _verbose = enabled


def is_verbose() -> bool:
    return _verbose


def info(msg: str) -> None:
    console.print(f"[blue]\\[INFO][/blue] {msg}")


def success(msg: str) -> None:
    console.print(f"[green]\\[OK][/green] {msg}")


def warn(msg: str) -> None:
    console.print(f"[yellow]\\[WARN][/yellow] {msg}")


def error(msg: str) -> None:
    _err_console.print(f"[red]\\[ERROR][/red] {msg}")


def debug(msg: str) -> None:
    if _verbose:
        console.print(f"[dim]\\[DEBUG] {msg}[/dim]")


# ── task progress ────────────────────────────────────────────────


def task_started(path: str) -> None:
    console.print(f"  [cyan]●[/cyan] {path}")


def task_finished(path: str, state: str, detail: str = "") -> None:
    mark = _STATE_MARKS.get(state, "?")
    suffix = f" [dim]({escape(detail)})[/dim]" if detail else ""
    console.print(f"  {mark} {path}{suffix}")


def task_output(path: str, line: str) -> None:
    """Echo one line of command output, prefixed with the task path."""
    console.print(f"[dim]{path}>[/dim] {escape(line)}")
