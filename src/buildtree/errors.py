"""Exceptions raised while configuring and running a build."""

from __future__ import annotations


class BuildError(Exception):
    """Base class for every buildtree error."""


class ConfigurationError(BuildError):
    """Bad tree or task declaration. Fatal before execution begins."""


class UnknownTaskError(BuildError):
    def __init__(self, task: str, project: str = "") -> None:
        self.task = task
        self.project = project
        where = f" in project '{project}'" if project else ""
        super().__init__(f"Task '{task}' not found{where}")


class DuplicateTaskError(BuildError):
    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Task '{path}' is already registered")


class CyclicDependencyError(BuildError):
    """Raised by the graph builder; ``cycle`` repeats its first element at the end."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency: {' -> '.join(self.cycle)}")


class TaskExecutionError(BuildError):
    """A task action failed (e.g. a shell command exited non-zero)."""
