"""Per-project task registry with eager and lazy registration."""

from __future__ import annotations

import itertools
import threading
from dataclasses import dataclass
from typing import Callable, Iterator

from buildtree import log
from buildtree.errors import BuildError, ConfigurationError, DuplicateTaskError, UnknownTaskError
from buildtree.project import ROOT_PATH, SEPARATOR, Project, ProjectTree
from buildtree.tasks.model import Action, RegistrationMode, Task, TaskRef

ProjectRef = Project | str


@dataclass(frozen=True)
class TaskRule:
    """Reactive rule applied to every task registered after it."""

    predicate: Callable[[Task], bool]
    action: Action


class TaskRegistry:
    """Holds task declarations for every project of a resolved tree.

    Usage::

        registry = TaskRegistry(tree)
        registry.register(":core", "compile", body=configure_compile)
        registry.register(":core", "build", RegistrationMode.EAGER, configure_build)
        task = registry.get(":core", "compile")   # realizes the lazy task
    """

    def __init__(self, tree: ProjectTree) -> None:
        self.tree = tree
        self._lock = threading.RLock()
        self._sequence = itertools.count()
        self._rules: list[TaskRule] = []
        self._ordered: list[Task] = []

    def _project(self, project: ProjectRef) -> Project:
        if isinstance(project, Project):
            return project
        return self.tree.project(project)

    # ── registration ─────────────────────────────────────────────

    def register(
        self,
        project: ProjectRef,
        name: str,
        mode: RegistrationMode = RegistrationMode.LAZY,
        body: Action | None = None,
        *,
        description: str = "",
    ) -> Task:
        """Declare task *name* in *project*.

        Eager bodies run immediately; lazy bodies wait until the task is
        needed. A duplicate name raises :class:`DuplicateTaskError` and a
        failing rule raises :class:`ConfigurationError`; either way the
        registry is left untouched.
        """
        proj = self._project(project)
        if not name or SEPARATOR in name or name != name.strip():
            raise ConfigurationError(f"Invalid task name: '{name}'")

        with self._lock:
            if name in proj._tasks:
                raise DuplicateTaskError(proj.task_path(name))
            task = Task(
                name=name,
                project=proj,
                mode=RegistrationMode(mode),
                body=body,
                description=description,
            )
            # rules see the task before it is published; a failing rule leaves no trace
            for rule in list(self._rules):
                try:
                    if rule.predicate(task):
                        rule.action(task)
                except BuildError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    raise ConfigurationError(
                        f"Rule failed for task '{task.path}': {exc}"
                    ) from exc

            task.sequence = next(self._sequence)
            proj._tasks[name] = task
            self._ordered.append(task)
            log.debug(f"Registered {task.path} ({task.mode.value})")

        if task.mode == RegistrationMode.EAGER:
            task.realize()
        return task

    def when_task_added(self, predicate: Callable[[Task], bool], action: Action) -> TaskRule:
        """Apply *action* to every task registered from now on that matches *predicate*."""
        rule = TaskRule(predicate, action)
        with self._lock:
            self._rules.append(rule)
        return rule

    # ── lookup ───────────────────────────────────────────────────

    def has(self, project: ProjectRef, name: str) -> bool:
        return name in self._project(project)._tasks

    def get(self, project: ProjectRef, name: str) -> Task:
        """Return the task, realizing it first if it is lazy and unrealized."""
        proj = self._project(project)
        task = proj._tasks.get(name)
        if task is None:
            raise UnknownTaskError(name, proj.path)
        return task.realize()

    def find(self, task_path: str) -> Task:
        """Look up an absolute task path such as ``:core:build`` or ``:build``."""
        if not task_path.startswith(SEPARATOR) or task_path.endswith(SEPARATOR):
            raise UnknownTaskError(task_path)
        project_path, _, name = task_path.rpartition(SEPARATOR)
        if project_path and project_path not in self.tree:
            raise UnknownTaskError(task_path)
        return self.get(project_path or ROOT_PATH, name)

    def resolve(self, ref: TaskRef, relative_to: Project) -> Task:
        """Resolve a dependency reference declared by a task of *relative_to*."""
        if isinstance(ref, Task):
            return ref.realize()
        if ref.startswith(SEPARATOR):
            return self.find(ref)
        if SEPARATOR in ref:
            # relative project path, e.g. "core:compile" from the root
            return self.find(SEPARATOR + ref)
        return self.get(relative_to, ref)

    def tasks(self, project: ProjectRef | None = None) -> Iterator[Task]:
        """Registered tasks in registration order, without realizing them."""
        if project is None:
            yield from list(self._ordered)
            return
        yield from list(self._project(project)._tasks.values())

    def names(self, project: ProjectRef) -> list[str]:
        return list(self._project(project)._tasks)

    def __len__(self) -> int:
        return len(self._ordered)
