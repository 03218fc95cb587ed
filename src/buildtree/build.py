"""Build facade: one resolved tree, its registry, and a single invocation."""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Iterable, Mapping

from buildtree import log
from buildtree.config import Config
from buildtree.graph import ExecutionPlan, GraphBuilder
from buildtree.project import Inclusion, Project, ProjectTree, resolve_tree
from buildtree.runner import Executor
from buildtree.summary import BuildResult
from buildtree.tasks.model import Action, RegistrationMode, Task, TaskRef
from buildtree.tasks.registry import ProjectRef, TaskRegistry

Plugin = Callable[["Build"], None]


class Build:
    """Wires the project tree, task registry, graph builder and engine together.

    Usage::

        build = Build.from_settings("MyKillerApp", ["core", "ios"])
        build.register(":core", "compile", body=lambda t: t.do(compile_sources))
        build.register(":core", "build", body=lambda t: t.depends_on("compile"))
        result = build.run([":core:build"])
    """

    def __init__(self, tree: ProjectTree, cfg: Config | None = None) -> None:
        self.tree = tree
        self.cfg = cfg or Config()
        self.registry = TaskRegistry(tree)
        self.plugins: list[Plugin] = []

    @classmethod
    def from_settings(
        cls,
        root_name: str,
        includes: Iterable[str | Inclusion],
        *,
        root_dir: str | Path = ".",
        project_dirs: Mapping[str, str | Path] | None = None,
        cfg: Config | None = None,
    ) -> Build:
        tree = resolve_tree(root_name, includes, root_dir=root_dir, project_dirs=project_dirs)
        return cls(tree, cfg)

    # ── configuration phase ──────────────────────────────────────

    @property
    def root(self) -> Project:
        return self.tree.root

    def project(self, path: str) -> Project:
        return self.tree.project(path)

    def configure_project(self, path: str, action: Callable[[Project], None]) -> Project:
        return self.tree.configure_project(path, action)

    def register(
        self,
        project: ProjectRef,
        name: str,
        body: Action | None = None,
        *,
        eager: bool = False,
        description: str = "",
    ) -> Task:
        mode = RegistrationMode.EAGER if eager else RegistrationMode.LAZY
        return self.registry.register(project, name, mode, body, description=description)

    def when_task_added(self, predicate: Callable[[Task], bool], action: Action) -> None:
        self.registry.when_task_added(predicate, action)

    def apply(self, plugin: Plugin) -> Build:
        """Run a plugin callable against this build before planning."""
        log.debug(f"Applying plugin {getattr(plugin, '__name__', plugin)!r}")
        plugin(self)
        self.plugins.append(plugin)
        return self

    # ── execution phase ──────────────────────────────────────────

    def plan(self, requested: Iterable[TaskRef]) -> ExecutionPlan:
        return GraphBuilder(self.registry).build(requested)

    def run(self, requested: Iterable[TaskRef]) -> BuildResult:
        """Plan and execute *requested*. Configuration errors propagate."""
        plan = self.plan(requested)
        return Executor(plan, self.cfg).run()
