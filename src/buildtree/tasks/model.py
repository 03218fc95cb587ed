"""Task data model: registration mode, materialization state, actions."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Union

from buildtree.errors import BuildError, ConfigurationError

if TYPE_CHECKING:
    from buildtree.project import Project

Action = Callable[["Task"], None]
TaskRef = Union[str, "Task"]


class RegistrationMode(str, Enum):
    EAGER = "eager"
    LAZY = "lazy"


class TaskState(str, Enum):
    UNREALIZED = "unrealized"
    CONFIGURED = "configured"
    EXECUTED = "executed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STATES = frozenset({TaskState.EXECUTED, TaskState.FAILED, TaskState.SKIPPED})


@dataclass(eq=False)
class Task:
    """A named unit of work owned by a project.

    The configuration *body* receives the task and typically declares
    dependencies and actions::

        def configure(task):
            task.depends_on("compile")
            task.do_last(lambda t: print("packaged"))
    """

    name: str
    project: Project
    mode: RegistrationMode = RegistrationMode.LAZY
    body: Action | None = field(default=None, repr=False)
    sequence: int = 0
    description: str = ""
    action: Action | None = field(default=None, repr=False)
    pre_actions: list[Action] = field(default_factory=list, repr=False)
    post_actions: list[Action] = field(default_factory=list, repr=False)
    dependencies: list[TaskRef] = field(default_factory=list, repr=False)
    state: TaskState = TaskState.UNREALIZED
    skip_reason: str = ""
    error: BaseException | None = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self._lock = threading.RLock()
        self._body_started = False
        self._claimed = False

    @property
    def path(self) -> str:
        return self.project.task_path(self.name)

    @property
    def is_realized(self) -> bool:
        return self.state != TaskState.UNREALIZED

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    # ── configuration API ────────────────────────────────────────

    def depends_on(self, *refs: TaskRef) -> Task:
        """Declare predecessors: absolute paths, names in this project, or tasks."""
        for ref in refs:
            if ref not in self.dependencies:
                self.dependencies.append(ref)
        return self

    def do_first(self, action: Action) -> Task:
        """Append a pre-action. Pre-actions run in the order they were added."""
        self.pre_actions.append(action)
        return self

    def do_last(self, action: Action) -> Task:
        """Append a post-action. Post-actions run in the order they were added."""
        self.post_actions.append(action)
        return self

    def do(self, action: Action) -> Task:
        """Set the task's main action, replacing any previous one."""
        self.action = action
        return self

    # ── lifecycle ────────────────────────────────────────────────

    def realize(self) -> Task:
        """Run the configuration body once: unrealized -> configured."""
        with self._lock:
            if self.state != TaskState.UNREALIZED:
                return self
            if self._body_started:
                raise ConfigurationError(
                    f"Task '{self.path}' could not be configured "
                    "(configuration failed earlier or is re-entrant)"
                )
            self._body_started = True
            if self.body is not None:
                try:
                    self.body(self)
                except BuildError:
                    raise
                except Exception as exc:  # noqa: BLE001
                    raise ConfigurationError(
                        f"Failed to configure task '{self.path}': {exc}"
                    ) from exc
            self.state = TaskState.CONFIGURED
        return self

    def claim(self) -> bool:
        """Atomically claim a configured task for execution.

        Returns ``True`` for exactly one caller; later callers and tasks that
        are not in the configured state get ``False``.
        """
        with self._lock:
            if self._claimed or self.state != TaskState.CONFIGURED:
                return False
            self._claimed = True
            return True

    def run_actions(self) -> None:
        """Run pre-actions, the main action, then post-actions."""
        for act in self.pre_actions:
            act(self)
        if self.action is not None:
            self.action(self)
        for act in self.post_actions:
            act(self)

    def finish(self, state: TaskState, *, reason: str = "", error: BaseException | None = None) -> None:
        """Enter a terminal state. Terminal states are final."""
        if state not in TERMINAL_STATES:
            raise ValueError(f"{state.value} is not a terminal state")
        with self._lock:
            if self.state in TERMINAL_STATES:
                raise BuildError(
                    f"Task '{self.path}' already finished as {self.state.value}"
                )
            self.state = state
            self.skip_reason = reason
            self.error = error
