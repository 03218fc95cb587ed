"""Project tree resolution from a flat list of colon-delimited inclusion paths."""

from __future__ import annotations

import weakref
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Callable, Iterable, Iterator, Mapping

from buildtree import log
from buildtree.errors import ConfigurationError

if TYPE_CHECKING:
    from buildtree.tasks.model import Task

ROOT_PATH = ":"
SEPARATOR = ":"


@dataclass(frozen=True)
class Inclusion:
    """One inclusion entry, optionally carrying an explicit directory override."""

    path: str
    directory: str | Path | None = None


def normalize_path(raw: str) -> str:
    """Return *raw* as an absolute project path (``core`` -> ``:core``)."""
    text = (raw or "").strip()
    if not text or text == SEPARATOR:
        raise ConfigurationError(f"Invalid project path: '{raw}'")
    segments = text.lstrip(SEPARATOR).split(SEPARATOR)
    if any(not seg.strip() or seg != seg.strip() for seg in segments):
        raise ConfigurationError(f"Invalid project path: '{raw}' (empty segment)")
    return SEPARATOR + SEPARATOR.join(segments)


def parent_path(path: str) -> str:
    head, _, _ = path.rpartition(SEPARATOR)
    return head or ROOT_PATH


def _default_directory(path: str) -> Path:
    return Path(*path.lstrip(SEPARATOR).split(SEPARATOR))


@dataclass(eq=False)
class Project:
    """A node of the project tree. Structure is fixed once the tree is resolved."""

    path: str
    name: str
    directory: Path
    _parent: weakref.ReferenceType[Project] | None = field(default=None, repr=False)
    _children: dict[str, Project] = field(default_factory=dict, repr=False)
    _tasks: dict[str, Task] = field(default_factory=dict, repr=False)

    @property
    def parent(self) -> Project | None:
        return self._parent() if self._parent is not None else None

    @property
    def children(self) -> tuple[Project, ...]:
        return tuple(self._children.values())

    @property
    def tasks(self) -> Mapping[str, Task]:
        """Registered tasks by name (read-only view; mutate via the registry)."""
        return MappingProxyType(self._tasks)

    @property
    def is_root(self) -> bool:
        return self.path == ROOT_PATH

    def task_path(self, name: str) -> str:
        if self.is_root:
            return f"{SEPARATOR}{name}"
        return f"{self.path}{SEPARATOR}{name}"

    def __repr__(self) -> str:
        return f"Project({self.path!r}, directory={str(self.directory)!r})"


class ProjectTree:
    """Resolved, immutable project hierarchy.

    Cross-project configuration goes through :meth:`configure_project`,
    which hands the requested project to the caller's action explicitly.
    """

    def __init__(self, root: Project, projects: dict[str, Project], root_dir: Path) -> None:
        self._root = root
        self._projects = projects
        self.root_dir = root_dir

    @property
    def root(self) -> Project:
        return self._root

    def project(self, path: str) -> Project:
        key = path if path == ROOT_PATH else normalize_path(path)
        try:
            return self._projects[key]
        except KeyError:
            raise ConfigurationError(f"Project '{key}' not found") from None

    def projects(self) -> Iterator[Project]:
        """Yield every project in pre-order (root first, children in inclusion order)."""
        stack = [self._root]
        while stack:
            proj = stack.pop()
            yield proj
            stack.extend(reversed(proj.children))

    def subprojects(self, path: str = ROOT_PATH) -> list[Project]:
        """All descendants of *path*, excluding the project itself."""
        start = self.project(path)
        return [p for p in self.projects() if p is not start and _is_ancestor(start, p)]

    def configure_project(self, path: str, action: Callable[[Project], None]) -> Project:
        proj = self.project(path)
        action(proj)
        return proj

    def render(self) -> list[str]:
        """Human-readable tree lines, one per project."""
        lines: list[str] = []
        for proj in self.projects():
            depth = 0 if proj.is_root else proj.path.count(SEPARATOR)
            label = f"Root project '{proj.name}'" if proj.is_root else f"Project '{proj.path}'"
            lines.append(f"{'    ' * depth}{label} ({proj.directory})")
        return lines

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        try:
            self.project(path)
        except ConfigurationError:
            return False
        return True

    def __len__(self) -> int:
        return len(self._projects)


def _is_ancestor(ancestor: Project, proj: Project) -> bool:
    cur = proj.parent
    while cur is not None:
        if cur is ancestor:
            return True
        cur = cur.parent
    return False


def _collect_overrides(
    includes: Iterable[str | Inclusion],
    project_dirs: Mapping[str, str | Path] | None,
) -> tuple[list[str], dict[str, Path]]:
    """Normalize entries and merge directory overrides, rejecting conflicts."""
    ordered: list[str] = []
    overrides: dict[str, Path] = {}

    def _add_override(path: str, directory: str | Path) -> None:
        new = Path(directory)
        old = overrides.get(path)
        if old is not None and old != new:
            raise ConfigurationError(
                f"Conflicting directories for project '{path}': '{old}' and '{new}'"
            )
        overrides[path] = new

    for entry in includes:
        if isinstance(entry, Inclusion):
            path = normalize_path(entry.path)
            if entry.directory is not None:
                _add_override(path, entry.directory)
        else:
            path = normalize_path(entry)
        if path not in ordered:
            ordered.append(path)

    for raw, directory in (project_dirs or {}).items():
        path = normalize_path(raw)
        _add_override(path, directory)
        if path not in ordered:
            ordered.append(path)

    return ordered, overrides


def resolve_tree(
    root_name: str,
    includes: Iterable[str | Inclusion],
    root_dir: str | Path = ".",
    project_dirs: Mapping[str, str | Path] | None = None,
) -> ProjectTree:
    """Build the project tree for *root_name* from a flat inclusion list.

    Intermediate projects are created implicitly. Each project's directory
    defaults to its path with colons replaced by path separators, relative
    to *root_dir*; explicit overrides are resolved against *root_dir* too.
    Nothing is created on disk.
    """
    if not root_name or not root_name.strip():
        raise ConfigurationError("Root project name must not be empty")

    base = Path(root_dir)
    ordered, overrides = _collect_overrides(includes, project_dirs)

    root = Project(path=ROOT_PATH, name=root_name.strip(), directory=base)
    projects: dict[str, Project] = {ROOT_PATH: root}

    def _ensure(path: str) -> Project:
        existing = projects.get(path)
        if existing is not None:
            return existing
        parent = _ensure(parent_path(path))
        rel = overrides.get(path, _default_directory(path))
        proj = Project(
            path=path,
            name=path.rpartition(SEPARATOR)[2],
            directory=base / rel,
            _parent=weakref.ref(parent),
        )
        parent._children[proj.name] = proj
        projects[path] = proj
        log.debug(f"Resolved project {path} -> {proj.directory}")
        return proj

    for path in ordered:
        _ensure(path)

    return ProjectTree(root, projects, base)
