"""Load a YAML build declaration into a :class:`~buildtree.build.Build`.

Example ``build.yaml``::

    rootProject: MyKillerApp
    include: [core, ios, "ios:some-other-subproject"]
    projectDirs:
      ":ios": apple/ios
    whenTaskAdded:
      - match: "test*"
        dependsOn: [":core:compile"]
    tasks:
      ":core:compile":
        command: make compile
      ":core:build":
        dependsOn: [compile]
        doLast: ["echo built"]
"""

from __future__ import annotations

import fnmatch
import subprocess
from pathlib import Path
from typing import Any

import yaml

from buildtree import log
from buildtree.build import Build
from buildtree.config import Config
from buildtree.errors import ConfigurationError, TaskExecutionError
from buildtree.io_utils import load_yaml
from buildtree.project import ROOT_PATH, SEPARATOR, normalize_path
from buildtree.tasks.model import Action, Task

_TOP_LEVEL_KEYS = {"rootProject", "include", "projectDirs", "whenTaskAdded", "tasks"}
_TASK_KEYS = {"command", "dependsOn", "doFirst", "doLast", "eager", "description"}
_RULE_KEYS = {"match", "dependsOn"}


def _as_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ConfigurationError(f"{what} must be a string or a list of strings")


def _split_task_path(raw: str) -> tuple[str, str]:
    """``:core:build`` -> (``:core``, ``build``); ``build`` -> (``:``, ``build``)."""
    text = raw.strip()
    project, _, name = text.rpartition(SEPARATOR)
    if not name:
        raise ConfigurationError(f"Invalid task path: '{raw}'")
    if not project:
        return ROOT_PATH, name
    return normalize_path(project), name


def _last_line(text: str) -> str:
    lines = [line for line in (text or "").splitlines() if line.strip()]
    return lines[-1].strip() if lines else ""


def shell_action(command: str) -> Action:
    """Action running *command* through the shell in the project directory.

    Output lines are echoed with the task path as prefix. A non-zero exit
    raises :class:`TaskExecutionError` carrying the last line of stderr.
    """

    def _run(task: Task) -> None:
        cwd = task.project.directory
        if not cwd.is_dir():
            log.debug(f"{cwd} does not exist; running {task.path} in the current directory")
            cwd = Path.cwd()
        log.debug(f"{task.path}: $ {command}")
        proc = subprocess.run(
            command,
            shell=True,
            cwd=cwd,
            capture_output=True,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
        for line in proc.stdout.splitlines():
            log.task_output(task.path, line)
        if proc.returncode != 0:
            detail = _last_line(proc.stderr) or _last_line(proc.stdout)
            msg = f"'{command}' exited with code {proc.returncode}"
            raise TaskExecutionError(f"{msg}: {detail}" if detail else msg)

    return _run


def _task_body(decl: dict[str, Any], where: str) -> Action:
    depends_on = _as_list(decl.get("dependsOn"), f"{where}.dependsOn")
    do_first = _as_list(decl.get("doFirst"), f"{where}.doFirst")
    do_last = _as_list(decl.get("doLast"), f"{where}.doLast")
    command = decl.get("command")
    if command is not None and not isinstance(command, str):
        raise ConfigurationError(f"{where}.command must be a string")

    def _configure(task: Task) -> None:
        task.depends_on(*depends_on)
        for cmd in do_first:
            task.do_first(shell_action(cmd))
        if command:
            task.do(shell_action(command))
        for cmd in do_last:
            task.do_last(shell_action(cmd))

    return _configure


def _rule_predicate(pattern: str):
    def _matches(task: Task) -> bool:
        target = task.path if SEPARATOR in pattern else task.name
        return fnmatch.fnmatchcase(target, pattern)

    return _matches


def _rule_action(depends_on: list[str]) -> Action:
    def _add(task: Task) -> None:
        # a rule never makes a task depend on itself
        task.depends_on(*(d for d in depends_on if d not in (task.path, task.name)))

    return _add


def build_from_data(data: dict[str, Any], root_dir: str | Path = ".", cfg: Config | None = None) -> Build:
    """Create a build from an already-parsed declaration mapping."""
    if not isinstance(data, dict):
        raise ConfigurationError("Build declaration must be a mapping")
    unknown = sorted(set(data) - _TOP_LEVEL_KEYS)
    if unknown:
        raise ConfigurationError(f"Unknown build declaration key(s): {', '.join(unknown)}")

    root_name = data.get("rootProject") or Path(root_dir).resolve().name
    includes = _as_list(data.get("include"), "include")
    project_dirs = data.get("projectDirs") or {}
    if not isinstance(project_dirs, dict):
        raise ConfigurationError("projectDirs must be a mapping of project path to directory")

    build = Build.from_settings(
        str(root_name),
        includes,
        root_dir=root_dir,
        project_dirs={str(k): str(v) for k, v in project_dirs.items()},
        cfg=cfg,
    )

    for i, rule in enumerate(data.get("whenTaskAdded") or []):
        where = f"whenTaskAdded[{i}]"
        if not isinstance(rule, dict) or not isinstance(rule.get("match"), str):
            raise ConfigurationError(f"{where} must be a mapping with a 'match' pattern")
        extra = sorted(set(rule) - _RULE_KEYS)
        if extra:
            raise ConfigurationError(f"{where}: unknown key(s) {', '.join(extra)}")
        build.when_task_added(
            _rule_predicate(rule["match"]),
            _rule_action(_as_list(rule.get("dependsOn"), f"{where}.dependsOn")),
        )

    tasks = data.get("tasks") or {}
    if not isinstance(tasks, dict):
        raise ConfigurationError("tasks must be a mapping of task path to declaration")
    for raw_path, decl in tasks.items():
        where = f"tasks['{raw_path}']"
        decl = decl or {}
        if not isinstance(decl, dict):
            raise ConfigurationError(f"{where} must be a mapping")
        extra = sorted(set(decl) - _TASK_KEYS)
        if extra:
            raise ConfigurationError(f"{where}: unknown key(s) {', '.join(extra)}")
        project, name = _split_task_path(str(raw_path))
        build.register(
            project,
            name,
            _task_body(decl, where),
            eager=bool(decl.get("eager", False)),
            description=str(decl.get("description", "")),
        )

    return build


def load_build_file(path: str | Path, cfg: Config | None = None) -> Build:
    """Read *path* (YAML) and return the configured build.

    Project directories are resolved relative to the file's directory.
    """
    p = Path(path)
    if not p.is_file():
        raise ConfigurationError(f"Build file not found: {p}")
    try:
        data = load_yaml(p)
    except (yaml.YAMLError, UnicodeDecodeError) as exc:
        raise ConfigurationError(f"Could not parse {p}: {exc}") from exc
    log.debug(f"Loaded build declaration from {p}")
    return build_from_data(data, root_dir=p.parent, cfg=cfg)
