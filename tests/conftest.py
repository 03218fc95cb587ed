"""Shared fixtures for buildtree tests.

File handling in tests:
- Use tmp_path for any directory or file creation so tests are isolated and cleaned up.
- Use buildtree.io_utils read_text/write_text for consistent UTF-8 I/O.
"""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from buildtree import log
from buildtree.build import Build
from buildtree.config import Config
from buildtree.io_utils import write_text


class Recorder:
    """Thread-safe event log used as a task action."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[str] = []

    def record(self, event: str) -> None:
        with self._lock:
            self.events.append(event)

    def action(self, event: str):
        return lambda _task: self.record(event)

    def index(self, event: str) -> int:
        return self.events.index(event)


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("BUILDTREE_MAX_WORKERS", raising=False)
    monkeypatch.delenv("BUILDTREE_FAIL_FAST", raising=False)
    log.set_verbose(False)


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


def _make_build(
    includes: list[str] | None = None,
    root_name: str = "app",
    **cfg_kwargs,
) -> Build:
    cfg_kwargs.setdefault("poll_interval", 0.01)
    return Build.from_settings(root_name, includes or ["core"], cfg=Config(**cfg_kwargs))


@pytest.fixture
def make_build():
    """Factory fixture that creates a Build over a small project tree."""
    return _make_build


@pytest.fixture
def write_build_file(tmp_path: Path):
    """Write a build.yaml under tmp_path and return its path."""

    def _write(content: str, name: str = "build.yaml") -> Path:
        path = tmp_path / name
        write_text(path, content)
        return path

    return _write
