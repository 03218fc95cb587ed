"""Configuration defaults, env vars, and runtime options for buildtree."""

from __future__ import annotations

import os
from dataclasses import dataclass

from buildtree.errors import ConfigurationError

DEFAULT_BUILD_FILE = "build.yaml"
DEFAULT_MAX_WORKERS = 4
DEFAULT_STALL_TIMEOUT = 300.0

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Config:
    """Runtime configuration, mirroring the command-line flags."""

    # Execution
    # None means "not given": BUILDTREE_MAX_WORKERS, then DEFAULT_MAX_WORKERS
    max_workers: int | None = None
    sequential: bool = False
    fail_fast: bool = False
    dry_run: bool = False
    poll_interval: float = 0.1
    # seconds to wait on tasks claimed by another runner before giving up
    stall_timeout: float = DEFAULT_STALL_TIMEOUT

    # Declaration / reporting
    build_file: str = DEFAULT_BUILD_FILE
    report_file: str = ""

    # Misc
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.max_workers is None:
            self.max_workers = DEFAULT_MAX_WORKERS
            raw = os.environ.get("BUILDTREE_MAX_WORKERS", "").strip()
            if raw:
                try:
                    self.max_workers = int(raw)
                except ValueError:
                    raise ConfigurationError(
                        f"BUILDTREE_MAX_WORKERS must be an integer, got '{raw}'"
                    ) from None
        if not self.fail_fast:
            self.fail_fast = os.environ.get("BUILDTREE_FAIL_FAST", "").lower() in _TRUTHY
        if self.sequential:
            self.max_workers = 1
        if self.max_workers < 1:
            raise ConfigurationError(f"Worker count must be at least 1, got {self.max_workers}")
