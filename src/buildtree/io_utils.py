"""Wrappers for text, YAML and JSON file I/O with consistent encoding (UTF-8)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict") -> str:
    """Read path as text with UTF-8 encoding."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors)


def write_text(path: PathLike, text: str) -> None:
    """Write text to path with UTF-8 encoding, creating parent directories."""
    p = path if isinstance(path, Path) else Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")


def load_yaml(path: PathLike) -> Any:
    """Parse a YAML document. An empty file yields an empty dict."""
    return yaml.safe_load(read_text(path)) or {}


def write_json(path: PathLike, data: Any) -> None:
    write_text(path, json.dumps(data, indent=2) + "\n")
