"""Raw TOML configuration I/O utilities.

Separates file I/O from validation so settings can be built from raw data
and the starter config can be written back with tomlkit.
"""

from __future__ import annotations

import tomllib
from pathlib import Path
from typing import Any

import tomlkit

CONFIG_DIR = ".hilo"
CONFIG_FILE = "hilo.toml"


def get_config_path(root: Path) -> Path:
    """Get the path to the config file under ``root``."""
    return root / CONFIG_DIR / CONFIG_FILE


def find_config_root(start_path: Path | None = None) -> Path | None:
    """Walk up from start_path to find a directory holding .hilo/hilo.toml."""
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    while True:
        if get_config_path(current).exists():
            return current
        if current == current.parent:
            return None
        current = current.parent


def read_raw_toml(path: Path) -> dict[str, Any]:
    """Read raw TOML data from a file.

    Raises:
        FileNotFoundError: If the file does not exist
        tomllib.TOMLDecodeError: If the file is not valid TOML
    """
    with open(path, "rb") as f:
        return tomllib.load(f)


def write_raw_toml(data: dict[str, Any], path: Path) -> None:
    """Write raw TOML data to a file, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(tomlkit.dumps(data))
