"""
Where pc2mqtt keeps its files: the handler registry and user handler scripts,
both under one base directory ($PC2MQTT_BASE_DIR, else $XDG_DATA_HOME/pc2mqtt).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

REGISTRY_FILENAME = "handlers_registry.json"


@dataclass(frozen=True, slots=True)
class Paths:
    base_dir: Path

    @property
    def data_dir(self) -> Path:
        return self.base_dir / "data"

    @property
    def registry_path(self) -> Path:
        return self.data_dir / REGISTRY_FILENAME

    @property
    def scripts_dir(self) -> Path:
        """Drop-in *.py handler scripts, loaded when PC2MQTT_BUILTIN_ONLY is off."""
        return self.base_dir / "scripts"


def build_paths(base_dir: Optional[Path] = None) -> Paths:
    if base_dir is None:
        override = os.environ.get("PC2MQTT_BASE_DIR")
        if override:
            base_dir = Path(override)
        else:
            data_home = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
            base_dir = Path(data_home) / "pc2mqtt"
    return Paths(base_dir=base_dir)


def ensure_dirs(paths: Paths) -> None:
    """
    Create the base, data and scripts directories. The data directory holds the
    registry with handler options and is kept private to the user.

    Raises OSError when a directory cannot be created.
    """
    for dir_path, mode in (
        (paths.base_dir, 0o755),
        (paths.data_dir, 0o750),
        (paths.scripts_dir, 0o755),
    ):
        dir_path.mkdir(parents=True, exist_ok=True)
        # mkdir applies umask
        dir_path.chmod(mode)


_paths: Optional[Paths] = None


def get_paths() -> Paths:
    global _paths
    if _paths is None:
        _paths = build_paths()
    return _paths


def set_paths(paths: Paths) -> None:
    global _paths
    _paths = paths


def reset_paths() -> None:
    global _paths
    _paths = None
