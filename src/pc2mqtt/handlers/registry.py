"""
Handler registry: persistent JSON store of available handlers.

Path: {base_dir}/data/handlers_registry.json. Atomic writes with fsync.
Shape: {handler_id: {"entrypoint": str, "enabled": bool, "options": dict}}
"""
from __future__ import annotations

import json
import os
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

from pc2mqtt.paths import get_paths


class RegistryError(RuntimeError):
    """Raised when registry operations fail in a non-recoverable way."""


def _fsync_dir(path: Path) -> None:
    """
    Ensure directory metadata is flushed so atomic rename is durable.
    """
    fd = os.open(str(path), os.O_DIRECTORY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _now_ts() -> str:
    return time.strftime("%Y%m%dT%H%M%SZ", time.gmtime())


def _validate_registry_shape(data: Any) -> dict[str, dict[str, Any]]:
    if not isinstance(data, dict):
        return {}
    out: dict[str, dict[str, Any]] = {}
    for k, v in data.items():
        if not isinstance(k, str) or not isinstance(v, dict):
            continue
        if not isinstance(v.get("entrypoint"), str) or not v["entrypoint"]:
            continue
        out[k.lower()] = v
    return out


def load_registry(registry_path: Optional[Path] = None) -> dict[str, dict[str, Any]]:
    registry_path = registry_path or get_paths().registry_path

    if not registry_path.exists():
        return {}

    try:
        with registry_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        return _validate_registry_shape(data)
    except json.JSONDecodeError:
        # Preserve corrupted file for debugging instead of silently hiding it.
        corrupt = registry_path.with_suffix(f".corrupt.{_now_ts()}.json")
        try:
            registry_path.replace(corrupt)
        except OSError:
            pass
        return {}
    except OSError as exc:
        raise RegistryError(f"failed to read registry: {exc}") from exc


def write_registry(data: dict[str, dict[str, Any]], registry_path: Optional[Path] = None) -> None:
    """
    Atomic, durable write:
    - lock
    - write temp file + fsync
    - replace
    - fsync directory
    """
    registry_path = registry_path or get_paths().registry_path
    lock_path = registry_path.with_name(registry_path.name + ".lock")

    try:
        registry_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise RegistryError(f"failed to create {registry_path.parent}: {exc}") from exc

    # Lazy import: only POSIX has fcntl.
    import fcntl  # type: ignore

    with lock_path.open("w") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            cleaned = _validate_registry_shape(data)

            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                delete=False,
                dir=str(registry_path.parent),
            ) as tf:
                json.dump(cleaned, tf, indent=2, sort_keys=True)
                tf.flush()
                os.fsync(tf.fileno())
                tmp_path = Path(tf.name)

            os.replace(tmp_path, registry_path)
            _fsync_dir(registry_path.parent)
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)


def enabled_ids(registry: dict[str, dict[str, Any]]) -> list[str]:
    return [hid for hid, meta in registry.items() if meta.get("enabled", True) is not False]


def merge_available(
    registry: dict[str, dict[str, Any]],
    available: dict[str, dict[str, Any]],
) -> tuple[dict[str, dict[str, Any]], bool]:
    """
    Add newly found handlers to the registry without touching existing entries.

    When no handler is enabled at all, every handler is enabled.
    Returns (merged, changed).
    """
    merged = {hid: dict(meta) for hid, meta in registry.items()}
    changed = False
    for hid, meta in available.items():
        if hid not in merged:
            entry = {k: v for k, v in meta.items() if k != "enabled"}
            entry["enabled"] = False
            merged[hid] = entry
            changed = True

    if merged and not enabled_ids(merged):
        for meta in merged.values():
            meta["enabled"] = True
        changed = True
    return merged, changed
