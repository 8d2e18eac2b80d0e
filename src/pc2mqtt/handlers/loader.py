from __future__ import annotations

import importlib
import importlib.util
import inspect
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any, Optional

from pc2mqtt.handlers.base import Handler

logger = logging.getLogger(__name__)

BUILTIN_HANDLERS: dict[str, str] = {
    "system_load": "pc2mqtt.handlers.builtin.system_load:SystemLoadHandler",
    "topic_relay": "pc2mqtt.handlers.builtin.topic_relay:TopicRelayHandler",
}


class HandlerLoadError(RuntimeError):
    """Raised when an entrypoint cannot be turned into a Handler."""


@dataclass(frozen=True, slots=True)
class HandlerLoadResult:
    handler_id: str
    ok: bool
    entrypoint: str | None = None
    error: str | None = None


def _parse_entrypoint(entrypoint: str) -> tuple[str, str | None]:
    """
    'module.path:ClassName' or 'path/to/script.py[:ClassName]'.
    """
    if entrypoint.endswith(".py") or ".py:" in entrypoint:
        path, _, class_name = entrypoint.rpartition(".py")
        return path + ".py", class_name.lstrip(":") or None
    if ":" not in entrypoint:
        raise HandlerLoadError("entrypoint must be in format 'module.path:ClassName' or 'script.py'")
    module_path, class_name = entrypoint.split(":", 1)
    if not module_path or not class_name:
        raise HandlerLoadError("entrypoint must include both module and class")
    return module_path, class_name


def _load_script(path: Path) -> ModuleType:
    if not path.is_file():
        raise HandlerLoadError(f"script not found: {path}")
    module_name = f"pc2mqtt_script_{path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise HandlerLoadError(f"cannot load script: {path}")
    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except Exception:
        sys.modules.pop(module_name, None)
        raise
    return module


def _find_handler_class(module: ModuleType) -> type:
    found = [
        obj
        for _, obj in inspect.getmembers(module, inspect.isclass)
        if issubclass(obj, Handler) and obj is not Handler and obj.__module__ == module.__name__
    ]
    if len(found) != 1:
        raise HandlerLoadError(
            f"script {module.__name__} must define exactly one Handler subclass, found {len(found)}"
        )
    return found[0]


def resolve_handler_class(entrypoint: str) -> type:
    target, class_name = _parse_entrypoint(entrypoint)
    if target.endswith(".py"):
        module = _load_script(Path(target))
        cls = getattr(module, class_name) if class_name else _find_handler_class(module)
    else:
        module = importlib.import_module(target)
        cls = getattr(module, class_name)

    if not isinstance(cls, type) or not issubclass(cls, Handler):
        raise HandlerLoadError(f"entrypoint class is not a Handler subclass: {entrypoint}")
    return cls


def load_handlers(
    registry: dict[str, dict[str, Any]],
    *,
    only: Optional[list[str]] = None,
) -> tuple[list[Handler], list[HandlerLoadResult]]:
    """
    Instantiate handlers from the registry.

    Policy:
    - enabled: default True (skip if False)
    - options: passed to the handler constructor as keyword arguments
    - a handler that fails to import, construct, or reports itself incompatible
      is reported and skipped; other handlers still load
    """
    handlers: list[Handler] = []
    results: list[HandlerLoadResult] = []

    for handler_id, meta in registry.items():
        if only is not None and handler_id not in only:
            continue
        if only is None and meta.get("enabled", True) is False:
            continue
        hlog = logging.getLogger(f"pc2mqtt.handler.{handler_id}")

        entrypoint = meta.get("entrypoint")
        if not isinstance(entrypoint, str) or not entrypoint:
            msg = "missing/invalid entrypoint"
            hlog.error(msg)
            results.append(HandlerLoadResult(handler_id=handler_id, ok=False, error=msg))
            continue

        try:
            cls = resolve_handler_class(entrypoint)
            options = meta.get("options") or {}
            if not isinstance(options, dict):
                raise HandlerLoadError("options must be an object")
            handler: Handler = cls(**options)

            if not handler.is_compatible():
                raise HandlerLoadError("handler is not compatible with this runtime")

            if handler.handler_id.lower() != handler_id:
                hlog.warning(
                    "handler_id mismatch: registry=%s class=%s",
                    handler_id,
                    handler.handler_id,
                )

            handlers.append(handler)
            results.append(HandlerLoadResult(handler_id=handler_id, ok=True, entrypoint=entrypoint))
            hlog.info("loaded (%s)", entrypoint)

        except Exception as exc:
            hlog.exception("failed to load (entrypoint=%s)", entrypoint)
            results.append(
                HandlerLoadResult(
                    handler_id=handler_id,
                    ok=False,
                    entrypoint=entrypoint,
                    error=str(exc),
                )
            )

    return handlers, results


def builtin_registry() -> dict[str, dict[str, Any]]:
    return {hid: {"entrypoint": ep} for hid, ep in BUILTIN_HANDLERS.items()}


def discover_scripts(scripts_dir: Path) -> dict[str, dict[str, Any]]:
    """Registry entries for every *.py script in scripts_dir (id = file stem, lowercased)."""
    if not scripts_dir.is_dir():
        return {}
    found: dict[str, dict[str, Any]] = {}
    for path in sorted(scripts_dir.glob("*.py")):
        if path.name.startswith("_"):
            continue
        found[path.stem.lower()] = {"entrypoint": str(path)}
    return found
