"""
Tests for paths module.
"""

from pathlib import Path

import pytest

from pc2mqtt.paths import build_paths, ensure_dirs, get_paths, reset_paths, set_paths


@pytest.fixture(autouse=True)
def _reset():
    reset_paths()
    yield
    reset_paths()


def test_build_paths_default(monkeypatch, tmp_path):
    """Default base lives under $XDG_DATA_HOME/pc2mqtt."""
    monkeypatch.delenv("PC2MQTT_BASE_DIR", raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path))

    paths = build_paths()

    assert paths.base_dir == tmp_path / "pc2mqtt"
    assert paths.data_dir == tmp_path / "pc2mqtt" / "data"
    assert paths.registry_path == tmp_path / "pc2mqtt" / "data" / "handlers_registry.json"
    assert paths.scripts_dir == tmp_path / "pc2mqtt" / "scripts"


def test_build_paths_without_xdg_uses_home(monkeypatch):
    monkeypatch.delenv("PC2MQTT_BASE_DIR", raising=False)
    monkeypatch.delenv("XDG_DATA_HOME", raising=False)

    paths = build_paths()

    assert paths.base_dir == Path.home() / ".local" / "share" / "pc2mqtt"


def test_build_paths_custom_base():
    custom_base = Path("/tmp/test-pc2mqtt")
    paths = build_paths(custom_base)

    assert paths.base_dir == custom_base
    assert paths.registry_path == custom_base / "data" / "handlers_registry.json"


def test_build_paths_env_var_override(monkeypatch):
    """PC2MQTT_BASE_DIR env var overrides default."""
    monkeypatch.setenv("PC2MQTT_BASE_DIR", "/tmp/env-override")

    paths = build_paths()

    assert paths.base_dir == Path("/tmp/env-override")


def test_ensure_dirs_creates_tree(tmp_path):
    paths = build_paths(tmp_path / "base")

    ensure_dirs(paths)
    ensure_dirs(paths)  # idempotent

    for d in (paths.base_dir, paths.data_dir, paths.scripts_dir):
        assert d.is_dir()
    assert (paths.data_dir.stat().st_mode & 0o777) == 0o750


def test_get_paths_is_cached_and_overridable(monkeypatch, tmp_path):
    monkeypatch.setenv("PC2MQTT_BASE_DIR", str(tmp_path))

    first = get_paths()
    assert get_paths() is first

    custom = build_paths(tmp_path / "other")
    set_paths(custom)
    assert get_paths() is custom

    reset_paths()
    assert get_paths() == first
