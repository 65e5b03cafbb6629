"""Shared fixtures: every test gets its own data directory."""

import pytest

from relay.config import settings


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    """Point ``settings.DATA_DIR`` (and the agent/plugin dirs derived from it) at a temp dir."""
    path = tmp_path / "data"
    path.mkdir()
    monkeypatch.setattr(settings, "DATA_DIR", str(path))
    monkeypatch.setattr(settings, "AGENTS_DIR", None)
    monkeypatch.setattr(settings, "PLUGINS_DIR", None)
    monkeypatch.setattr(settings, "DEFAULT_TOOLS", {})
    return path
