"""Shared fixtures for browser-netcap tests."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest
from fakes import FakeCDP

from browser_netcap.config import CaptureConfig, NetcapConfig


@pytest.fixture
def netcap_home(tmp_path, monkeypatch):
    """Patch Path.home() so runtime files live under tmp_path."""
    monkeypatch.setattr(Path, "home", lambda: tmp_path)
    return tmp_path / ".browser-netcap"


@pytest.fixture
def short_home(monkeypatch: pytest.MonkeyPatch):
    """Provide a short temp dir as HOME so Unix socket paths stay under 108 chars."""
    home = Path(tempfile.mkdtemp(prefix="nc-"))
    monkeypatch.setattr(Path, "home", lambda: home)
    yield home


@pytest.fixture
def clean_env(monkeypatch):
    """Remove NETCAP_* variables inherited from the developer's shell."""
    for key in list(os.environ):
        if key.startswith("NETCAP_"):
            monkeypatch.delenv(key)


@pytest.fixture
def default_config(clean_env) -> NetcapConfig:
    return NetcapConfig()


@pytest.fixture
def capture_config() -> CaptureConfig:
    return CaptureConfig(body_fetch_timeout=1.0)


@pytest.fixture
def fake_cdp() -> FakeCDP:
    return FakeCDP()
