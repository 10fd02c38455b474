from __future__ import annotations

import pytest

from sensorgate.core.loader import load_config
from sensorgate.core.model import GatewayConfig


@pytest.fixture(autouse=True)
def isolated_config_home(monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    return tmp_path / "xdg"


@pytest.fixture
def config() -> GatewayConfig:
    return load_config()
