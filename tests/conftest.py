"""Shared test fixtures for the chat relay tests."""

import json
from pathlib import Path
from typing import Dict, Optional

import pytest

from chat_relay.config import RelayConfig, load_config


def _make_config(tmp_path: Path, overrides: Optional[Dict] = None) -> str:
    """Write a minimal test config and return its path."""
    config = {
        "upstream": {
            "base_url": "https://api.example.com/v1",
            "api_key_env": "TEST_API_KEY",
            "model": "test-model",
            "temperature": 0.5,
        },
        "rate_limit": {
            "points": 5,
            "duration": 60,
        },
        "log_file": str(tmp_path / "test.log"),
        "static_dir": None,
    }
    if overrides:
        config.update(overrides)

    path = tmp_path / "test_config.json"
    path.write_text(json.dumps(config))
    return str(path)


@pytest.fixture()
def test_config_path(tmp_path: Path) -> str:
    """Return the path to a temporary test config file."""
    return _make_config(tmp_path)


@pytest.fixture()
def test_config(test_config_path: str) -> RelayConfig:
    """Return a loaded test RelayConfig."""
    return load_config(test_config_path)
