"""
Root test configuration and fixtures.

- Platform limits loader is reset around every test so YAML overrides
  never leak between tests
- fake_sleep records requested delays instead of sleeping
- make_yaml_config writes YAML config files to a temp dir
"""

import os
import tempfile
from pathlib import Path

import pytest
import yaml

from activation_engine.config.platform_limits import reset_platform_limits_loader
from activation_engine.models.activation import IdentifierType, UserIdentifier

os.environ.setdefault("ENV", "test")


@pytest.fixture(autouse=True)
def _reset_platform_limits():
    reset_platform_limits_loader()
    yield
    reset_platform_limits_loader()


class FakeSleep:
    """Awaitable stand-in for asyncio.sleep that records delays."""

    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def make_identifiers():
    """
    Factory for valid raw identifiers.

    Usage:
        emails = make_identifiers(IdentifierType.EMAIL, 25)
    """
    def _make(identifier_type: IdentifierType, count: int):
        if identifier_type == IdentifierType.EMAIL:
            values = [f"user{i}@example.com" for i in range(count)]
        elif identifier_type == IdentifierType.PHONE:
            values = [f"555{i:07d}" for i in range(count)]
        elif identifier_type == IdentifierType.MOBILE_AD_ID:
            values = [f"{i:08x}-aaaa-bbbb-cccc-dddddddddddd" for i in range(count)]
        else:
            values = [f"crm-{i}" for i in range(count)]
        return [UserIdentifier(type=identifier_type, raw_value=v) for v in values]
    return _make


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("platform_limits.yml", {"platforms": {...}})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "scenario: end-to-end activation scenario")
