"""Shared fixtures for the SFM exporter tests."""

from dataclasses import replace

import pytest
import structlog

from sfm_exporter.config import Config
from tests.helpers import RecordingStore


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo configure_logging() so later tests never write to a closed capture stream."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def make_config(tmp_path):
    """Factory for a Config whose directories live under tmp_path."""
    base = Config(
        storage_backend="local",
        storage_path=str(tmp_path / "exports"),
        temp_dir=str(tmp_path / "work"),
        batch_size=1000,
        compression=False,
        env="test",
    )

    def _make(**overrides) -> Config:
        return replace(base, **overrides)

    return _make


@pytest.fixture
def config(make_config):
    return make_config()


@pytest.fixture
def write_sfm(tmp_path):
    """Factory writing an SFM file below tmp_path/data and returning its path."""
    data_dir = tmp_path / "data"

    def _write(name: str, content: str | bytes) -> str:
        path = data_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
        return str(path)

    return _write


@pytest.fixture
def store():
    return RecordingStore()
