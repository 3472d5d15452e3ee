"""Shared fixtures for CLI tests."""

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest


@pytest.fixture(autouse=True)
def _restore_root_logging() -> Iterator[None]:
    """The CLI callback rebinds root handlers to the runner's captured stderr."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


@pytest.fixture
def write_settings(tmp_path: Path):
    """Write a settings file whose agent and artifact store live under tmp_path."""

    def _write(body: str) -> Path:
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(
            body
            + f"""
agent:
  base_dir: "{tmp_path / 'agents'}"
artifact_store:
  artifacts_dir: "{tmp_path / 'artifacts'}"
  reports_dir: "{tmp_path / 'reports'}"
"""
        )
        return config_file

    return _write
