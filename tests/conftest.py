"""Pytest configuration and fixtures."""

from __future__ import annotations

import io
import sys
from pathlib import Path

import pytest

# Project root
PROJECT_ROOT = Path(__file__).parent.parent

# Add src to the Python path
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = PROJECT_ROOT / "tests" / "fixtures"
FAKE_CMD_PATH = FIXTURES_DIR / "fake_cmd.py"


@pytest.fixture
def temp_workspace(tmp_path: Path) -> Path:
    """Create temporary workspace directory."""
    workspace = tmp_path / "workspace"
    workspace.mkdir()
    return workspace


@pytest.fixture
def fake_cmd() -> list[str]:
    """Program path and leading arguments that run the fake command."""
    return [sys.executable, str(FAKE_CMD_PATH)]


@pytest.fixture
def quiet_stdin() -> io.BytesIO:
    """Empty stdin, so children never read pytest's captured stdin."""
    return io.BytesIO()
