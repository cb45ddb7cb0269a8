"""
Shared pytest fixtures for agent harness tests.

Provides fixtures for:
- In-memory filesystem backend
- Recording shell backend
- Temporary SQLite databases
- Logging capture
"""

import sys
import logging
from pathlib import Path

import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from tests.fakes import RecordingShell
from tools.builtin.filesystem import InMemoryFileSystemBackend


# ============================================================================
# Logging Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def configure_test_logging(caplog):
    """Configure logging for all tests."""
    caplog.set_level(logging.DEBUG)
    return caplog


# ============================================================================
# Backend Fixtures
# ============================================================================

@pytest.fixture
def filesystem() -> InMemoryFileSystemBackend:
    """In-memory filesystem with a couple of files."""
    return InMemoryFileSystemBackend({
        "/README.md": "# Project\nhello world\n",
        "/src/main.py": "print('hello')\n",
    })


@pytest.fixture
def recording_shell() -> RecordingShell:
    return RecordingShell()


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def temp_db_path(tmp_path) -> str:
    """Path to a fresh SQLite database file."""
    return str(tmp_path / "test.sqlite")
