"""
Pytest configuration and fixtures for kvlite tests.
"""

from __future__ import annotations

from pathlib import Path
from typing import Generator

import pytest

import kvlite


@pytest.fixture(autouse=True)
def fast_kdf(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep PBKDF2 cheap so lock tests run quickly."""
    monkeypatch.setenv("KVLITE_KDF_ITERATIONS", "1000")


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Path of a datastore file that does not exist yet."""
    return str(tmp_path / "test.db")


@pytest.fixture
def store(db_path: str) -> Generator[kvlite.Store, None, None]:
    """An open, unlocked store keyed with a known encryption key."""
    s = kvlite.open(db_path, b"test-key")
    yield s
    s.close()
