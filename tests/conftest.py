"""Shared fixtures for the test suite."""

import sys
from pathlib import Path

import pytest

# Ensure project root is on sys.path so imports work
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import db as _db

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture()
def tmp_db(tmp_path, monkeypatch):
    """Point db.DB_PATH at a fresh SQLite file and create the schema."""
    db_path = tmp_path / "pncp_test.db"
    monkeypatch.setattr(_db, "DB_PATH", db_path)
    _db.init_db()
    return db_path


@pytest.fixture()
def load_fixture():
    """Return a loader for saved PNCP page snapshots under tests/fixtures."""
    def _load(name: str) -> str:
        return (FIXTURES_DIR / name).read_text(encoding="utf-8")
    return _load
