"""Shared fixtures."""

import tempfile
from pathlib import Path

import pytest

from feature_conductor.core import features as features_mod
from feature_conductor.db.engine import init_db


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmp:
        yield Path(tmp) / "test.db"


@pytest.fixture
def db(db_path):
    """Create a temporary SQLite database for testing."""
    conn = init_db(db_path)
    yield conn
    conn.close()


@pytest.fixture
def feature(db):
    """A feature with a small dependency graph: schema <- api <- ui, docs."""
    return features_mod.create_feature(
        db,
        "checkout",
        "Checkout flow",
        repo_name="shop",
        tasks=[
            {"task_id": "schema", "title": "Design schema"},
            {"task_id": "api", "title": "Build API", "dependencies": ["schema"]},
            {"task_id": "ui", "title": "Build UI", "dependencies": ["api"]},
            {"task_id": "docs", "title": "Write docs", "estimated_hours": 2},
        ],
    )
