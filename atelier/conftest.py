# atelier/conftest.py
import os
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add repository root to PYTHONPATH
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


@pytest.fixture(scope="function", autouse=True)
def metering_db(tmp_path):
    """
    Point the engine at a fresh database for each test.

    Uses TEST_DATABASE_URL when set (tables are reset), otherwise a SQLite
    file under the test's tmp_path.
    """
    from atelier.core.database import create_all_tables, dispose_engine, init_engine, reset_database

    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        init_engine(test_url)
        reset_database()
    else:
        init_engine(f"sqlite:///{tmp_path / 'metering.db'}")
        create_all_tables()
    yield
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    """Counters are process-global; start every test from zero."""
    from atelier.core.metrics import METRICS

    METRICS.reset()
    yield
    METRICS.reset()


@pytest.fixture
def t0():
    """Fixed clock origin for deterministic period arithmetic."""
    return datetime(2026, 1, 1, tzinfo=timezone.utc)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from atelier.main import app

    return TestClient(app)
