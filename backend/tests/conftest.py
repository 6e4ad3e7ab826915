"""
Pytest configuration and shared test helpers for backend tests.
"""
import os
import sys
from pathlib import Path

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")
os.environ.setdefault("INTERNAL_WORKER_SECRET", "test-internal-secret")

backend_root = Path(__file__).resolve().parent.parent
if str(backend_root) not in sys.path:
    sys.path.insert(0, str(backend_root))

import pytest

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app
from database import database
from fakes import FakeDB


@pytest.fixture
def fake_db(monkeypatch):
    """In-memory database wired into the global handle; every service sees it via database.get_db()."""
    db = FakeDB()
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)
