"""Pytest configuration for test isolation.

Every test gets its own sqlite file and an empty session manager so users,
transactions and in-flight extractions never leak between tests.
"""

from __future__ import annotations

import os
from pathlib import Path

os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-bytes-for-hs256")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id.apps.googleusercontent.com")

import pytest

import database
from store import sessions


@pytest.fixture(autouse=True)
def _isolate_database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / "gst-test.db"
    monkeypatch.setattr(database, "DATABASE_PATH", os.fspath(db_path))
    database.init_db()
    sessions.clear()
    yield db_path
    sessions.clear()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from main import app

    return TestClient(app)


@pytest.fixture
def signup(client):
    """Create an account through the API and return (user, auth headers)."""

    def _signup(email: str = "driver@example.com", password: str = "hunter22", name: str = "Dee Driver"):
        resp = client.post("/auth/signup", json={"email": email, "password": password, "name": name})
        assert resp.status_code == 200, resp.text
        body = resp.json()
        return body["user"], {"Authorization": f"Bearer {body['access_token']}"}

    return _signup


@pytest.fixture
def auth_headers(signup):
    _, headers = signup()
    return headers
