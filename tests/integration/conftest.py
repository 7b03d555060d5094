"""
Integration test fixtures — the full FastAPI app over TestClient.

The app runs against the same temporary SQLite database and in-memory
session store as the unit tests, so no external infrastructure is needed.

Run: pytest tests/integration/ -v
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from taskhub.api.app import create_app

PASSWORD = "Secret123"


@pytest.fixture
def app(config, session_factory, session_store):
    return create_app(config, session_factory=session_factory, session_store=session_store)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def login(client):
    """``login(email)`` returns Authorization headers for a seeded user."""

    def _login(email: str, password: str = PASSWORD) -> dict:
        resp = client.post("/api/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.text
        return {"Authorization": f"Bearer {resp.json()['data']['token']}"}

    return _login


@pytest.fixture
def token_of(client):
    def _token(email: str, password: str = PASSWORD) -> str:
        resp = client.post("/api/auth/login", json={"email": email, "password": password})
        return resp.json()["data"]["token"]

    return _token
