# tests/conftest.py

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from main import create_app
from settings import Settings

SECRET = "taskflow-test-secret-0123456789abcdef0123456789abcdef"
PASSWORD = "Str0ng!pass"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings over a throwaway sqlite file; console logging stays off under pytest."""
    return Settings(
        jwt_secret=SECRET,
        db_path=tmp_path / "todo.db",
        log_console=False,
    )


@pytest.fixture()
def app(settings: Settings) -> FastAPI:
    return create_app(settings)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    # The context manager runs the lifespan: schema, store, verifier, gate.
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def login(client: TestClient) -> Callable[[str], dict[str, str]]:
    """Register (once) and log in a user, returning ready-to-use auth headers."""

    def _login(username: str = "alice") -> dict[str, str]:
        client.post(
            "/api/auth/register",
            json={"username": username, "email": f"{username}@example.com", "password": PASSWORD},
        )
        r = client.post("/api/auth/login", json={"username": username, "password": PASSWORD})
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['data']['token']}"}

    return _login


@pytest.fixture()
def auth_headers(login) -> dict[str, str]:
    return login("alice")
