"""
Fixtures comunes para los tests de DailyQuest.

- BD SQLite en memoria, recreada en cada test
- Usuarios de ejemplo (alice, bob, carol) creados con el servicio real
- Cliente HTTP (TestClient) con el lifespan de la app
"""

import os

# Antes de importar database: la URL se lee al importar el módulo
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SCHEDULER_ENABLED"] = "0"
os.environ.setdefault("SECRET_KEY", "dailyquest-test-secret")

import pytest
from fastapi.testclient import TestClient

import linking
import users
from database import SessionLocal, init_db, drop_db


@pytest.fixture(autouse=True)
def fresh_database():
    init_db()
    yield
    drop_db()


@pytest.fixture
def db():
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def make_user(db):
    def _make(username: str, password: str = "secret1", nickname: str | None = None):
        return users.register_user(db, username, password, nickname or username.capitalize()[:10])
    return _make


@pytest.fixture
def alice(make_user):
    return make_user("alice", "secret1", "Alice")


@pytest.fixture
def bob(make_user):
    return make_user("bob", "secret2", "Bob")


@pytest.fixture
def carol(make_user):
    return make_user("carol", "secret3", "Carol")


@pytest.fixture
def linked_pair(db, alice, bob):
    linking.link_users(db, alice, bob.unique_code)
    return alice, bob


# ─────────────────────────────────────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def client():
    from main import app
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def register(client):
    """Registra por la API y devuelve (headers, datos del usuario)."""
    def _register(username: str, password: str = "secret1", nickname: str | None = None):
        response = client.post("/api/auth/register", json={
            "username": username,
            "password": password,
            "nickname": nickname or username.capitalize()[:10],
        })
        assert response.status_code == 201, response.text
        body = response.json()
        return {"Authorization": f"Bearer {body['access_token']}"}, body["user"]
    return _register
