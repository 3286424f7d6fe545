"""Shared pytest fixtures: an in-memory Mongo, a fresh session store and an API client."""

import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import hash_password
from database import ensure_indexes
from main import app
from sessions import MemorySessionStore, get_sessions
from storage import MongoStorage, get_storage

IMAGE = "https://example.com/images/item.png"


@pytest.fixture
def db():
    """Create an empty mongomock database with the production indexes."""
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def storage(db):
    return MongoStorage(db)


@pytest.fixture
def sessions():
    return MemorySessionStore(ttl=3600)


@pytest.fixture
def client(storage, sessions):
    """API client wired to the test storage and session store."""
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_sessions] = lambda: sessions
    yield TestClient(app)
    app.dependency_overrides.clear()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, username="alice", email="alice@example.com", password="secret123"):
    res = client.post("/api/register", json={"username": username, "email": email, "password": password})
    assert res.status_code == 201, res.text
    client.cookies.clear()
    return res.json()


def login(client, identifier, password):
    res = client.post("/api/login", json={"identifier": identifier, "password": password})
    assert res.status_code == 200, res.text
    client.cookies.clear()
    return res.json()


@pytest.fixture
def admin_token(client, storage):
    """Create an admin account directly in the store and log it in."""
    storage.create_user({
        "username": "root",
        "email": "root@example.com",
        "password_hash": hash_password("rootpass"),
        "role": "admin",
    })
    return login(client, "root", "rootpass")["access_token"]


@pytest.fixture
def user_session(client):
    """Register a regular user; returns the token response body."""
    return register(client)


@pytest.fixture
def category(storage):
    return storage.create_category({"name": "Chairs", "description": "Things to sit on"})


@pytest.fixture
def product(storage, category):
    return storage.create_product({
        "name": "Oak chair",
        "description": "Solid oak",
        "price": 4999,
        "image": IMAGE,
        "category": category["id"],
    })
