"""Rejected requests must never reach the storage layer."""

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import auth
from conftest import IMAGE, bearer
from main import app
from sessions import MemorySessionStore, get_sessions
from storage import get_storage

ADMIN_ROUTES = [
    ("get", "/api/users", None),
    ("delete", f"/api/users/{ObjectId()}", None),
    ("patch", f"/api/users/{ObjectId()}/role", {"role": "admin"}),
    ("post", "/api/categories", {"name": "Lamps", "description": "Light"}),
    ("patch", f"/api/categories/{ObjectId()}", {"name": "Lamps"}),
    ("delete", f"/api/categories/{ObjectId()}", None),
    ("post", "/api/products", {
        "name": "Lamp", "description": "Bright", "price": 100, "image": IMAGE, "category": str(ObjectId()),
    }),
    ("patch", f"/api/products/{ObjectId()}", {"price": 200}),
    ("delete", f"/api/products/{ObjectId()}", None),
]

AUTHENTICATED_ROUTES = [
    ("get", "/api/cart", None),
    ("post", "/api/cart", {"productId": str(ObjectId()), "quantity": 1}),
    ("delete", f"/api/cart/{ObjectId()}", None),
    ("patch", f"/api/users/{ObjectId()}", {"username": "x"}),
    ("delete", "/api/user", None),
]


class RecordingStorage:
    """Resolves the session principal and records every other call."""

    def __init__(self, principal):
        self.principal = principal
        self.calls = []

    def get_user(self, user_id):
        return self.principal if user_id == self.principal["id"] else None

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append(name)
        return record


@pytest.fixture
def gate_client():
    principal = {"id": str(ObjectId()), "username": "plain", "email": "plain@example.com", "role": "user"}
    storage = RecordingStorage(principal)
    sessions = MemorySessionStore(ttl=60)
    app.dependency_overrides[get_storage] = lambda: storage
    app.dependency_overrides[get_sessions] = lambda: sessions
    token = auth.start_session(sessions, principal)
    yield TestClient(app), storage, token
    app.dependency_overrides.clear()


def call(client, method, path, body, headers=None):
    if body is None:
        return getattr(client, method)(path, headers=headers)
    return client.request(method.upper(), path, json=body, headers=headers)


@pytest.mark.parametrize("method,path,body", ADMIN_ROUTES)
def test_non_admin_is_forbidden_before_storage(gate_client, method, path, body):
    client, storage, token = gate_client
    res = call(client, method, path, body, headers=bearer(token))
    assert res.status_code == 403
    assert storage.calls == []


@pytest.mark.parametrize("method,path,body", ADMIN_ROUTES + AUTHENTICATED_ROUTES)
def test_anonymous_is_unauthorized_before_storage(gate_client, method, path, body):
    client, storage, _ = gate_client
    res = call(client, method, path, body)
    assert res.status_code == 401
    assert storage.calls == []


def test_gate_runs_before_body_validation(gate_client):
    client, storage, token = gate_client
    res = client.post("/api/products", json={"price": -1}, headers=bearer(token))
    assert res.status_code == 403
    assert storage.calls == []
