import os
import threading

import mongomock
import pymongo
import pytest

os.environ["DATABASE_NAME"] = "storefront_test"
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["ADMIN_SECRET_KEY"] = "test-admin-secret"
os.environ["JWT_SECRET"] = "test-jwt-secret"

# database.py builds its client at import time
pymongo.MongoClient = mongomock.MongoClient

from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
from main import app  # noqa: E402


@pytest.fixture(autouse=True)
def clean_db():
    for name in database.db.list_collection_names():
        database.db.drop_collection(name)
    database.ensure_indexes()
    yield


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def admin_headers(client):
    res = client.post("/api/auth/admin-register", json={
        "name": "Admin", "email": "admin@example.com", "password": "admin-pass-1", "secret_key": "test-admin-secret",
    })
    assert res.status_code == 201
    res = client.post("/api/auth/login", json={"email": "admin@example.com", "password": "admin-pass-1", "role": "admin"})
    assert res.status_code == 200
    client.cookies.clear()
    return _bearer(res.json()["data"]["token"])


@pytest.fixture
def user_headers(client):
    res = client.post("/api/auth/register", json={
        "name": "Jane Shopper", "email": "jane@example.com", "password": "secret1", "phone": "555-0100",
    })
    assert res.status_code == 201
    client.cookies.clear()
    return _bearer(res.json()["data"]["token"])


@pytest.fixture
def make_category(client, admin_headers):
    def _make(name, parent=None, **extra):
        res = client.post("/api/admin/categories", json={"name": name, "parent": parent, **extra}, headers=admin_headers)
        assert res.status_code == 201, res.json()
        return res.json()["data"]
    return _make


@pytest.fixture
def make_product(client, admin_headers):
    counter = {"n": 0}

    def _make(name=None, **extra):
        counter["n"] += 1
        body = {
            "name": name or f"Product {counter['n']}",
            "description": "A useful thing",
            "price": 10.0,
            "sku": f"sku-{counter['n']}",
            "quantity": 5,
            "status": "active",
        }
        body.update(extra)
        res = client.post("/api/admin/products", json=body, headers=admin_headers)
        assert res.status_code == 201, res.json()
        return res.json()["data"]
    return _make


def _locked(method, lock):
    def call(self, *args, **kwargs):
        with lock:
            return method(self, *args, **kwargs)
    return call


@pytest.fixture
def run_concurrently(monkeypatch):
    """Run ``fn`` from several threads released together; returns their results.

    mongomock applies a single call in Python, so each collection call is
    serialized here to match the server's per-document atomicity.
    """
    lock = threading.RLock()
    for name in ("find_one", "find_one_and_update", "insert_one", "update_one"):
        monkeypatch.setattr(mongomock.Collection, name, _locked(getattr(mongomock.Collection, name), lock))

    def _run(fn, threads=8):
        barrier = threading.Barrier(threads)
        results, errors = [], []

        def worker():
            barrier.wait()
            try:
                results.append(fn())
            except Exception as e:  # noqa: BLE001
                errors.append(e)

        pool = [threading.Thread(target=worker) for _ in range(threads)]
        for t in pool:
            t.start()
        for t in pool:
            t.join()
        assert not errors, errors
        return results
    return _run
