import mongomock
import pytest
from fastapi.testclient import TestClient

from auth import create_token
from database import ensure_indexes, get_db
from main import app

TEST_DB = "storefront_test"


@pytest.fixture(autouse=True)
def jwt_secret(monkeypatch):
    monkeypatch.setenv("JWT_SECRET", "test-secret")


@pytest.fixture
def db():
    mongo = mongomock.MongoClient()
    database = mongo[TEST_DB]
    ensure_indexes(database)
    yield database
    mongo.drop_database(TEST_DB)


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(email="alice@example.com"):
        return {"Authorization": f"Bearer {create_token({'email': email})}"}

    return _headers


@pytest.fixture
def user(client):
    resp = client.post(
        "/api/users",
        json={"uid": "uid-alice", "name": "Alice", "email": "alice@example.com", "phone": "01700000000"},
    )
    assert resp.status_code == 201
    return resp.json()


@pytest.fixture
def category(client, auth_headers):
    resp = client.post("/api/categories", json={"name": "Fresh Fruits"}, headers=auth_headers())
    assert resp.status_code == 201
    return resp.json()


@pytest.fixture
def make_product(client, auth_headers, category):
    def _make(name="Mango", regular=100, discount=None, stock=10, category_id=None):
        pricing = {"regular": regular}
        if discount is not None:
            pricing["discount"] = discount
        resp = client.post(
            "/api/products",
            json={
                "name": name,
                "category": category_id or category["id"],
                "pricing": pricing,
                "stock": stock,
            },
            headers=auth_headers(),
        )
        assert resp.status_code == 201, resp.text
        return resp.json()

    return _make
