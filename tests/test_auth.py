from datetime import datetime, timedelta, timezone

import jwt


def test_health(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert "running" in resp.text


def test_no_public_database_diagnostics(client):
    resp = client.get("/test")
    assert resp.status_code == 404
    assert resp.json() == {"message": "Not Found"}


def test_issue_token(client):
    resp = client.post("/jwt", json={"email": "alice@example.com"})
    assert resp.status_code == 200
    claims = jwt.decode(resp.json()["token"], "test-secret", algorithms=["HS256"])
    assert claims["email"] == "alice@example.com"
    remaining = claims["exp"] - datetime.now(timezone.utc).timestamp()
    assert 3500 < remaining <= 3600


def test_issue_token_without_secret(client, monkeypatch):
    monkeypatch.delenv("JWT_SECRET")
    resp = client.post("/jwt", json={"email": "alice@example.com"})
    assert resp.status_code == 500
    assert resp.json()["message"] == "JWT secret not configured!"


def test_missing_token(client, user):
    resp = client.get("/api/cart")
    assert resp.status_code == 401
    assert "message" in resp.json()


def test_invalid_token(client, user):
    resp = client.get("/api/cart", headers={"Authorization": "Bearer not-a-token"})
    assert resp.status_code == 401


def test_expired_token(client, user):
    token = jwt.encode(
        {"email": "alice@example.com", "exp": datetime.now(timezone.utc) - timedelta(minutes=5)},
        "test-secret",
        algorithm="HS256",
    )
    resp = client.get("/api/cart", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_token_signed_with_other_secret(client, user):
    token = jwt.encode({"email": "alice@example.com"}, "other-secret", algorithm="HS256")
    resp = client.get("/api/cart", headers={"Authorization": f"Bearer {token}"})
    assert resp.status_code == 401


def test_catalog_reads_are_open(client):
    assert client.get("/api/products").status_code == 200
    assert client.get("/api/categories").status_code == 200


def test_mutations_require_token(client):
    assert client.post("/api/categories", json={"name": "Dairy"}).status_code == 401
    assert client.post("/api/products", json={}).status_code == 401
    assert client.get("/api/orders").status_code == 401
