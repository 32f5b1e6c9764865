from datetime import timedelta

import jwt

from auth import Permission, Principal, create_access_token, create_reset_token
from conftest import PASSWORD, bearer, register
from database import utcnow


def test_register_returns_token(client, db):
    r = client.post("/api/auth/register", json={"name": "Alice", "email": "alice@shop.io", "password": PASSWORD})

    assert r.status_code == 201
    assert r.json()["message"] == "User registered successfully"
    user = db["user"].find_one({"email": "alice@shop.io"})
    assert user["role"] == "customer"
    assert user["password_hash"] != PASSWORD


def test_register_rejects_duplicates_and_bad_input(client, customer):
    r = client.post("/api/auth/register", json={"name": "A", "email": customer["email"], "password": "x"})
    assert r.status_code == 400
    assert r.json() == {"error": "Email already registered"}

    assert client.post("/api/auth/register", json={"name": "A", "email": "nope", "password": "x"}).status_code == 400
    assert client.post("/api/auth/register", json={"email": "c@shop.io", "password": "x"}).status_code == 400


def test_login(client, customer):
    r = client.post("/api/auth/login", json={"email": customer["email"], "password": PASSWORD})

    assert r.status_code == 200
    body = r.json()
    assert body["user"] == {"_id": customer["id"], "name": "Alice", "email": customer["email"], "role": "customer",
                            "created_at": body["user"]["created_at"]}
    assert "password_hash" not in body["user"]
    assert client.get("/api/users/me", headers=bearer(body["token"])).status_code == 200


def test_login_with_wrong_password(client, customer):
    r = client.post("/api/auth/login", json={"email": customer["email"], "password": "wrong"})
    assert r.status_code == 401
    assert r.json() == {"error": "Invalid credentials"}
    r = client.post("/api/auth/login", json={"email": "ghost@shop.io", "password": PASSWORD})
    assert r.status_code == 401


def test_logout(client):
    assert client.post("/api/auth/logout").json() == {"message": "Logged out successfully"}


def test_token_problems(client, settings, db, customer):
    assert client.get("/api/users/me").status_code == 401

    r = client.get("/api/users/me", headers=bearer("garbage"))
    assert r.status_code == 403
    assert r.json() == {"error": "Invalid or expired token"}

    expired = jwt.encode({"user_id": customer["id"], "purpose": "access", "exp": utcnow() - timedelta(minutes=1)},
                         settings.jwt_secret, algorithm="HS256")
    assert client.get("/api/users/me", headers=bearer(expired)).status_code == 403

    forged = jwt.encode({"user_id": customer["id"], "purpose": "access"}, "other-secret", algorithm="HS256")
    assert client.get("/api/users/me", headers=bearer(forged)).status_code == 403

    reset = create_reset_token(customer["id"], settings)
    assert client.get("/api/users/me", headers=bearer(reset)).status_code == 403

    db["user"].delete_many({})
    r = client.get("/api/users/me", headers=customer["headers"])
    assert r.status_code == 404
    assert r.json() == {"error": "User not found"}


def test_password_reset_flow(client, db, customer):
    r = client.post("/api/auth/forgot-password", json={"email": customer["email"]})
    assert r.status_code == 200
    token = db["user"].find_one({"email": customer["email"]})["reset_token"]
    assert token

    r = client.post("/api/auth/reset-password", json={"token": token, "newPassword": "n3w-pass"})
    assert r.status_code == 200
    assert r.json() == {"message": "Password reset successful"}

    user = db["user"].find_one({"email": customer["email"]})
    assert user["reset_token"] is None
    assert user["reset_token_expiry"] is None
    assert client.post("/api/auth/login", json={"email": customer["email"], "password": PASSWORD}).status_code == 401
    assert client.post("/api/auth/login", json={"email": customer["email"], "password": "n3w-pass"}).status_code == 200

    # single use
    r = client.post("/api/auth/reset-password", json={"token": token, "newPassword": "again"})
    assert r.status_code == 400


def test_reset_rejects_other_tokens(client, settings, customer):
    r = client.post("/api/auth/forgot-password", json={"email": "ghost@shop.io"})
    assert r.status_code == 404

    for token in ("garbage", customer["token"], create_reset_token(customer["id"], settings)):
        r = client.post("/api/auth/reset-password", json={"token": token, "newPassword": "x"})
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid or expired reset token"}


def test_customer_cannot_reach_admin_routes(client, customer):
    for method, url in [("get", "/api/admin/users"), ("get", "/api/users"), ("post", "/api/categories")]:
        r = getattr(client, method)(url, headers=customer["headers"])
        assert r.status_code == 403
        assert r.json() == {"error": "Admin access required"}


def test_role_permissions():
    admin = Principal(user={"_id": "a", "role": "admin"})
    customer = Principal(user={"_id": "c", "role": "customer"})
    unknown = Principal(user={"_id": "u", "role": "intern"})

    assert all(admin.can(p) for p in Permission)
    assert not any(customer.can(p) for p in Permission)
    assert not any(unknown.can(p) for p in Permission)
    assert customer.owns({"user_id": "c"})
    assert not customer.owns({"user_id": "a"})


def test_admin_creates_users(client, admin):
    r = client.post("/api/users", json={"name": "Staff", "email": "staff@shop.io", "password": "pw", "role": "admin"},
                    headers=admin["headers"])
    assert r.status_code == 201
    assert r.json()["role"] == "admin"

    users = client.get("/api/users", headers=admin["headers"]).json()
    assert {u["email"] for u in users} == {"root@shop.io", "staff@shop.io"}
    assert all("password_hash" not in u for u in users)


def test_access_token_roundtrip(settings):
    token = create_access_token("abc", settings)
    assert jwt.decode(token, settings.jwt_secret, algorithms=["HS256"])["user_id"] == "abc"
