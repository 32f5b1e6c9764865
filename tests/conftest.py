import json

import httpx
import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from main import create_app
from payments import PesapalGateway, SIGNATURE_HEADER, sign_payload

WEBHOOK_SECRET = "whsec-test"
PASSWORD = "secret123"


class FakePesapal:
    """httpx transport handler standing in for the Pesapal v3 API."""

    def __init__(self):
        self.requests = []
        self.fail_token = False
        self.fail_submit = False
        self.issued = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/api/Auth/RequestToken"):
            if self.fail_token:
                return httpx.Response(500, json={"error": "unavailable"})
            return httpx.Response(200, json={"token": "tok-123", "expiryDate": "2030-01-01T00:00:00Z", "status": "200"})
        if request.url.path.endswith("/api/Transactions/SubmitOrderRequest"):
            if self.fail_submit:
                return httpx.Response(200, json={"error": {"code": "invalid_amount"}, "status": "500"})
            self.issued += 1
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "order_tracking_id": f"trk-{self.issued}",
                "merchant_reference": body["id"],
                "redirect_url": f"https://pay.pesapal.test/iframe?OrderTrackingId=trk-{self.issued}",
                "status": "200",
            })
        return httpx.Response(404)

    def submissions(self):
        return [json.loads(r.content) for r in self.requests
                if r.url.path.endswith("/api/Transactions/SubmitOrderRequest")]


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="test-secret",
        bcrypt_rounds=4,
        pesapal_api_url="https://pesapal.test/v3",
        pesapal_consumer_key="ck",
        pesapal_consumer_secret="cs",
        pesapal_webhook_secret=WEBHOOK_SECRET,
        backend_url="https://shop.test",
    )


@pytest.fixture
def db():
    return mongomock.MongoClient()["storefront_test"]


@pytest.fixture
def pesapal():
    return FakePesapal()


@pytest.fixture
def app(settings, db, pesapal):
    gateway = PesapalGateway(settings, client=httpx.Client(transport=httpx.MockTransport(pesapal)))
    return create_app(settings, db=db, gateway=gateway)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, name, email):
    r = client.post("/api/auth/register", json={"name": name, "email": email, "password": PASSWORD})
    assert r.status_code == 201, r.text
    token = r.json()["token"]
    me = client.get("/api/users/me", headers=bearer(token)).json()
    return {"id": me["_id"], "email": email, "token": token, "headers": bearer(token)}


@pytest.fixture
def customer(client):
    return register(client, "Alice", "alice@shop.io")


@pytest.fixture
def other_customer(client):
    return register(client, "Bob", "bob@shop.io")


@pytest.fixture
def admin(client, db):
    user = register(client, "Root", "root@shop.io")
    db["user"].update_one({"email": "root@shop.io"}, {"$set": {"role": "admin"}})
    return user


@pytest.fixture
def category(client, admin):
    r = client.post("/api/categories", json={"name": "Sneakers", "description": "Everyday shoes"},
                    headers=admin["headers"])
    assert r.status_code == 201, r.text
    return r.json()


@pytest.fixture
def make_product(client, admin, category):
    def _make(name="Runner", price=500, stock=5, **extra):
        body = {"name": name, "price": price, "stock": stock, "categoryId": category["_id"], **extra}
        r = client.post("/api/products", json=body, headers=admin["headers"])
        assert r.status_code == 201, r.text
        return r.json()
    return _make


@pytest.fixture
def place_order(client):
    def _place(user, *lines):
        items = [{"productId": p["_id"], "quantity": q} for p, q in lines]
        return client.post("/api/orders", json={"items": items}, headers=user["headers"])
    return _place


@pytest.fixture
def send_callback(client):
    def _send(payload, secret=WEBHOOK_SECRET, signature=None):
        body = json.dumps(payload).encode()
        headers = {"Content-Type": "application/json"}
        if signature is None and secret is not None:
            signature = sign_payload(body, secret)
        if signature is not None:
            headers[SIGNATURE_HEADER] = signature
        return client.post("/api/payments/callback", content=body, headers=headers)
    return _send
